"""
cdflow - A stage-sequencing pipeline engine with artifact passing and approval gates.
"""

__version__ = "0.1.0"
__author__ = "cdflow Team"

from .core import PipelineEngine
from .config import ConfigManager

__all__ = ["PipelineEngine", "ConfigManager"]

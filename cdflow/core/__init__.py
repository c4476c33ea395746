"""Core pipeline orchestration components."""

from .orchestrator import PipelineEngine
from .interfaces import (
    ActionCapability, ActionDefinition, Pipeline, RunPolicy, StageDefinition
)
from .artifacts import ArtifactStore
from .gate import ApprovalGate
from .registry import PipelineRegistry
from .runner import StageRunner
from .state import RunState, RunStore

__all__ = [
    "PipelineEngine", "ActionCapability", "ActionDefinition", "Pipeline", "RunPolicy",
    "StageDefinition", "ArtifactStore", "ApprovalGate", "PipelineRegistry", "StageRunner",
    "RunState", "RunStore",
]

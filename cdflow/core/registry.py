"""Registry of pipeline definitions keyed by name."""

from typing import Dict, Optional
import logging
import threading

from .errors import ConfigurationError
from .interfaces import Pipeline


class PipelineRegistry:
    """Registry for managing pipeline definitions."""

    def __init__(self):
        self._pipelines: Dict[str, Pipeline] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def register_pipeline(self, pipeline: Pipeline, replace: bool = False) -> None:
        """Register a validated pipeline definition under its name."""
        if not isinstance(pipeline, Pipeline):
            raise ValueError(f"Pipeline {pipeline!r} must be a Pipeline definition")

        errors = pipeline.validate()
        if errors:
            raise ConfigurationError(f"Invalid pipeline {pipeline.name}: {'; '.join(errors)}",
                                     {"errors": errors})

        with self._lock:
            if pipeline.name in self._pipelines and not replace:
                if self._pipelines[pipeline.name] == pipeline:
                    return
                raise ConfigurationError(f"Pipeline {pipeline.name} is already registered")
            self._pipelines[pipeline.name] = pipeline

        self.logger.info(f"Registered pipeline: {pipeline.name}")

    def get_pipeline(self, name: str) -> Optional[Pipeline]:
        """Get a pipeline definition by name."""
        with self._lock:
            return self._pipelines.get(name)

    def list_pipelines(self) -> Dict[str, Pipeline]:
        """List all registered pipelines."""
        with self._lock:
            return self._pipelines.copy()

    def unregister_pipeline(self, name: str) -> bool:
        """Unregister a pipeline."""
        with self._lock:
            if name not in self._pipelines:
                return False
            del self._pipelines[name]
        self.logger.info(f"Unregistered pipeline: {name}")
        return True


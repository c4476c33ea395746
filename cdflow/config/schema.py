"""Configuration schema definitions using Pydantic models."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, model_validator

from ..core.interfaces import (
    ActionCapability,
    ActionDefinition,
    Pipeline,
    RunPolicy,
    StageDefinition,
)


class ActionConfig(BaseModel):
    """Configuration for one action of a stage."""
    name: str = Field(..., min_length=1, description="Action name, unique within its stage")
    capability: ActionCapability = Field(..., description="What the action does")
    run_order: int = Field(1, ge=1, description="Intra-stage ordering key; equal values run concurrently")
    input_artifact: Optional[str] = Field(None, description="Name of the artifact the action consumes")
    output_artifact: Optional[str] = Field(None, description="Name of the artifact the action produces")
    configuration: Dict[str, Any] = Field(default_factory=dict, description="Capability-specific options (e.g. source ref)")
    build_spec: Optional[str] = Field(None, description="Opaque build specification handed to the builder")
    environment: Dict[str, str] = Field(default_factory=dict, description="Build environment variables")
    settings: Dict[str, Any] = Field(default_factory=dict, description="Build environment settings (image, compute type)")
    service_id: Optional[str] = Field(None, description="Target service for deploy actions")
    timeout_seconds: Optional[float] = Field(None, gt=0, description="Approval timeout in seconds")

    @model_validator(mode='after')
    def validate_capability_fields(self):
        """Validate capability-specific fields."""
        if self.capability == ActionCapability.DEPLOY and not self.service_id:
            raise ValueError(f"service_id is required for deploy action {self.name}")
        if self.capability == ActionCapability.MANUAL_APPROVAL and (
                self.input_artifact or self.output_artifact):
            raise ValueError(f"approval action {self.name} cannot consume or produce artifacts")
        if self.timeout_seconds is not None and self.capability != ActionCapability.MANUAL_APPROVAL:
            raise ValueError(f"timeout_seconds only applies to approval actions, not {self.name}")
        return self

    def to_definition(self) -> ActionDefinition:
        return ActionDefinition(
            name=self.name,
            capability=self.capability,
            run_order=self.run_order,
            input_artifact=self.input_artifact,
            output_artifact=self.output_artifact,
            configuration=self.configuration,
            build_spec=self.build_spec,
            environment=self.environment,
            settings=self.settings,
            service_id=self.service_id,
            timeout_seconds=self.timeout_seconds
        )


class StageConfig(BaseModel):
    """Configuration for one pipeline stage."""
    name: str = Field(..., min_length=1, description="Stage name, unique within the pipeline")
    run_policy: RunPolicy = Field(RunPolicy.PARALLEL, description="Scheduling of actions inside the stage")
    actions: List[ActionConfig] = Field(..., min_length=1, description="Actions of the stage")

    @model_validator(mode='after')
    def validate_action_names(self):
        """Validate that action names are unique within the stage."""
        names = [action.name for action in self.actions]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate action names in stage {self.name}: {', '.join(duplicates)}")
        return self

    def to_definition(self) -> StageDefinition:
        return StageDefinition(
            name=self.name,
            actions=tuple(action.to_definition() for action in self.actions),
            run_policy=self.run_policy
        )


class PipelineSpec(BaseModel):
    """Pipeline definition section."""
    name: str = Field(..., min_length=1, description="Pipeline name")
    description: Optional[str] = Field(None, description="Pipeline description")
    allow_concurrent_runs: bool = Field(False, description="Allow more than one active run")
    stages: List[StageConfig] = Field(..., min_length=1, description="Ordered stages")

    def to_pipeline(self) -> Pipeline:
        return Pipeline(
            name=self.name,
            stages=tuple(stage.to_definition() for stage in self.stages),
            allow_concurrent_runs=self.allow_concurrent_runs,
            description=self.description or ""
        )


class RunnerConfig(BaseModel):
    """Action execution and retry configuration."""
    max_workers: int = Field(4, ge=1, description="Maximum concurrently executing actions per run")
    max_retries: int = Field(3, ge=0, description="Retries of transient collaborator failures")
    retry_delay: float = Field(1.0, ge=0.0, description="Base delay between retries in seconds")
    exponential_backoff: bool = Field(True, description="Double the delay after every retry")
    max_delay: float = Field(60.0, ge=0.0, description="Upper bound of a single retry delay")


class ApprovalConfig(BaseModel):
    """Manual approval configuration."""
    default_timeout_seconds: Optional[float] = Field(None, gt=0, description="Timeout for approvals without their own")
    poll_interval: float = Field(1.0, gt=0, description="Seconds between status polls while waiting")


class StateConfig(BaseModel):
    """Run record persistence configuration."""
    directory: Optional[str] = Field(".cdflow/runs", description="Directory for run records")
    retain_runs: Optional[int] = Field(10, ge=1, description="Finished runs kept per pipeline before retirement")
    lock_timeout_seconds: Optional[float] = Field(300.0, gt=0, description="Seconds to wait for another process holding a run's lock")


class ArtifactConfig(BaseModel):
    """Artifact store configuration."""
    directory: Optional[str] = Field(".cdflow/artifacts", description="Directory for artifact payloads")


class SourceConfig(BaseModel):
    """Local source provider configuration."""
    path: str = Field(".", description="Path of the git working copy")


class BuilderConfig(BaseModel):
    """Local builder configuration."""
    cwd: Optional[str] = Field(None, description="Working directory for build commands")
    timeout: Optional[float] = Field(None, gt=0, description="Build command timeout in seconds")


class DeployerConfig(BaseModel):
    """Local deployer configuration."""
    ledger_path: str = Field(".cdflow/deployments.jsonl", description="Deployment ledger file")


class CollaboratorsConfig(BaseModel):
    """Collaborators used by the command line interface."""
    source: SourceConfig = Field(default_factory=SourceConfig)
    builder: BuilderConfig = Field(default_factory=BuilderConfig)
    deployer: DeployerConfig = Field(default_factory=DeployerConfig)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field("INFO", description="Logging level")
    format: str = Field("%(asctime)s - %(name)s - %(levelname)s - %(message)s", description="Log format")
    file_path: Optional[str] = Field(None, description="Log file path")
    error_log_path: Optional[str] = Field(None, description="JSON-lines file receiving action errors")


class PipelineConfig(BaseModel):
    """Main pipeline configuration."""
    pipeline: PipelineSpec = Field(..., description="Pipeline definition")
    runner: RunnerConfig = Field(default_factory=RunnerConfig, description="Runner configuration")
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig, description="Approval configuration")
    state: StateConfig = Field(default_factory=StateConfig, description="Run record configuration")
    artifacts: ArtifactConfig = Field(default_factory=ArtifactConfig, description="Artifact store configuration")
    collaborators: CollaboratorsConfig = Field(default_factory=CollaboratorsConfig, description="Collaborator configuration")
    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging configuration")

    model_config = {
        "extra": "forbid",
        "validate_assignment": True,
    }

    @model_validator(mode='after')
    def validate_pipeline_definition(self):
        """Validate stage ordering and artifact edges."""
        errors = self.pipeline.to_pipeline().validate()
        if errors:
            raise ValueError("; ".join(errors))
        return self


class ValidationError(Exception):
    """Configuration validation error."""

    def __init__(self, message: str, errors: List[str] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)


class ValidationResult(BaseModel):
    """Result of configuration validation."""
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    config: Optional[PipelineConfig] = None

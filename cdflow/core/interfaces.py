"""Core interfaces: pipeline definitions, statuses and collaborator contracts."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple
import logging
import threading


class RunStatus(str, Enum):
    """Run execution status."""
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class StageStatus(str, Enum):
    """Per-stage sub-state of a running pipeline."""
    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    AWAITING_APPROVAL = "AwaitingApproval"
    COMPLETED = "Completed"
    FAILED = "Failed"


class ActionStatus(str, Enum):
    """Per-action status within a run."""
    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def terminal(self) -> bool:
        return self in (ActionStatus.SUCCEEDED, ActionStatus.FAILED, ActionStatus.CANCELLED)


class ActionCapability(str, Enum):
    """What an action does, and so which collaborator executes it."""
    SOURCE_FETCH = "SourceFetch"
    BUILD = "Build"
    TEST = "Test"
    MANUAL_APPROVAL = "ManualApproval"
    DEPLOY = "Deploy"


class RunPolicy(str, Enum):
    """How actions inside a stage are scheduled."""
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class ApprovalState(str, Enum):
    """Manual approval request state."""
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class Decision(str, Enum):
    """Decision recorded by an approver."""
    APPROVED = "approved"
    REJECTED = "rejected"


def action_key(stage_index: int, action_index: int) -> str:
    """Stable string id of an action inside a pipeline definition."""
    return f"{stage_index}.{action_index}"


@dataclass(frozen=True)
class ActionDefinition:
    """One executable unit of a stage."""
    name: str
    capability: ActionCapability
    run_order: int = 1
    input_artifact: Optional[str] = None
    output_artifact: Optional[str] = None
    configuration: Mapping[str, Any] = field(default_factory=dict)
    build_spec: Optional[str] = None
    environment: Mapping[str, str] = field(default_factory=dict)
    settings: Mapping[str, Any] = field(default_factory=dict)
    service_id: Optional[str] = None
    timeout_seconds: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, 'capability', ActionCapability(self.capability))
        for name in ('configuration', 'environment', 'settings'):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    @property
    def is_gate(self) -> bool:
        return self.capability == ActionCapability.MANUAL_APPROVAL


@dataclass(frozen=True)
class StageDefinition:
    """An ordered phase of a pipeline."""
    name: str
    actions: Tuple[ActionDefinition, ...]
    run_policy: RunPolicy = RunPolicy.PARALLEL

    def __post_init__(self):
        object.__setattr__(self, 'actions', tuple(self.actions))
        object.__setattr__(self, 'run_policy', RunPolicy(self.run_policy))

    def run_order_groups(self) -> List[List[int]]:
        """Action indices grouped in execution order.

        Under the parallel policy actions sharing a ``run_order`` form one
        group. Under the sequential policy every action is its own group.
        """
        ordered = sorted(range(len(self.actions)),
                         key=lambda i: (self.actions[i].run_order, i))
        if self.run_policy == RunPolicy.SEQUENTIAL:
            return [[index] for index in ordered]

        groups: List[List[int]] = []
        last_order = None
        for index in ordered:
            run_order = self.actions[index].run_order
            if run_order != last_order:
                groups.append([])
                last_order = run_order
            groups[-1].append(index)
        return groups


@dataclass(frozen=True)
class Pipeline:
    """Immutable pipeline definition."""
    name: str
    stages: Tuple[StageDefinition, ...]
    allow_concurrent_runs: bool = False
    description: str = ""

    def __post_init__(self):
        object.__setattr__(self, 'stages', tuple(self.stages))

    def action(self, stage_index: int, action_index: int) -> ActionDefinition:
        return self.stages[stage_index].actions[action_index]

    def iter_actions(self) -> Iterator[Tuple[int, int, ActionDefinition]]:
        for stage_index, stage in enumerate(self.stages):
            for action_index, action in enumerate(stage.actions):
                yield stage_index, action_index, action

    def producers(self) -> Dict[str, str]:
        """Map of artifact name to the id of the action producing it."""
        return {
            action.output_artifact: action_key(stage_index, action_index)
            for stage_index, action_index, action in self.iter_actions()
            if action.output_artifact
        }

    def validate(self) -> List[str]:
        """Validate the definition and return a list of validation errors."""
        errors = []

        if not self.name:
            errors.append("Pipeline name must not be empty")
        if not self.stages:
            errors.append(f"Pipeline {self.name} has no stages")

        seen_stages = set()
        # Outputs become visible only after their run order group.
        produced: Dict[str, Tuple[int, int]] = {}
        for stage_index, stage in enumerate(self.stages):
            if stage.name in seen_stages:
                errors.append(f"Duplicate stage name: {stage.name}")
            seen_stages.add(stage.name)

            if not stage.actions:
                errors.append(f"Stage {stage.name} has no actions")

            seen_actions = set()
            for action in stage.actions:
                if action.name in seen_actions:
                    errors.append(f"Duplicate action name in stage {stage.name}: {action.name}")
                seen_actions.add(action.name)
                if action.run_order < 1:
                    errors.append(f"Action {stage.name}/{action.name} has run_order < 1")

            for position, group in enumerate(stage.run_order_groups()):
                for action_index in group:
                    action = stage.actions[action_index]
                    label = f"{stage.name}/{action.name}"
                    errors.extend(self._validate_capability(label, action))

                    if action.input_artifact:
                        if action.input_artifact not in produced:
                            errors.append(f"Action {label} consumes artifact "
                                          f"'{action.input_artifact}' that no earlier action produces")

                for action_index in group:
                    action = stage.actions[action_index]
                    if action.output_artifact:
                        if action.output_artifact in produced:
                            errors.append(f"Artifact '{action.output_artifact}' is produced more than once")
                        produced[action.output_artifact] = (stage_index, position)

        return errors

    @staticmethod
    def _validate_capability(label: str, action: ActionDefinition) -> List[str]:
        errors = []
        if action.capability == ActionCapability.DEPLOY and not action.service_id:
            errors.append(f"Deploy action {label} requires a service_id")
        if action.capability == ActionCapability.MANUAL_APPROVAL and (
                action.input_artifact or action.output_artifact):
            errors.append(f"Approval action {label} cannot consume or produce artifacts")
        if action.capability == ActionCapability.SOURCE_FETCH and action.input_artifact:
            errors.append(f"Source action {label} cannot consume an artifact")
        return errors


@dataclass
class BuildSpec:
    """Opaque build specification handed to a Builder."""
    action_name: str
    build_spec: Optional[str] = None
    environment: Dict[str, str] = field(default_factory=dict)
    settings: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionContext:
    """Context information for executing one action of a run."""
    run_id: int
    stage_name: str
    action_id: str
    trigger: Dict[str, Any] = field(default_factory=dict)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    logger: Optional[logging.Logger] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class ExecutionResult:
    """Result of executing one action."""
    success: bool
    output: Any = None
    error_message: Optional[str] = None
    attempts: int = 1
    execution_time: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class SourceProvider(ABC):
    """Version-control checkout collaborator."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def fetch(self, ref: Optional[str], context: Optional[ActionContext] = None) -> Any:
        """Fetch the source at ``ref`` and return the artifact payload."""
        pass


class Builder(ABC):
    """Build and test collaborator.

    Implementations raise ``TerminalActionFailure`` when the build reports a
    non-zero completion signal and ``TransientCollaboratorError`` when the
    build service cannot be reached. Long builds should watch
    ``context.cancel_event`` and raise ``ActionCancelledError`` once it is set.
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def run(self, spec: BuildSpec, input_artifact: Any,
            context: Optional[ActionContext] = None) -> Any:
        """Run the build and return the output artifact payload."""
        pass


class Deployer(ABC):
    """Deployment collaborator, invoked once per target service."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def deploy(self, service_id: str, artifact: Any, context: Optional[ActionContext] = None) -> Any:
        """Deploy ``artifact`` to ``service_id``."""
        pass

"""Pipeline engine: drives runs stage by stage."""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any, Dict, List, Optional, Union

from .artifacts import ArtifactStore
from .errors import (
    AlreadyRunningError,
    ApprovalNotFoundError,
    ArtifactError,
    ArtifactNotFoundError,
    ConfigurationError,
    ErrorHandler,
    FailureReason,
    InvalidStateError,
    PipelineError,
)
from .gate import REASON_TIMEOUT, REASON_WITHDRAWN, ApprovalGate
from .interfaces import (
    ActionContext,
    ActionDefinition,
    ActionStatus,
    ApprovalState,
    Decision,
    ExecutionResult,
    Pipeline,
    RunStatus,
    StageDefinition,
    StageStatus,
)
from .registry import PipelineRegistry
from .runner import StageRunner
from .state import ActionState, ApprovalRequest, RunState, RunStore


class PipelineEngine:
    """Coordinates pipeline runs.

    Each run has a single coordinator: every mutation of a run record happens
    while holding that run's lock from the run store, which also excludes
    other processes sharing the state directory. Actions sharing a run order within a stage
    run concurrently on a worker pool; stages run strictly in order. A run
    suspends while an approval request of its current stage is pending and
    resumes on the next ``advance`` (the engine listens to gate decisions and
    advances the owning run itself).
    """

    def __init__(self, registry: Optional[PipelineRegistry] = None,
                 runner: Optional[StageRunner] = None,
                 artifact_store: Optional[ArtifactStore] = None,
                 run_store: Optional[RunStore] = None,
                 gate: Optional[ApprovalGate] = None,
                 max_workers: int = 4,
                 retain_runs: Optional[int] = None,
                 poll_interval: float = 1.0,
                 error_log_path: Optional[str] = None):
        self.registry = registry or PipelineRegistry()
        self.error_handler = ErrorHandler(error_log_path)
        self.runner = runner or StageRunner(error_handler=self.error_handler)
        self.artifact_store = artifact_store or ArtifactStore()
        self.run_store = run_store or RunStore()
        self.gate = gate or ApprovalGate()
        self.max_workers = max_workers
        self.retain_runs = retain_runs
        self.poll_interval = poll_interval
        self.logger = self._setup_structured_logger()

        self._events_guard = threading.Lock()
        self._cancel_events: Dict[int, threading.Event] = {}

        self.gate.add_listener(self._on_approval_decision)
        self._restore_approvals()

    def _setup_structured_logger(self) -> logging.Logger:
        """Setup structured logger with correlation ID support."""
        logger = logging.getLogger(self.__class__.__name__)

        class CorrelationFormatter(logging.Formatter):
            def format(self, record):
                record.correlation_id = getattr(threading.current_thread(), 'correlation_id', None) or 'N/A'
                return super().format(record)

        formatter = CorrelationFormatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] - %(message)s'
        )

        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)

        return logger

    # Pipeline definitions

    def register_pipeline(self, pipeline: Pipeline) -> None:
        self.registry.register_pipeline(pipeline)

    def _resolve_pipeline(self, pipeline: Union[Pipeline, str]) -> Pipeline:
        if isinstance(pipeline, Pipeline):
            self.registry.register_pipeline(pipeline)
            return pipeline

        resolved = self.registry.get_pipeline(pipeline)
        if resolved is None:
            raise ConfigurationError(f"Pipeline {pipeline} is not registered")
        return resolved

    def _pipeline_for(self, state: RunState) -> Pipeline:
        pipeline = self.registry.get_pipeline(state.pipeline_name)
        if pipeline is None:
            raise ConfigurationError(f"Pipeline {state.pipeline_name} of run {state.run_id} "
                                     f"is not registered")
        return pipeline

    # Cancellation signals

    def _cancel_event(self, run_id: int) -> threading.Event:
        with self._events_guard:
            return self._cancel_events.setdefault(run_id, threading.Event())

    def _cancel_requested(self, run_id: int) -> bool:
        """Whether this or another process asked for the run to be cancelled."""
        event = self._cancel_event(run_id)
        if not event.is_set() and self.run_store.cancel_requested(run_id):
            event.set()
        return event.is_set()

    def _discard_cancel_event(self, run_id: int) -> None:
        with self._events_guard:
            self._cancel_events.pop(run_id, None)

    def _restore_approvals(self) -> None:
        """Hand approval requests recorded in run records to the gate."""
        restored = 0
        for state in self.run_store.list_runs():
            for request in state.approvals.values():
                self.gate.restore(request)
                restored += 1
        if restored:
            self.logger.info(f"Restored {restored} approval requests from run records")

    def _adopt_approvals(self, state: RunState) -> None:
        # Decisions recorded by another process replace stale pending requests.
        for request in state.approvals.values():
            self.gate.restore(request)

    # Public operations

    def start_run(self, pipeline: Union[Pipeline, str],
                  trigger_payload: Optional[Dict[str, Any]] = None) -> int:
        """Create a new run of ``pipeline`` and return its id."""
        pipeline = self._resolve_pipeline(pipeline)

        with self.run_store.lock():
            if not pipeline.allow_concurrent_runs:
                active = [state.run_id for state in self.run_store.list_runs(pipeline.name)
                          if not state.terminal]
                if active:
                    raise AlreadyRunningError(
                        f"Pipeline {pipeline.name} already has an active run: {active[0]}",
                        {"pipeline": pipeline.name, "run_id": active[0]}
                    )

            run_id = self.run_store.next_run_id()
            state = RunState.new(run_id, pipeline, trigger_payload)
            self.run_store.save(state)

        self.logger.info(f"Created run {run_id} of pipeline {pipeline.name}")
        return run_id

    def advance(self, run_id: int) -> RunState:
        """Drive a run as far as it can go and return its status.

        Calling ``advance`` on a finished or suspended run with no intervening
        change is a no-op; completed actions are never executed again.
        """
        thread = threading.current_thread()
        previous_correlation = getattr(thread, 'correlation_id', None)

        with self.run_store.lock(run_id):
            state = self.run_store.load(run_id)
            self._adopt_approvals(state)
            if state.terminal:
                return state

            thread.correlation_id = f"run-{run_id}"
            try:
                pipeline = self._pipeline_for(state)
                self._drive(pipeline, state)
            finally:
                thread.correlation_id = previous_correlation

            result = state.model_copy(deep=True)

        if result.terminal:
            self._discard_cancel_event(run_id)
            if self.retain_runs is not None:
                self.apply_retention(result.pipeline_name)

        return result

    def get_status(self, run_id: int) -> RunState:
        """Current status of a run."""
        return self.run_store.load(run_id)

    def cancel(self, run_id: int) -> RunState:
        """Cancel a run; in-flight actions are signalled to stop.

        The coordinator currently driving the run, in this process or in
        another one sharing the state directory, stops its actions and
        records the run as cancelled.
        """
        if self.run_store.load(run_id).terminal:
            raise InvalidStateError(f"Run {run_id} has already finished", {"run_id": run_id})

        self.run_store.request_cancel(run_id)
        self._cancel_event(run_id).set()
        self.logger.info(f"Cancellation requested for run {run_id}")

        try:
            with self.run_store.lock(run_id):
                state = self.run_store.load(run_id)
                if not state.terminal:
                    self._mark_cancelled(state)
        finally:
            self.run_store.clear_cancel(run_id)
            self._discard_cancel_event(run_id)

        if self.retain_runs is not None:
            self.apply_retention(state.pipeline_name)
        return state

    def decide(self, request_id: str, decision: Union[Decision, str], approver: str,
               comment: Optional[str] = None) -> RunState:
        """Record an approval decision and return the owning run's status."""
        run_id = self._request_owner(request_id)

        with self.run_store.lock(run_id):
            self._adopt_approvals(self.run_store.load(run_id))
            self.gate.decide(request_id, decision, approver, comment)

        return self.get_status(run_id)

    def _request_owner(self, request_id: str) -> int:
        try:
            return self.gate.get(request_id).run_id
        except ApprovalNotFoundError:
            # The request may belong to a run started by another process.
            self._restore_approvals()
            return self.gate.get(request_id).run_id

    def wait(self, run_id: int, timeout: Optional[float] = None,
             poll_interval: Optional[float] = None) -> RunState:
        """Advance a run until it finishes or ``timeout`` seconds elapse."""
        poll_interval = self.poll_interval if poll_interval is None else poll_interval
        deadline = None if timeout is None else time.time() + timeout

        while True:
            state = self.advance(run_id)
            if state.terminal:
                return state
            if deadline is not None and time.time() >= deadline:
                return state
            time.sleep(poll_interval)

    def list_runs(self, pipeline_name: Optional[str] = None) -> List[RunState]:
        return self.run_store.list_runs(pipeline_name)

    def get_execution_history(self, pipeline_name: Optional[str] = None,
                              limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Run summaries, newest first."""
        runs = list(reversed(self.run_store.list_runs(pipeline_name)))
        if limit is not None:
            runs = runs[:limit]
        return [state.summary() for state in runs]

    def retire_run(self, run_id: int) -> RunState:
        """Retire a finished run and garbage-collect its artifacts."""
        with self.run_store.lock(run_id):
            state = self.run_store.load(run_id)
            if not state.terminal:
                raise InvalidStateError(f"Run {run_id} is still active", {"run_id": run_id})
            if not state.retired:
                self.artifact_store.retire_run(run_id)
                state.retired = True
                self.run_store.save(state)
            return state

    def apply_retention(self, pipeline_name: str) -> List[int]:
        """Retire finished runs beyond the newest ``retain_runs``."""
        if self.retain_runs is None:
            return []

        finished = [state for state in self.run_store.list_runs(pipeline_name)
                    if state.terminal and not state.retired]
        excess = finished[:max(len(finished) - self.retain_runs, 0)]

        retired = []
        for state in excess:
            self.retire_run(state.run_id)
            retired.append(state.run_id)
        return retired

    # Run state machine

    def _save(self, state: RunState) -> None:
        self.run_store.save(state)

    def _drive(self, pipeline: Pipeline, state: RunState) -> None:
        if state.status == RunStatus.PENDING:
            state.status = RunStatus.RUNNING
            self._save(state)
            self.logger.info(f"Starting run {state.run_id} of pipeline {pipeline.name}")

        while not state.terminal:
            if self._cancel_requested(state.run_id):
                self._mark_cancelled(state)
                return

            stage_index = state.current_stage_index
            if stage_index >= len(pipeline.stages):
                state.status = RunStatus.SUCCEEDED
                state.finished_at = time.time()
                self._save(state)
                self.logger.info(f"Run {state.run_id} succeeded "
                                 f"in {state.finished_at - state.created_at:.2f} seconds")
                return

            if not self._drive_stage(pipeline, state, stage_index):
                return

            state.stages[stage_index].status = StageStatus.COMPLETED
            state.current_stage_index = stage_index + 1
            self._save(state)
            self.logger.info(f"Stage {pipeline.stages[stage_index].name} completed")

    def _drive_stage(self, pipeline: Pipeline, state: RunState, stage_index: int) -> bool:
        """Run the stage's groups in order. Returns True once every action succeeded."""
        stage = pipeline.stages[stage_index]
        stage_state = state.stages[stage_index]

        if stage_state.status == StageStatus.NOT_STARTED:
            stage_state.status = StageStatus.IN_PROGRESS
            self._save(state)
            self.logger.info(f"Executing stage: {stage.name}")

        for group in stage.run_order_groups():
            members = [(stage.actions[i], state.action_state(stage_index, i)) for i in group]
            if all(action_state.status == ActionStatus.SUCCEEDED for _, action_state in members):
                continue

            self._fail_interrupted(members)

            for action, action_state in members:
                if action.is_gate and action_state.status == ActionStatus.NOT_STARTED:
                    self._open_gate(state, stage, action, action_state)

            to_run = [i for i in group
                      if not stage.actions[i].is_gate
                      and state.action_state(stage_index, i).status == ActionStatus.NOT_STARTED]
            if to_run and not self._cancel_requested(state.run_id):
                self._execute_actions(pipeline, state, stage_index, to_run)

            for action, action_state in members:
                if action.is_gate and action_state.status == ActionStatus.IN_PROGRESS:
                    self._settle_gate(state, action_state)

            # Cancellation wins over failures of actions it interrupted.
            if self._cancel_requested(state.run_id):
                self._mark_cancelled(state)
                return False

            failed = [(action, action_state) for action, action_state in members
                      if action_state.status == ActionStatus.FAILED]
            if failed:
                self._fail_run(state, stage, failed[0][0], failed[0][1])
                return False

            if any(action_state.status != ActionStatus.SUCCEEDED for _, action_state in members):
                if stage_state.status != StageStatus.AWAITING_APPROVAL:
                    stage_state.status = StageStatus.AWAITING_APPROVAL
                    self._save(state)
                    self.logger.info(f"Stage {stage.name} awaiting approval")
                return False

            if stage_state.status == StageStatus.AWAITING_APPROVAL:
                stage_state.status = StageStatus.IN_PROGRESS
                self._save(state)

        return True

    def _fail_interrupted(self, members) -> None:
        # Never re-run an action whose previous execution was cut short.
        for action, action_state in members:
            if not action.is_gate and action_state.status == ActionStatus.IN_PROGRESS:
                action_state.status = ActionStatus.FAILED
                action_state.error = "Action was interrupted before completing and is not re-executed"
                action_state.finished_at = time.time()
                self.logger.warning(f"Action {action.name} was interrupted; marking it failed")

    def _open_gate(self, state: RunState, stage: StageDefinition, action: ActionDefinition,
                   action_state: ActionState) -> None:
        request_id = self.gate.request_approval(state.run_id, stage.name, action.name,
                                                action.timeout_seconds)
        action_state.status = ActionStatus.IN_PROGRESS
        action_state.started_at = time.time()
        action_state.approval_request_id = request_id
        state.approvals[request_id] = self.gate.get(request_id)
        self._save(state)

    def _settle_gate(self, state: RunState, action_state: ActionState) -> None:
        request = self.gate.check_timeout(action_state.approval_request_id)
        state.approvals[request.request_id] = request

        if request.state == ApprovalState.APPROVED:
            action_state.status = ActionStatus.SUCCEEDED
            action_state.finished_at = request.decided_at
        elif request.state == ApprovalState.REJECTED:
            action_state.status = ActionStatus.FAILED
            action_state.finished_at = request.decided_at
            if request.reason == REASON_TIMEOUT:
                action_state.error = f"Approval request {request.request_id} timed out"
            else:
                action_state.error = (f"Approval request {request.request_id} rejected"
                                      f" by {request.approver or 'system'}")

    def _execute_actions(self, pipeline: Pipeline, state: RunState, stage_index: int,
                         indices: List[int]) -> None:
        stage = pipeline.stages[stage_index]
        inputs: Dict[int, Any] = {}

        for index in indices:
            action = stage.actions[index]
            action_state = state.action_state(stage_index, index)
            try:
                inputs[index] = self._resolve_input(state, action)
            except ArtifactError as e:
                action_state.status = ActionStatus.FAILED
                action_state.error = str(e)
                action_state.finished_at = time.time()
                continue
            action_state.status = ActionStatus.IN_PROGRESS
            action_state.started_at = time.time()

        # InProgress is persisted before any collaborator call.
        self._save(state)

        runnable = [index for index in indices
                    if state.action_state(stage_index, index).status == ActionStatus.IN_PROGRESS]
        if not runnable:
            return

        cancel_event = self._cancel_event(state.run_id)
        results: Dict[int, ExecutionResult] = {}

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(runnable))) as executor:
            future_to_index = {
                executor.submit(self._execute_action, state.run_id, stage.name, stage_index, index,
                                stage.actions[index], inputs[index], dict(state.trigger),
                                cancel_event): index
                for index in runnable
            }

            pending = set(future_to_index)
            while pending:
                done, pending = wait_futures(pending, timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for future in done:
                    index = future_to_index[future]
                    try:
                        results[index] = future.result()
                    except Exception as e:
                        self.logger.error(f"Action {stage.actions[index].name} failed: {str(e)}")
                        results[index] = ExecutionResult(success=False, error_message=str(e))
                # Picks up cancellation requested by another process.
                self._cancel_requested(state.run_id)

        for index in runnable:
            self._record_result(state, stage_index, index, stage.actions[index], results[index])
        self._save(state)

    def _execute_action(self, run_id: int, stage_name: str, stage_index: int, action_index: int,
                        action: ActionDefinition, input_artifact: Any, trigger: Dict[str, Any],
                        cancel_event: threading.Event) -> ExecutionResult:
        threading.current_thread().correlation_id = f"run-{run_id}"
        context = ActionContext(
            run_id=run_id,
            stage_name=stage_name,
            action_id=f"{stage_index}.{action_index}",
            trigger=trigger,
            cancel_event=cancel_event,
            logger=self.logger
        )
        return self.runner.execute(action, input_artifact, context)

    def _resolve_input(self, state: RunState, action: ActionDefinition) -> Any:
        if not action.input_artifact:
            return None
        ref = state.artifact(action.input_artifact)
        if ref is None:
            raise ArtifactNotFoundError(f"Artifact '{action.input_artifact}' for action {action.name} "
                                        f"was not produced in run {state.run_id}")
        return self.artifact_store.get(ref)

    def _record_result(self, state: RunState, stage_index: int, action_index: int,
                       action: ActionDefinition, result: ExecutionResult) -> None:
        action_state = state.action_state(stage_index, action_index)
        action_state.attempts = result.attempts
        action_state.finished_at = time.time()

        if result.metadata.get("cancelled"):
            action_state.status = ActionStatus.CANCELLED
            action_state.error = result.error_message
            return

        if not result.success:
            action_state.status = ActionStatus.FAILED
            action_state.error = result.error_message or "Action failed"
            return

        if action.output_artifact:
            try:
                ref = self.artifact_store.put(state.run_id, action_state.action_id, result.output,
                                              name=action.output_artifact)
            except (PipelineError, OSError) as e:
                action_state.status = ActionStatus.FAILED
                action_state.error = f"Could not store artifact '{action.output_artifact}': {str(e)}"
                return
            action_state.output = ref
            state.artifacts.append(ref)

        action_state.status = ActionStatus.SUCCEEDED

    def _fail_run(self, state: RunState, stage: StageDefinition, action: ActionDefinition,
                  action_state: ActionState) -> None:
        if action.is_gate:
            request = state.approvals.get(action_state.approval_request_id)
            if request is not None and request.reason == REASON_TIMEOUT:
                state.reason = FailureReason.APPROVAL_TIMEOUT
            else:
                state.reason = FailureReason.REJECTED_BY_APPROVER
        else:
            state.reason = FailureReason.ACTION_FAILED

        state.reason_detail = f"{stage.name}/{action.name}: {action_state.error}"
        state.stages[state.current_stage_index].status = StageStatus.FAILED
        state.status = RunStatus.FAILED
        state.finished_at = time.time()
        self._withdraw_pending(state)
        self._save(state)
        self.logger.error(f"Run {state.run_id} failed ({state.reason}): {state.reason_detail}")

    def _mark_cancelled(self, state: RunState) -> None:
        now = time.time()
        for action_state in state.actions.values():
            if action_state.status == ActionStatus.IN_PROGRESS:
                action_state.status = ActionStatus.CANCELLED
                action_state.finished_at = now

        current = state.current_stage
        if current is not None and current.status in (StageStatus.IN_PROGRESS,
                                                       StageStatus.AWAITING_APPROVAL):
            current.status = StageStatus.FAILED

        state.status = RunStatus.CANCELLED
        state.reason = FailureReason.CANCELLED
        state.reason_detail = f"Run {state.run_id} cancelled"
        state.finished_at = now
        self._withdraw_pending(state)
        self._save(state)
        self.run_store.clear_cancel(state.run_id)
        self.logger.warning(f"Run {state.run_id} cancelled")

    def _withdraw_pending(self, state: RunState) -> None:
        for request_id, request in list(state.approvals.items()):
            if request.pending:
                closed = self.gate.withdraw(request_id, REASON_WITHDRAWN)
                state.approvals[request_id] = closed or self.gate.get(request_id)

    def _on_approval_decision(self, request: ApprovalRequest) -> None:
        # Only approver decisions resume a run; system closures happen
        # inside the run's own coordinator.
        if request.approver is None:
            return
        try:
            self.advance(request.run_id)
        except PipelineError as e:
            self.logger.error(f"Failed to advance run {request.run_id} after approval decision: {str(e)}")

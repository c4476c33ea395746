"""Run records and their persistence.

A ``RunState`` is the mutable record of one execution of an immutable
``Pipeline`` definition. Stages and actions are referenced by index into the
definition, never by object. Records are persisted as one JSON document per
run so that an engine restarted in a new process can resume by replaying
``advance``.
"""

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from .errors import RunLockedError, RunNotFoundError
from .interfaces import (
    ActionCapability,
    ActionStatus,
    ApprovalState,
    Pipeline,
    RunStatus,
    StageStatus,
    action_key,
)


class ArtifactRef(BaseModel):
    """Content-identified handle to an artifact produced by one action."""
    run_id: int
    action_id: str
    digest: str
    name: Optional[str] = None
    created_at: float = Field(default_factory=time.time)

    model_config = {"frozen": True}


class ApprovalRequest(BaseModel):
    """Manual approval request created when a gate action begins."""
    request_id: str
    run_id: int
    stage_name: str
    action_name: Optional[str] = None
    state: ApprovalState = ApprovalState.PENDING
    approver: Optional[str] = None
    comment: Optional[str] = None
    reason: Optional[str] = None
    timeout_seconds: Optional[float] = None
    created_at: float = Field(default_factory=time.time)
    decided_at: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self.state == ApprovalState.PENDING

    def is_expired(self, now: Optional[float] = None) -> bool:
        if not self.pending or self.timeout_seconds is None:
            return False
        now = time.time() if now is None else now
        return now - self.created_at >= self.timeout_seconds


class ActionState(BaseModel):
    """Status of one action within a run."""
    action_id: str
    stage_index: int
    action_index: int
    name: str
    capability: ActionCapability
    status: ActionStatus = ActionStatus.NOT_STARTED
    attempts: int = 0
    error: Optional[str] = None
    output: Optional[ArtifactRef] = None
    approval_request_id: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


class StageState(BaseModel):
    """Status of one stage within a run."""
    name: str
    status: StageStatus = StageStatus.NOT_STARTED


class RunState(BaseModel):
    """Persisted record of one pipeline run."""
    run_id: int
    pipeline_name: str
    status: RunStatus = RunStatus.PENDING
    trigger: Dict[str, Any] = Field(default_factory=dict)
    current_stage_index: int = 0
    stages: List[StageState] = Field(default_factory=list)
    actions: Dict[str, ActionState] = Field(default_factory=dict)
    approvals: Dict[str, ApprovalRequest] = Field(default_factory=dict)
    artifacts: List[ArtifactRef] = Field(default_factory=list)
    reason: Optional[str] = None
    reason_detail: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    finished_at: Optional[float] = None
    retired: bool = False

    @classmethod
    def new(cls, run_id: int, pipeline: Pipeline,
            trigger: Optional[Dict[str, Any]] = None) -> "RunState":
        """Create the initial record for a run of ``pipeline``."""
        return cls(
            run_id=run_id,
            pipeline_name=pipeline.name,
            trigger=dict(trigger or {}),
            stages=[StageState(name=stage.name) for stage in pipeline.stages],
            actions={
                action_key(stage_index, action_index): ActionState(
                    action_id=action_key(stage_index, action_index),
                    stage_index=stage_index,
                    action_index=action_index,
                    name=action.name,
                    capability=action.capability
                )
                for stage_index, action_index, action in pipeline.iter_actions()
            }
        )

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @property
    def current_stage(self) -> Optional[StageState]:
        if self.current_stage_index < len(self.stages):
            return self.stages[self.current_stage_index]
        return None

    def action_state(self, stage_index: int, action_index: int) -> ActionState:
        return self.actions[action_key(stage_index, action_index)]

    def artifact(self, name: str) -> Optional[ArtifactRef]:
        """Latest artifact with the given name produced in this run."""
        for ref in reversed(self.artifacts):
            if ref.name == name:
                return ref
        return None

    def pending_approvals(self) -> List[ApprovalRequest]:
        return [request for request in self.approvals.values() if request.pending]

    def summary(self) -> Dict[str, Any]:
        """Compact dictionary used for history listings."""
        current = self.current_stage
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline_name,
            "status": self.status.value,
            "stage": current.name if current else None,
            "stage_status": current.status.value if current else None,
            "reason": self.reason,
            "created_at": self.created_at,
            "finished_at": self.finished_at
        }


class RunLock:
    """Re-entrant lock on one run, shared between processes through a lock file.

    Threads of one process serialise on an ``RLock``; the outermost
    acquisition also creates ``path`` exclusively, which other processes
    sharing the state directory wait on. A lock file left behind by a process
    that has exited is removed.
    """

    def __init__(self, path: Optional[Path] = None, timeout: Optional[float] = 300.0,
                 poll_interval: float = 0.05):
        self.path = path
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.RLock()
        self._depth = 0

    def acquire(self) -> None:
        self._lock.acquire()
        if self._depth == 0 and self.path is not None:
            try:
                self._acquire_file()
            except BaseException:
                self._lock.release()
                raise
        self._depth += 1

    def release(self) -> None:
        self._depth -= 1
        if self._depth == 0 and self.path is not None:
            try:
                os.remove(self.path)
            except FileNotFoundError:
                pass
        self._lock.release()

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def _acquire_file(self) -> None:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._remove_if_abandoned():
                    continue
                if self.timeout is not None and time.monotonic() - start >= self.timeout:
                    raise RunLockedError(f"Timed out waiting for lock {self.path}",
                                         {"path": str(self.path)})
                time.sleep(self.poll_interval)
                continue

            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(f"pid={os.getpid()}\n")
            return

    def _remove_if_abandoned(self) -> bool:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                content = f.read().strip()
        except FileNotFoundError:
            return True

        if not content.startswith("pid="):
            return False
        try:
            pid = int(content[len("pid="):])
        except ValueError:
            return False
        if pid == os.getpid():
            return False

        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            self.logger.warning(f"Removing lock {self.path} left by exited process {pid}")
            try:
                os.remove(self.path)
            except FileNotFoundError:
                pass
            return True
        except PermissionError:
            return False
        return False


class RunStore:
    """Stores run records in memory and, optionally, as JSON files.

    With a ``directory`` every read goes to disk so that several processes
    sharing the directory see each other's writes; writers serialise on
    ``lock(run_id)``.
    """

    def __init__(self, directory: Optional[str] = None, lock_timeout: Optional[float] = 300.0):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.directory = Path(directory) if directory else None
        self.lock_timeout = lock_timeout
        self._runs: Dict[int, RunState] = {}
        self._locks: Dict[Optional[int], RunLock] = {}
        self._cancel_requests: Set[int] = set()
        self._last_run_id = 0
        self._lock = threading.Lock()

        if self.directory:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._refresh_all()
            if self._runs:
                self.logger.info(f"Loaded {len(self._runs)} run records from {self.directory}")

    def _path(self, run_id: int) -> Path:
        return self.directory / f"run-{run_id:06d}.json"

    def _cancel_path(self, run_id: int) -> Path:
        return self.directory / f"run-{run_id:06d}.cancel"

    @staticmethod
    def _read(path: Path) -> RunState:
        with open(path, 'r', encoding='utf-8') as f:
            return RunState.model_validate(json.load(f))

    def _refresh_all(self) -> None:
        for path in sorted(self.directory.glob("run-*.json")):
            try:
                state = self._read(path)
            except FileNotFoundError:
                continue
            with self._lock:
                self._runs[state.run_id] = state
                self._last_run_id = max(self._last_run_id, state.run_id)

    def lock(self, run_id: Optional[int] = None) -> RunLock:
        """Lock held by the single writer of a run; without an id, the lock for creating runs."""
        with self._lock:
            run_lock = self._locks.get(run_id)
            if run_lock is None:
                path = None
                if self.directory:
                    name = "runs.lock" if run_id is None else f"run-{run_id:06d}.lock"
                    path = self.directory / name
                run_lock = self._locks[run_id] = RunLock(path, self.lock_timeout)
            return run_lock

    def next_run_id(self) -> int:
        """Allocate the next run id; ids increase monotonically.

        Callers sharing a directory hold ``lock()`` until the new record is saved.
        """
        if self.directory:
            self._refresh_all()
        with self._lock:
            self._last_run_id += 1
            return self._last_run_id

    def save(self, state: RunState) -> None:
        """Persist a run record."""
        state.updated_at = time.time()
        snapshot = state.model_copy(deep=True)

        with self._lock:
            self._runs[state.run_id] = snapshot
            self._last_run_id = max(self._last_run_id, state.run_id)

            if self.directory:
                path = self._path(state.run_id)
                tmp_path = path.with_suffix('.json.tmp')
                with open(tmp_path, 'w', encoding='utf-8') as f:
                    json.dump(snapshot.model_dump(mode='json'), f, indent=2)
                os.replace(tmp_path, path)

    def load(self, run_id: int) -> RunState:
        """Return a private copy of a run record."""
        if self.directory and self._path(run_id).exists():
            state = self._read(self._path(run_id))
            with self._lock:
                self._runs[run_id] = state
            return state.model_copy(deep=True)

        with self._lock:
            state = self._runs.get(run_id)
            if state is None:
                raise RunNotFoundError(f"Run {run_id} not found", {"run_id": run_id})
            return state.model_copy(deep=True)

    def list_runs(self, pipeline_name: Optional[str] = None) -> List[RunState]:
        """List run records ordered by run id."""
        if self.directory:
            self._refresh_all()
        with self._lock:
            runs = [
                state.model_copy(deep=True)
                for run_id, state in sorted(self._runs.items())
                if pipeline_name is None or state.pipeline_name == pipeline_name
            ]
        return runs

    def request_cancel(self, run_id: int) -> None:
        """Leave a cancellation request for whichever process coordinates the run."""
        with self._lock:
            self._cancel_requests.add(run_id)
        if self.directory:
            self._cancel_path(run_id).touch()

    def cancel_requested(self, run_id: int) -> bool:
        with self._lock:
            if run_id in self._cancel_requests:
                return True
        return bool(self.directory) and self._cancel_path(run_id).exists()

    def clear_cancel(self, run_id: int) -> None:
        with self._lock:
            self._cancel_requests.discard(run_id)
        if self.directory:
            try:
                os.remove(self._cancel_path(run_id))
            except FileNotFoundError:
                pass

    def __contains__(self, run_id: int) -> bool:
        if self.directory and self._path(run_id).exists():
            return True
        with self._lock:
            return run_id in self._runs

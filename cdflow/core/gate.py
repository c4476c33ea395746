"""Manual approval gate."""

import logging
import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Union

from .errors import ApprovalNotFoundError, FailureReason, InvalidStateError
from .interfaces import ApprovalState, Decision
from .state import ApprovalRequest


REASON_TIMEOUT = "Timeout"
REASON_WITHDRAWN = "Withdrawn"

DecisionListener = Callable[[ApprovalRequest], None]


class ApprovalGate:
    """Holds approval requests and records approver decisions.

    A request starts ``Pending`` and moves exactly once to ``Approved`` or
    ``Rejected``. Listeners are called after every state change, outside the
    gate lock, with a copy of the request.
    """

    def __init__(self, default_timeout_seconds: Optional[float] = None):
        self.default_timeout_seconds = default_timeout_seconds
        self.logger = logging.getLogger(self.__class__.__name__)
        self._requests: Dict[str, ApprovalRequest] = {}
        self._listeners: List[DecisionListener] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: DecisionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: DecisionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def request_approval(self, run_id: int, stage_name: str, action_name: Optional[str] = None,
                         timeout_seconds: Optional[float] = None) -> str:
        """Create a pending approval request and return its id."""
        if timeout_seconds is None:
            timeout_seconds = self.default_timeout_seconds

        request = ApprovalRequest(
            request_id=uuid.uuid4().hex,
            run_id=run_id,
            stage_name=stage_name,
            action_name=action_name,
            timeout_seconds=timeout_seconds
        )

        with self._lock:
            self._requests[request.request_id] = request

        self.logger.info(f"Approval requested for run {run_id} stage {stage_name}: {request.request_id}")
        return request.request_id

    def restore(self, request: ApprovalRequest) -> None:
        """Adopt a request loaded from a persisted run record.

        A decision recorded elsewhere replaces a request the gate still holds
        as pending; a request the gate has already closed is left untouched.
        Listeners are not notified.
        """
        with self._lock:
            held = self._requests.get(request.request_id)
            if held is None or (held.pending and not request.pending):
                self._requests[request.request_id] = request.model_copy()

    def get(self, request_id: str) -> ApprovalRequest:
        with self._lock:
            return self._get(request_id).model_copy()

    def _get(self, request_id: str) -> ApprovalRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise ApprovalNotFoundError(f"Approval request {request_id} not found",
                                        {"request_id": request_id})
        return request

    def pending(self, run_id: Optional[int] = None) -> List[ApprovalRequest]:
        """Pending requests, optionally limited to one run."""
        with self._lock:
            return [
                request.model_copy()
                for request in self._requests.values()
                if request.pending and (run_id is None or request.run_id == run_id)
            ]

    def decide(self, request_id: str, decision: Union[Decision, str], approver: str,
               comment: Optional[str] = None) -> ApprovalRequest:
        """Record an approver's decision on a pending request."""
        decision = Decision(decision)

        with self._lock:
            request = self._get(request_id)
            if not request.pending:
                raise InvalidStateError(
                    f"Approval request {request_id} is already {request.state.value}",
                    {"request_id": request_id, "state": request.state.value}
                )

            request.approver = approver
            request.comment = comment
            request.decided_at = time.time()
            if decision == Decision.APPROVED:
                request.state = ApprovalState.APPROVED
            else:
                request.state = ApprovalState.REJECTED
                request.reason = FailureReason.REJECTED_BY_APPROVER
            decided = request.model_copy()

        self.logger.info(f"Approval request {request_id} {decided.state.value} by {approver}")
        self._notify(decided)
        return decided

    def withdraw(self, request_id: str, reason: str = REASON_WITHDRAWN) -> Optional[ApprovalRequest]:
        """Reject a pending request on behalf of the system."""
        return self._close(request_id, reason)

    def check_timeout(self, request_id: str, now: Optional[float] = None) -> ApprovalRequest:
        """Reject the request with reason ``Timeout`` if it has expired."""
        with self._lock:
            expired = self._get(request_id).is_expired(now)
        if expired:
            self._close(request_id, REASON_TIMEOUT)
        return self.get(request_id)

    def expire_stale(self, now: Optional[float] = None) -> List[ApprovalRequest]:
        """Time out every expired pending request."""
        with self._lock:
            expired_ids = [request_id for request_id, request in self._requests.items()
                           if request.is_expired(now)]

        expired = []
        for request_id in expired_ids:
            request = self._close(request_id, REASON_TIMEOUT)
            if request is not None:
                expired.append(request)
        return expired

    def _close(self, request_id: str, reason: str) -> Optional[ApprovalRequest]:
        with self._lock:
            request = self._get(request_id)
            if not request.pending:
                return None
            request.state = ApprovalState.REJECTED
            request.reason = reason
            request.decided_at = time.time()
            closed = request.model_copy()

        self.logger.warning(f"Approval request {request_id} rejected: {reason}")
        self._notify(closed)
        return closed

    def _notify(self, request: ApprovalRequest) -> None:
        for listener in list(self._listeners):
            listener(request)

"""Error taxonomy and retry handling for pipeline runs."""

import json
import logging
import time
import traceback
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, Optional


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of pipeline errors."""
    CONFIGURATION = "configuration"
    COLLABORATOR = "collaborator"
    ACTION = "action"
    ARTIFACT = "artifact"
    STATE = "state"
    APPROVAL = "approval"
    SYSTEM = "system"


class FailureReason:
    """Reason codes recorded on runs that did not succeed."""
    ACTION_FAILED = "ActionFailed"
    REJECTED_BY_APPROVER = "RejectedByApprover"
    APPROVAL_TIMEOUT = "ApprovalTimeout"
    CANCELLED = "Cancelled"


@dataclass
class ErrorContext:
    """Context information for an error."""
    error_id: str
    timestamp: float
    run_id: Optional[int]
    stage_name: str
    action_name: Optional[str]
    error_message: str
    exception_type: str
    stack_trace: str
    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool
    metadata: Dict[str, Any]
    attempt: int = 1


@dataclass
class RetryPolicy:
    """Bounded retry policy for transient collaborator failures."""
    max_retries: int = 3
    retry_delay: float = 1.0
    exponential_backoff: bool = True
    max_delay: float = 60.0

    def delay_for(self, retry_count: int) -> float:
        """Delay before retry number ``retry_count`` (zero based)."""
        if self.exponential_backoff:
            delay = self.retry_delay * (2 ** retry_count)
        else:
            delay = self.retry_delay
        return min(delay, self.max_delay)


class PipelineError(Exception):
    """Base class for pipeline-specific errors."""

    retryable = False

    def __init__(self, message: str, category: ErrorCategory, severity: ErrorSeverity,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or {}
        self.timestamp = time.time()


class ConfigurationError(PipelineError):
    """Invalid pipeline definition or missing collaborator."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.CONFIGURATION, ErrorSeverity.HIGH, context)


class TransientCollaboratorError(PipelineError):
    """A collaborator could not be reached; the call may be retried."""

    retryable = True

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.COLLABORATOR, ErrorSeverity.MEDIUM, context)


class TerminalActionFailure(PipelineError):
    """A collaborator reported failure; the action must not be retried."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.ACTION, ErrorSeverity.HIGH, context)


class InvalidStateError(PipelineError):
    """An operation was invoked in a state that does not allow it."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.STATE, ErrorSeverity.HIGH, context)


class AlreadyRunningError(PipelineError):
    """The pipeline already has an active run and disallows concurrency."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.STATE, ErrorSeverity.MEDIUM, context)


class ActionCancelledError(PipelineError):
    """A collaborator stopped work because the run was cancelled."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.ACTION, ErrorSeverity.LOW, context)


class RunLockedError(PipelineError):
    """Another coordinator held the run's lock for too long."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.STATE, ErrorSeverity.MEDIUM, context)


class RunNotFoundError(PipelineError):
    """No run record exists for the given id."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.STATE, ErrorSeverity.MEDIUM, context)


class ApprovalNotFoundError(PipelineError):
    """No approval request exists for the given id."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.APPROVAL, ErrorSeverity.MEDIUM, context)


class ArtifactError(PipelineError):
    """Base class for artifact store errors."""

    def __init__(self, message: str, severity: ErrorSeverity = ErrorSeverity.HIGH,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.ARTIFACT, severity, context)


class DuplicateArtifactError(ArtifactError):
    """An artifact was already written for this (run, action) pair."""


class ArtifactExpiredError(ArtifactError):
    """The run owning the artifact has been retired."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorSeverity.MEDIUM, context)


class ArtifactNotFoundError(ArtifactError):
    """The artifact reference is unknown to the store."""


class ArtifactEncodingError(ArtifactError):
    """The payload can be neither JSON-encoded nor pickled."""


class ArtifactIntegrityError(ArtifactError):
    """Stored payload no longer matches its content digest."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorSeverity.CRITICAL, context)


# Builtin exceptions that signal an unreachable collaborator.
TRANSIENT_EXCEPTIONS = (ConnectionError, TimeoutError)


class ErrorHandler:
    """Classifies action errors, keeps an error history and reports on it.

    Only the newest ``max_history`` errors are kept in memory; the error log
    file, when configured, receives every error.
    """

    def __init__(self, error_log_path: Optional[str] = None, max_history: int = 1000):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.error_log_path = Path(error_log_path) if error_log_path else None
        self.error_history: Deque[ErrorContext] = deque(maxlen=max_history)

        if self.error_log_path:
            self.error_log_path.parent.mkdir(parents=True, exist_ok=True)

    def is_retryable(self, exception: BaseException) -> bool:
        """Whether the exception marks a transient collaborator failure."""
        if isinstance(exception, PipelineError):
            return exception.retryable
        return isinstance(exception, TRANSIENT_EXCEPTIONS)

    def classify_error(self, exception: BaseException, context: Dict[str, Any]) -> ErrorContext:
        """Classify an error and create error context."""
        category, severity = self._categorize_error(exception)

        error_context = ErrorContext(
            error_id=str(uuid.uuid4()),
            timestamp=time.time(),
            run_id=context.get('run_id'),
            stage_name=context.get('stage_name', 'unknown'),
            action_name=context.get('action_name'),
            error_message=str(exception),
            exception_type=type(exception).__name__,
            stack_trace=''.join(traceback.format_exception(type(exception), exception,
                                                           exception.__traceback__)),
            category=category,
            severity=severity,
            retryable=self.is_retryable(exception),
            metadata=dict(context),
            attempt=context.get('attempt', 1)
        )

        self._log_error(error_context)
        self.error_history.append(error_context)

        return error_context

    def _categorize_error(self, exception: BaseException) -> tuple:
        """Categorize an error based on its type."""
        if isinstance(exception, PipelineError):
            return exception.category, exception.severity

        if isinstance(exception, TRANSIENT_EXCEPTIONS):
            return ErrorCategory.COLLABORATOR, ErrorSeverity.MEDIUM

        if isinstance(exception, (OSError, MemoryError)):
            return ErrorCategory.SYSTEM, ErrorSeverity.CRITICAL

        return ErrorCategory.ACTION, ErrorSeverity.HIGH

    def _log_error(self, error_context: ErrorContext) -> None:
        """Log error to file and logger."""
        log_entry = {
            'error_id': error_context.error_id,
            'timestamp': error_context.timestamp,
            'run_id': error_context.run_id,
            'stage_name': error_context.stage_name,
            'action_name': error_context.action_name,
            'error_message': error_context.error_message,
            'exception_type': error_context.exception_type,
            'category': error_context.category.value,
            'severity': error_context.severity.value,
            'retryable': error_context.retryable,
            'attempt': error_context.attempt
        }

        if error_context.retryable:
            self.logger.warning(f"Transient error [{error_context.error_id}] in "
                                f"{error_context.stage_name}/{error_context.action_name}: "
                                f"{error_context.error_message}")
        else:
            self.logger.error(f"Action error [{error_context.error_id}] in "
                              f"{error_context.stage_name}/{error_context.action_name}: "
                              f"{error_context.error_message}")

        if self.error_log_path:
            try:
                with open(self.error_log_path, 'a') as f:
                    f.write(json.dumps(log_entry) + '\n')
            except OSError as e:
                self.logger.error(f"Failed to write error log: {str(e)}")

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics from history."""
        if not self.error_history:
            return {"total_errors": 0}

        stats = {
            "total_errors": len(self.error_history),
            "retryable": len([e for e in self.error_history if e.retryable]),
            "by_category": {},
            "by_severity": {},
            "by_stage": {}
        }

        for error in self.error_history:
            category = error.category.value
            stats["by_category"][category] = stats["by_category"].get(category, 0) + 1

            severity = error.severity.value
            stats["by_severity"][severity] = stats["by_severity"].get(severity, 0) + 1

            stage = error.stage_name
            stats["by_stage"][stage] = stats["by_stage"].get(stage, 0) + 1

        return stats

    def clear_error_history(self) -> None:
        """Clear the error history."""
        self.error_history.clear()
        self.logger.info("Error history cleared")

    def export_error_report(self, output_path: str) -> None:
        """Export detailed error report to file."""
        report = {
            "generated_at": time.time(),
            "statistics": self.get_error_statistics(),
            "errors": [
                {
                    "error_id": error.error_id,
                    "timestamp": error.timestamp,
                    "run_id": error.run_id,
                    "stage_name": error.stage_name,
                    "action_name": error.action_name,
                    "error_message": error.error_message,
                    "category": error.category.value,
                    "severity": error.severity.value,
                    "retryable": error.retryable,
                    "attempt": error.attempt
                }
                for error in self.error_history
            ]
        }

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w') as f:
            json.dump(report, f, indent=2)

        self.logger.info(f"Error report exported to {output_path}")

"""Stage runner: executes single actions through their collaborators."""

import logging
import time
from typing import Any, Optional

from .errors import (
    ActionCancelledError,
    ConfigurationError,
    ErrorHandler,
    InvalidStateError,
    RetryPolicy,
    TerminalActionFailure,
)
from .interfaces import (
    ActionCapability,
    ActionContext,
    ActionDefinition,
    Builder,
    BuildSpec,
    Deployer,
    ExecutionResult,
    SourceProvider,
)


class StageRunner:
    """Dispatches actions to collaborators and applies the retry policy.

    Transient collaborator failures are retried up to
    ``retry_policy.max_retries`` times with backoff; any other failure is
    terminal for the action. The runner never caches results across runs.
    """

    def __init__(self, source_provider: Optional[SourceProvider] = None,
                 builder: Optional[Builder] = None,
                 deployer: Optional[Deployer] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 error_handler: Optional[ErrorHandler] = None):
        self.source_provider = source_provider
        self.builder = builder
        self.deployer = deployer
        self.retry_policy = retry_policy or RetryPolicy()
        self.error_handler = error_handler or ErrorHandler()
        self.logger = logging.getLogger(self.__class__.__name__)

    def execute(self, action: ActionDefinition, input_artifact: Any = None,
                context: Optional[ActionContext] = None) -> ExecutionResult:
        """Execute one action against its input artifact.

        A result carrying ``metadata["cancelled"]`` means the run was cancelled
        before the action completed.
        """
        if action.is_gate:
            raise InvalidStateError(f"Approval action {action.name} is handled by the gate, not the runner")

        context = context or ActionContext(run_id=0, stage_name="", action_id="")
        start_time = time.time()
        attempt = 0

        while True:
            if context.cancelled:
                return self._cancelled(action, attempt, start_time,
                                       f"Action {action.name} cancelled before attempt {attempt + 1}")

            attempt += 1
            try:
                output = self._dispatch(action, input_artifact, context)
                if action.output_artifact and output is None:
                    raise TerminalActionFailure(
                        f"Action {action.name} produced no '{action.output_artifact}' artifact"
                    )
                self.logger.info(f"Action {context.stage_name}/{action.name} succeeded "
                                 f"(attempt {attempt})")
                return ExecutionResult(
                    success=True,
                    output=output,
                    attempts=attempt,
                    execution_time=time.time() - start_time,
                    metadata={"capability": action.capability.value}
                )

            except Exception as e:
                if isinstance(e, ActionCancelledError) or context.cancelled:
                    return self._cancelled(action, attempt, start_time,
                                           f"Action {action.name} cancelled: {e}")

                error_context = self.error_handler.classify_error(e, {
                    'run_id': context.run_id,
                    'stage_name': context.stage_name,
                    'action_name': action.name,
                    'action_id': context.action_id,
                    'attempt': attempt
                })

                retries_used = attempt - 1
                if error_context.retryable and retries_used < self.retry_policy.max_retries:
                    delay = self.retry_policy.delay_for(retries_used)
                    self.logger.warning(f"Retrying action {action.name} in {delay} seconds "
                                        f"(attempt {attempt}/{self.retry_policy.max_retries + 1})")
                    # Returns early when the run is cancelled.
                    context.cancel_event.wait(delay)
                    continue
                elif error_context.retryable:
                    error_message = (f"Action {action.name} failed after {attempt} attempts: {e}")
                else:
                    error_message = str(e)

                return ExecutionResult(
                    success=False,
                    attempts=attempt,
                    error_message=error_message,
                    execution_time=time.time() - start_time,
                    metadata={
                        "capability": action.capability.value,
                        "error_context": error_context.error_id,
                        "retryable": error_context.retryable
                    }
                )

    def _cancelled(self, action: ActionDefinition, attempt: int, start_time: float,
                   message: str) -> ExecutionResult:
        self.logger.info(message)
        return ExecutionResult(
            success=False,
            attempts=attempt,
            error_message=message,
            execution_time=time.time() - start_time,
            metadata={"capability": action.capability.value, "cancelled": True}
        )

    def _dispatch(self, action: ActionDefinition, input_artifact: Any, context: ActionContext) -> Any:
        capability = action.capability

        if capability == ActionCapability.SOURCE_FETCH:
            ref = context.trigger.get("ref") or action.configuration.get("ref")
            return self._require(self.source_provider, action).fetch(ref, context=context)

        if capability in (ActionCapability.BUILD, ActionCapability.TEST):
            spec = BuildSpec(
                action_name=action.name,
                build_spec=action.build_spec,
                environment=dict(action.environment),
                settings=dict(action.settings)
            )
            return self._require(self.builder, action).run(spec, input_artifact, context=context)

        if capability == ActionCapability.DEPLOY:
            return self._require(self.deployer, action).deploy(action.service_id, input_artifact,
                                                               context=context)

        raise ConfigurationError(f"Unsupported capability {capability.value} for action {action.name}")

    @staticmethod
    def _require(collaborator, action: ActionDefinition):
        if collaborator is None:
            raise ConfigurationError(
                f"No collaborator configured for {action.capability.value} action {action.name}"
            )
        return collaborator

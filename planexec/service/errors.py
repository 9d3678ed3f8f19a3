from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class for execution-engine exceptions.

    Each exception class carries a stable ``error_code`` alongside the
    human-readable message so callers (API layers, CLIs) can map failures
    without parsing strings:
    - plan_configuration_error
    - plan_not_found
    - execution_not_found
    - invalid_execution_state
    - tool_error
    """

    error_code: str = "engine_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class PlanConfigurationError(EngineError):
    """Malformed plan, bad dependency, unresolved reference or invalid config.

    Fatal for the run and never retried.
    """

    error_code = "plan_configuration_error"
    retryable = False


class PlanNotFoundError(EngineError):
    """No plan is registered under the requested plan request ID."""

    error_code = "plan_not_found"


class ExecutionNotFoundError(EngineError):
    """No execution record exists for the requested execution ID."""

    error_code = "execution_not_found"


class InvalidExecutionStateError(EngineError):
    """The execution is not in a status that permits the requested action."""

    error_code = "invalid_execution_state"


class ToolError(EngineError):
    """A tool invocation failed.

    ``retryable`` is an explicit classification marker: True or False wins
    over every heuristic, None leaves the decision to the classifier.
    ``retry_after_ms`` overrides the computed backoff for the next attempt.
    """

    error_code = "tool_error"

    def __init__(
        self,
        message: str,
        *,
        retryable: Optional[bool] = None,
        retry_after_ms: Optional[float] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.retryable = retryable
        self.retry_after_ms = retry_after_ms
        self.code = code
        self.status_code = status_code


class StepCancelledError(EngineError):
    """A step was interrupted because its run was cancelled or timed out."""

    error_code = "step_cancelled"
    retryable = False


__all__ = [
    "EngineError",
    "PlanConfigurationError",
    "PlanNotFoundError",
    "ExecutionNotFoundError",
    "InvalidExecutionStateError",
    "ToolError",
    "StepCancelledError",
]

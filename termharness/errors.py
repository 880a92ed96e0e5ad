"""
TermHarness Error Hierarchy

Base error and specific error types for all harness components.
Errors carry metadata for structured logging.
"""

from typing import Any, Dict, List, Optional


class HarnessError(RuntimeError):
    """
    Base error for harness components. Carries metadata for structured logging.

    Attributes:
        category: Error category for classification (e.g., "process", "validation")
        retryable: Whether the operation can be retried
        metadata: Additional context for logging and debugging
    """

    category: str = "runtime"
    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.metadata = metadata or {}
        if retryable is not None:
            self.retryable = retryable


# Configuration Errors
class ConfigError(HarnessError):
    """Raised when configuration is invalid or missing."""

    category = "config"
    retryable = False


# Process Errors
class ProcessError(HarnessError):
    """Base class for application-under-test lifecycle errors."""

    category = "process"


class InitializationTimeout(ProcessError):
    """Raised when the process shows no readiness signal within the init timeout."""


class InitializationAborted(ProcessError):
    """Raised when the process exits or reports an error before becoming ready."""


class ProcessNotRunning(ProcessError):
    """Raised when an operation targets a process that has exited or was never started."""

    retryable = False


class GracefulShutdownTimeout(ProcessError):
    """Raised when the quit command does not end the process in time."""


class ForceTerminationTimeout(ProcessError):
    """Raised when the termination signal does not end the process in time."""


class InputTimeout(ProcessError):
    """Raised when writing to the process input channel does not complete in time."""


class WaitTimeout(HarnessError):
    """Raised when a polling wait does not observe its condition before the deadline."""

    category = "wait"


# Recovery Errors
class RetryExhausted(HarnessError):
    """Raised when an operation failed on every allowed attempt."""

    category = "recovery"
    retryable = False

    def __init__(self, message: str, *, original_error: BaseException, attempts: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.original_error = original_error
        self.attempts = attempts


class EmergencyCleanupError(HarnessError):
    """Raised after emergency cleanup when one or more teardown actions failed."""

    category = "cleanup"
    retryable = False

    def __init__(self, message: str, *, errors: List[BaseException], **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.errors = list(errors)


# Scenario Errors
class ScenarioValidationError(HarnessError, ValueError):
    """Raised when a scenario document is malformed."""

    category = "validation"
    retryable = False


class StepFailure(HarnessError):
    """Raised when a scenario step fails. Index is 1-based."""

    category = "scenario"

    def __init__(self, message: str, *, index: int, step_type: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.index = index
        self.step_type = step_type


class AssertionFailure(HarnessError, AssertionError):
    """Raised when a scenario assertion or harness assert helper fails."""

    category = "assertion"

    def __init__(
        self,
        message: str,
        *,
        index: Optional[int] = None,
        assertion_type: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.index = index
        self.assertion_type = assertion_type


# Extension Errors
class HookError(HarnessError):
    """Raised when a custom step or assertion type has no registered handler."""

    category = "extension"
    retryable = False


class PluginError(HarnessError):
    """Raised when plugin registration fails."""

    category = "extension"
    retryable = False

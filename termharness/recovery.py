"""
TermHarness Retry and Recovery

Bounded exponential-backoff retry, a registry of resources that need
teardown, ordered emergency cleanup, and severity-classified error reports.
"""

import os
import platform
import random
import sys
import threading
import time
import traceback
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from termharness.errors import EmergencyCleanupError, HarnessError, RetryExhausted
from termharness.logging import get_logger, log_extra

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0
DEFAULT_JITTER = 0.1
DEFAULT_CLEANUP_TIMEOUT = 5.0


class ResourceType(str, Enum):
    PROCESS = "process"
    SERVER = "server"
    FILE = "file"
    DIRECTORY = "directory"


# Processes go first because they may still talk to the server or hold files open.
CLEANUP_ORDER = (ResourceType.PROCESS, ResourceType.SERVER, ResourceType.FILE, ResourceType.DIRECTORY)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryState(str, Enum):
    FAILED = "failed"
    RECOVERED = "recovered"
    DEGRADED = "degraded"
    RECOVERY_FAILED = "recovery_failed"


@dataclass
class Resource:
    """Something that needs teardown: a process, server, file or directory."""
    type: ResourceType
    identifier: str
    cleanup: Callable[[], Any]

    def __post_init__(self) -> None:
        self.type = ResourceType(self.type)


@dataclass
class ErrorContext:
    """Where a failure happened and what recovery can use."""
    operation: str = "unknown"
    phase: str = "execution"  # setup | execution | cleanup | assertion
    resources: Optional[List[Resource]] = None
    retry_attempts: int = 0
    retryable_operation: Optional[Callable[[], Any]] = None
    fallback_action: Optional[Callable[[], Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RecoveryOptions:
    attempt_recovery: bool = True
    retry_operation: bool = False
    max_retries: Optional[int] = None
    perform_cleanup: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RecoveryOptions":
        data = data or {}
        return cls(
            attempt_recovery=data.get("attemptRecovery", data.get("attempt_recovery", True)),
            retry_operation=data.get("retryOperation", data.get("retry_operation", False)),
            max_retries=data.get("maxRetries", data.get("max_retries")),
            perform_cleanup=data.get("performCleanup", data.get("perform_cleanup", True)),
        )


@dataclass
class ErrorReport:
    timestamp: float
    error_type: str
    message: str
    stack: str
    context: Dict[str, Any]
    suggestions: List[str]
    severity: Severity

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        return data


@dataclass
class TestFailureResult:
    __test__ = False

    original_error: BaseException
    error_report: ErrorReport
    recovery_attempted: bool = False
    recovery_successful: bool = False
    cleanup_performed: bool = False
    cleanup_error: Optional[BaseException] = None
    recovery_error: Optional[BaseException] = None
    duration: float = 0.0
    final_state: RecoveryState = RecoveryState.FAILED


_SUGGESTION_RULES = (
    (
        ("timeout", "timedout", "timed out"),
        [
            "Consider increasing timeout values",
            "Check if the application is responding correctly",
            "Verify network connectivity if using remote services",
        ],
    ),
    (
        ("enoent", "file not found", "no such file"),
        [
            "Verify file paths are correct",
            "Check if required files were created during setup",
            "Ensure proper cleanup from previous test runs",
        ],
    ),
    (
        ("eaddrinuse", "address already in use", "port"),
        [
            "Check if another process is using the port",
            "Try using a different port number",
            "Ensure proper cleanup of previous test servers",
        ],
    ),
    (
        ("spawn", "process"),
        [
            "Verify the application executable exists",
            "Check file permissions",
            "Ensure all dependencies are installed",
        ],
    ),
)

_PHASE_HINTS = {
    "setup": [
        "Review test setup configuration",
        "Check if all required resources are available",
    ],
    "execution": [
        "Review test step configuration",
        "Check application logs for additional context",
    ],
    "cleanup": [
        "Some resources may require manual cleanup",
        "Check for hanging processes or locked files",
    ],
}

_CRITICAL_MARKERS = ("emfile", "enomem", "too many open files", "out of memory")


def suggest_fixes(message: str, phase: str) -> List[str]:
    lower = message.lower()
    suggestions: List[str] = []
    for markers, hints in _SUGGESTION_RULES:
        if any(marker in lower for marker in markers):
            suggestions.extend(hints)
    suggestions.extend(_PHASE_HINTS.get(phase, []))
    return suggestions


def assess_severity(error: BaseException, phase: str) -> Severity:
    lower = str(error).lower()
    if isinstance(error, MemoryError) or any(marker in lower for marker in _CRITICAL_MARKERS):
        return Severity.CRITICAL
    if phase in ("setup", "cleanup"):
        return Severity.HIGH
    if "spawn" in lower or "server" in lower:
        return Severity.HIGH
    return Severity.MEDIUM


def backoff_delay(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = DEFAULT_JITTER,
    jitter_fraction: float = 0.0,
) -> float:
    """
    Delay before retry number `attempt` (1-based).

    min(base * 2^(attempt-1), max) plus jitter * jitter_fraction of that,
    where jitter_fraction is in [0, 1].
    """
    delay = min(base_delay * (2 ** min(attempt - 1, 64)), max_delay)
    return delay + delay * jitter * jitter_fraction


class RetryRecoveryEngine:
    """
    Retry, degrade, clean up and report.

    Per-operation attempt counters are cleared on success and on exhaustion,
    so an operation id can be reused after any terminal outcome.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        jitter: float = DEFAULT_JITTER,
        cleanup_timeout: float = DEFAULT_CLEANUP_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.cleanup_timeout = cleanup_timeout
        self._sleep = sleep
        self._rng = rng
        self._attempts: Dict[str, int] = {}
        self._resources: List[Resource] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def compute_delay(self, attempt: int) -> float:
        return backoff_delay(attempt, self.base_delay, self.max_delay, self.jitter, self._rng())

    def get_attempt_count(self, operation_id: str) -> int:
        with self._lock:
            return self._attempts.get(operation_id, 0)

    def retry_with_backoff(
        self,
        operation: Callable[[], T],
        max_attempts: Optional[int] = None,
        operation_id: Optional[str] = None,
    ) -> T:
        """Run operation until it succeeds or max_attempts is reached."""
        max_attempts = self.max_retries if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        op_id = operation_id or f"op_{uuid.uuid4().hex[:12]}"
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            with self._lock:
                self._attempts[op_id] = attempt
            try:
                result = operation()
            except Exception as exc:
                last_error = exc
                if isinstance(exc, HarnessError) and not exc.retryable:
                    self._clear_attempts(op_id)
                    raise
                logger.warning(
                    "retry_attempt_failed",
                    extra=log_extra(
                        operation_id=op_id,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        error=str(exc),
                    ),
                )
                if attempt < max_attempts:
                    self._sleep(self.compute_delay(attempt))
                continue
            self._clear_attempts(op_id)
            if attempt > 1:
                logger.info("retry_succeeded", extra=log_extra(operation_id=op_id, attempt=attempt))
            return result

        self._clear_attempts(op_id)
        raise RetryExhausted(
            f"Operation failed after {max_attempts} attempts: {last_error}",
            original_error=last_error,
            attempts=max_attempts,
            metadata={"operation_id": op_id},
        ) from last_error

    def _clear_attempts(self, op_id: str) -> None:
        with self._lock:
            self._attempts.pop(op_id, None)

    def graceful_degrade(self, error: BaseException, fallback: Callable[[], Any]) -> None:
        """Log the error and run the fallback. Never raises."""
        logger.warning("graceful_degradation", extra={"error": str(error), "error_type": type(error).__name__})
        try:
            fallback()
        except Exception as exc:
            logger.error("fallback_failed", extra={"error": str(exc), "original_error": str(error)})

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def register_resource(self, resource: Resource) -> None:
        with self._lock:
            self._resources.append(resource)
        logger.debug(
            "resource_registered",
            extra={"resource_type": resource.type.value, "identifier": resource.identifier},
        )

    def unregister_resource(self, identifier: str) -> None:
        with self._lock:
            self._resources = [r for r in self._resources if r.identifier != identifier]

    def registered_resources(self) -> List[Resource]:
        with self._lock:
            return list(self._resources)

    def emergency_cleanup(self, resources: Optional[Sequence[Resource]] = None) -> None:
        """
        Clean resources type by type in CLEANUP_ORDER, concurrently within a type.

        Every cleanup is attempted. Failures and timeouts are collected and
        raised together as EmergencyCleanupError once all types are done.
        """
        targets = list(resources) if resources is not None else self.registered_resources()
        errors: List[BaseException] = []
        logger.info("emergency_cleanup_started", extra={"resources": len(targets)})

        for resource_type in CLEANUP_ORDER:
            group = [r for r in targets if r.type == resource_type]
            if not group:
                continue
            pool = ThreadPoolExecutor(max_workers=len(group), thread_name_prefix=f"cleanup-{resource_type.value}")
            try:
                futures = {pool.submit(r.cleanup): r for r in group}
                done, _ = wait(futures, timeout=self.cleanup_timeout)
                for future, resource in futures.items():
                    label = f"{resource.type.value}:{resource.identifier}"
                    if future not in done:
                        errors.append(HarnessError(f"Cleanup timeout for {label}"))
                        continue
                    exc = future.exception()
                    if exc is not None:
                        logger.error("resource_cleanup_failed", extra={"resource": label, "error": str(exc)})
                        errors.append(exc)
            finally:
                pool.shutdown(wait=False)

        cleaned = {id(r) for r in targets}
        with self._lock:
            self._resources = [r for r in self._resources if id(r) not in cleaned]

        if errors:
            raise EmergencyCleanupError(
                f"Emergency cleanup completed with {len(errors)} errors: "
                + "; ".join(str(e) for e in errors),
                errors=errors,
            )
        logger.info("emergency_cleanup_completed", extra={"resources": len(targets)})

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def create_error_report(self, error: BaseException, context: ErrorContext) -> ErrorReport:
        resources = context.resources or []
        return ErrorReport(
            timestamp=time.time(),
            error_type=type(error).__name__,
            message=str(error),
            stack="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            context={
                "operation": context.operation,
                "phase": context.phase,
                "resources": [f"{r.type.value}:{r.identifier}" for r in resources],
                "environment": _environment_snapshot(),
                "retry_attempts": context.retry_attempts,
                "registered_resources": len(self.registered_resources()),
                **context.metadata,
            },
            suggestions=suggest_fixes(str(error), context.phase),
            severity=assess_severity(error, context.phase),
        )

    def handle_test_failure(
        self,
        error: BaseException,
        context: ErrorContext,
        options: Optional[RecoveryOptions] = None,
    ) -> TestFailureResult:
        """Retry or degrade, then clean up. Returns a result instead of raising."""
        options = options or RecoveryOptions()
        started = time.time()
        result = TestFailureResult(original_error=error, error_report=self.create_error_report(error, context))
        logger.error(
            "test_failure",
            extra=log_extra(
                operation_id=context.operation,
                phase=context.phase,
                error=str(error),
                severity=result.error_report.severity.value,
            ),
        )

        if options.attempt_recovery:
            result.recovery_attempted = True
            try:
                if options.retry_operation and context.retryable_operation is not None:
                    self.retry_with_backoff(
                        context.retryable_operation,
                        options.max_retries or 2,
                        context.operation,
                    )
                    result.recovery_successful = True
                    result.final_state = RecoveryState.RECOVERED
                elif context.fallback_action is not None:
                    self.graceful_degrade(error, context.fallback_action)
                    result.recovery_successful = True
                    result.final_state = RecoveryState.DEGRADED
            except Exception as exc:
                logger.error("recovery_failed", extra={"error": str(exc)})
                result.recovery_error = exc
                result.final_state = RecoveryState.RECOVERY_FAILED

        if options.perform_cleanup:
            try:
                self.emergency_cleanup(context.resources)
            except EmergencyCleanupError as exc:
                result.cleanup_error = exc
            result.cleanup_performed = True

        result.duration = time.time() - started
        return result


def _environment_snapshot() -> Dict[str, Any]:
    return {
        "platform": platform.platform(),
        "python": sys.version.split()[0],
        "pid": os.getpid(),
        "cwd": os.getcwd(),
        "NODE_ENV": os.environ.get("NODE_ENV"),
        "EI_DATA_PATH": os.environ.get("EI_DATA_PATH"),
        "EI_LLM_BASE_URL": os.environ.get("EI_LLM_BASE_URL"),
    }

"""
Tests for retry with backoff, emergency cleanup ordering, error reports and
failure handling.
"""

import threading
import time
from typing import List

import pytest
from hypothesis import given, settings, strategies as st

from termharness.errors import EmergencyCleanupError, HarnessError, RetryExhausted
from termharness.recovery import (
    ErrorContext,
    RecoveryOptions,
    RecoveryState,
    Resource,
    ResourceType,
    RetryRecoveryEngine,
    Severity,
    backoff_delay,
)


def make_engine(**kwargs) -> RetryRecoveryEngine:
    kwargs.setdefault("sleep", lambda seconds: None)
    return RetryRecoveryEngine(**kwargs)


@settings(max_examples=50, deadline=None)
@given(max_attempts=st.integers(min_value=1, max_value=8))
def test_always_failing_operation_runs_exactly_max_attempts(max_attempts: int) -> None:
    engine = make_engine()
    calls = []

    def operation() -> None:
        calls.append(1)
        raise RuntimeError("still broken")

    with pytest.raises(RetryExhausted) as exc_info:
        engine.retry_with_backoff(operation, max_attempts, "op")

    assert len(calls) == max_attempts
    assert exc_info.value.attempts == max_attempts
    assert isinstance(exc_info.value.original_error, RuntimeError)
    assert engine.get_attempt_count("op") == 0


@settings(max_examples=100)
@given(
    attempt=st.integers(min_value=1, max_value=200),
    base=st.floats(min_value=0.001, max_value=10.0),
    maximum=st.floats(min_value=0.001, max_value=120.0),
    fraction=st.floats(min_value=0.0, max_value=1.0),
)
def test_backoff_is_monotonic_and_bounded(attempt: int, base: float, maximum: float, fraction: float) -> None:
    current = backoff_delay(attempt, base, maximum, 0.1, fraction)
    following = backoff_delay(attempt + 1, base, maximum, 0.1, fraction)
    assert following >= current
    assert current <= maximum * 1.1 + 1e-9


def test_compute_delay_uses_jitter_source() -> None:
    engine = make_engine(base_delay=1.0, max_delay=30.0, rng=lambda: 1.0)
    assert engine.compute_delay(1) == pytest.approx(1.1)
    assert engine.compute_delay(3) == pytest.approx(4.4)
    assert engine.compute_delay(10) == pytest.approx(33.0)


def test_retry_succeeds_after_failures_and_sleeps_between_attempts() -> None:
    slept: List[float] = []
    engine = make_engine(base_delay=0.5, rng=lambda: 0.0, sleep=slept.append)
    attempts = []

    def operation() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise OSError("ETIMEDOUT")
        return "ok"

    assert engine.retry_with_backoff(operation, 5, "flaky") == "ok"
    assert slept == [0.5, 1.0]
    assert engine.get_attempt_count("flaky") == 0


def test_operation_id_is_reusable_after_exhaustion() -> None:
    engine = make_engine()

    def boom() -> None:
        raise RuntimeError("nope")

    with pytest.raises(RetryExhausted):
        engine.retry_with_backoff(boom, 2, "shared")
    assert engine.retry_with_backoff(lambda: 42, 1, "shared") == 42


def test_non_retryable_errors_are_not_retried() -> None:
    engine = make_engine()
    calls = []

    def operation() -> None:
        calls.append(1)
        raise HarnessError("bad input", retryable=False)

    with pytest.raises(HarnessError, match="bad input"):
        engine.retry_with_backoff(operation, 5)
    assert len(calls) == 1


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        make_engine().retry_with_backoff(lambda: None, 0)


def test_graceful_degrade_never_raises() -> None:
    engine = make_engine()
    ran = []
    engine.graceful_degrade(RuntimeError("primary"), lambda: ran.append("fallback"))
    assert ran == ["fallback"]

    def failing_fallback() -> None:
        raise RuntimeError("fallback broke")

    engine.graceful_degrade(RuntimeError("primary"), failing_fallback)


def test_emergency_cleanup_runs_every_resource_in_type_order() -> None:
    engine = make_engine()
    order: List[str] = []
    lock = threading.Lock()

    def cleaner(label: str, fail: bool = False):
        def run() -> None:
            with lock:
                order.append(label)
            if fail:
                raise RuntimeError(f"{label} failed")
        return run

    engine.register_resource(Resource(ResourceType.DIRECTORY, "dir", cleaner("directory")))
    engine.register_resource(Resource("file", "file-a", cleaner("file")))
    engine.register_resource(Resource(ResourceType.PROCESS, "proc", cleaner("process", fail=True)))
    engine.register_resource(Resource(ResourceType.SERVER, "mock", cleaner("server")))
    engine.register_resource(Resource(ResourceType.FILE, "file-b", cleaner("file")))

    with pytest.raises(EmergencyCleanupError) as exc_info:
        engine.emergency_cleanup()

    assert order == ["process", "server", "file", "file", "directory"]
    assert len(exc_info.value.errors) == 1
    assert "process failed" in str(exc_info.value)
    assert engine.registered_resources() == []


def test_emergency_cleanup_times_out_slow_resources() -> None:
    engine = make_engine(cleanup_timeout=0.1)
    release = threading.Event()
    done = []
    resources = [
        Resource(ResourceType.SERVER, "slow", lambda: release.wait(2.0)),
        Resource(ResourceType.FILE, "fast", lambda: done.append("file")),
    ]
    started = time.time()
    try:
        with pytest.raises(EmergencyCleanupError, match="Cleanup timeout for server:slow"):
            engine.emergency_cleanup(resources)
    finally:
        release.set()
    assert done == ["file"]
    assert time.time() - started < 1.5


def test_unregister_resource_by_identifier() -> None:
    engine = make_engine()
    engine.register_resource(Resource(ResourceType.FILE, "keep", lambda: None))
    engine.register_resource(Resource(ResourceType.FILE, "drop", lambda: None))
    engine.unregister_resource("drop")
    assert [r.identifier for r in engine.registered_resources()] == ["keep"]


def test_error_report_for_timeout_during_execution() -> None:
    report = make_engine().create_error_report(
        RuntimeError("ETIMEDOUT after 5000ms"), ErrorContext(phase="execution")
    )
    assert report.severity == Severity.MEDIUM
    assert "Consider increasing timeout values" in report.suggestions
    assert "Review test step configuration" in report.suggestions
    assert report.error_type == "RuntimeError"
    assert report.to_dict()["severity"] == "medium"


@pytest.mark.parametrize(
    "message,phase,expected",
    [
        ("EMFILE: too many open files", "execution", Severity.CRITICAL),
        ("anything", "setup", Severity.HIGH),
        ("spawn python ENOENT", "execution", Severity.HIGH),
        ("mock server failed to bind", "assertion", Severity.HIGH),
        ("plain failure", "assertion", Severity.MEDIUM),
    ],
)
def test_error_report_severity(message: str, phase: str, expected: Severity) -> None:
    report = make_engine().create_error_report(RuntimeError(message), ErrorContext(phase=phase))
    assert report.severity == expected


def test_handle_test_failure_recovers_with_retry() -> None:
    engine = make_engine()
    cleaned = []
    attempts = []

    def retryable() -> None:
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("first try fails")

    context = ErrorContext(
        operation="step_0_input",
        resources=[Resource(ResourceType.PROCESS, "app", lambda: cleaned.append("app"))],
        retryable_operation=retryable,
    )
    result = engine.handle_test_failure(RuntimeError("original"), context, RecoveryOptions(retry_operation=True))

    assert result.recovery_attempted
    assert result.recovery_successful
    assert result.final_state == RecoveryState.RECOVERED
    assert result.cleanup_performed
    assert cleaned == ["app"]


def test_handle_test_failure_degrades_then_reports_cleanup_error() -> None:
    engine = make_engine()
    fallback_ran = []

    def broken_cleanup() -> None:
        raise RuntimeError("cannot remove")

    context = ErrorContext(
        resources=[Resource(ResourceType.FILE, "f", broken_cleanup)],
        fallback_action=lambda: fallback_ran.append(True),
    )
    result = engine.handle_test_failure(RuntimeError("boom"), context)

    assert fallback_ran == [True]
    assert result.final_state == RecoveryState.DEGRADED
    assert isinstance(result.cleanup_error, EmergencyCleanupError)


def test_handle_test_failure_records_failed_recovery() -> None:
    engine = make_engine()

    def always_fails() -> None:
        raise RuntimeError("still failing")

    result = engine.handle_test_failure(
        RuntimeError("boom"),
        ErrorContext(retryable_operation=always_fails),
        RecoveryOptions(retry_operation=True, max_retries=2, perform_cleanup=False),
    )
    assert result.recovery_attempted
    assert not result.recovery_successful
    assert result.final_state == RecoveryState.RECOVERY_FAILED
    assert isinstance(result.recovery_error, RetryExhausted)
    assert not result.cleanup_performed


def test_handle_test_failure_without_recovery_is_failed() -> None:
    result = make_engine().handle_test_failure(
        RuntimeError("boom"), ErrorContext(), RecoveryOptions(attempt_recovery=False, perform_cleanup=False)
    )
    assert not result.recovery_attempted
    assert result.final_state == RecoveryState.FAILED


def test_recovery_options_accept_camel_case() -> None:
    options = RecoveryOptions.from_dict({"retryOperation": True, "maxRetries": 4, "performCleanup": False})
    assert options.retry_operation is True
    assert options.max_retries == 4
    assert options.perform_cleanup is False
    assert options.attempt_recovery is True

"""Execution metrics collected per scenario run."""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, List, Optional

import psutil

from termharness.errors import HarnessError


@dataclass
class ResourceUsage:
    rss_mb: float = 0.0
    cpu_user: float = 0.0
    cpu_system: float = 0.0
    child_processes: int = 0


@dataclass
class StepMetrics:
    step_name: str
    step_type: str
    start_time: float
    end_time: float
    success: bool
    error: Optional[str] = None
    retry_count: int = 0

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass
class MockServerMetrics:
    request_count: int = 0
    error_count: int = 0
    streaming_requests: int = 0


@dataclass
class ApplicationMetrics:
    startup_time: float = 0.0
    shutdown_time: float = 0.0
    process_id: Optional[int] = None
    exit_code: Optional[int] = None
    output_size: int = 0
    input_count: int = 0
    llm_request_count: int = 0


@dataclass
class TestMetrics:
    __test__ = False

    test_name: str
    start_time: float
    end_time: float = 0.0
    success: bool = False
    error: Optional[str] = None
    steps: List[StepMetrics] = field(default_factory=list)
    resources_start: ResourceUsage = field(default_factory=ResourceUsage)
    resources_end: Optional[ResourceUsage] = None
    mock_server: MockServerMetrics = field(default_factory=MockServerMetrics)
    application: ApplicationMetrics = field(default_factory=ApplicationMetrics)

    @property
    def duration(self) -> float:
        return max(0.0, self.end_time - self.start_time)


@dataclass
class Diagnostic:
    level: str
    message: str
    timestamp: float
    test_name: Optional[str] = None
    step_name: Optional[str] = None


def capture_resource_usage() -> ResourceUsage:
    try:
        process = psutil.Process()
        cpu = process.cpu_times()
        return ResourceUsage(
            rss_mb=process.memory_info().rss / (1024 * 1024),
            cpu_user=cpu.user,
            cpu_system=cpu.system,
            child_processes=len(process.children(recursive=True)),
        )
    except psutil.Error:
        return ResourceUsage()


class MetricsCollector:
    """
    Collects timing and resource metrics for one harness.

    Owned by the harness that uses it. One test is tracked at a time.
    """

    def __init__(self) -> None:
        self._completed: List[TestMetrics] = []
        self._current: Optional[TestMetrics] = None
        self._diagnostics: List[Diagnostic] = []
        self._lock = threading.Lock()
        self.created_at = time.time()

    @property
    def current(self) -> Optional[TestMetrics]:
        return self._current

    def start_test(self, test_name: str) -> TestMetrics:
        with self._lock:
            self._current = TestMetrics(
                test_name=test_name,
                start_time=time.time(),
                resources_start=capture_resource_usage(),
            )
            return self._current

    def record_step(
        self,
        step_name: str,
        step_type: str,
        duration: float,
        success: bool,
        error: Optional[str] = None,
        retry_count: int = 0,
    ) -> None:
        with self._lock:
            if self._current is None:
                return
            now = time.time()
            self._current.steps.append(
                StepMetrics(
                    step_name=step_name,
                    step_type=step_type,
                    start_time=now - duration,
                    end_time=now,
                    success=success,
                    error=error,
                    retry_count=retry_count,
                )
            )

    @contextmanager
    def track_step(self, step_name: str, step_type: str) -> Generator[None, None, None]:
        """Record a step around a block; failures are recorded and re-raised."""
        started = time.time()
        try:
            yield
        except Exception as exc:
            self.record_step(step_name, step_type, time.time() - started, False, str(exc))
            raise
        self.record_step(step_name, step_type, time.time() - started, True)

    def update_mock_server_metrics(self, request_count: int, error_count: int = 0, streaming_requests: int = 0) -> None:
        with self._lock:
            if self._current is None:
                return
            self._current.mock_server = MockServerMetrics(
                request_count=request_count,
                error_count=error_count,
                streaming_requests=streaming_requests,
            )

    def update_application_metrics(self, **values: Any) -> None:
        with self._lock:
            if self._current is None:
                return
            for key, value in values.items():
                if not hasattr(self._current.application, key):
                    raise AttributeError(f"Unknown application metric: {key}")
                setattr(self._current.application, key, value)

    def finish_test(self, success: bool, error: Optional[str] = None) -> TestMetrics:
        with self._lock:
            if self._current is None:
                raise HarnessError("No test currently being tracked")
            test = self._current
            test.end_time = time.time()
            test.success = success
            test.error = error
            test.resources_end = capture_resource_usage()
            self._completed.append(test)
            self._current = None
            return test

    def add_diagnostic(
        self,
        level: str,
        message: str,
        test_name: Optional[str] = None,
        step_name: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._diagnostics.append(
                Diagnostic(level=level, message=message, timestamp=time.time(), test_name=test_name, step_name=step_name)
            )

    def get_metrics(self) -> List[TestMetrics]:
        with self._lock:
            return list(self._completed)

    def get_diagnostics(self) -> List[Diagnostic]:
        with self._lock:
            return list(self._diagnostics)

    def summary(self) -> Dict[str, Any]:
        tests = self.get_metrics()
        passed = sum(1 for t in tests if t.success)
        total_duration = sum(t.duration for t in tests)
        startup_times = [t.application.startup_time for t in tests if t.application.startup_time]
        return {
            "total_tests": len(tests),
            "passed_tests": passed,
            "failed_tests": len(tests) - passed,
            "total_duration": total_duration,
            "success_rate": (passed / len(tests) * 100.0) if tests else 0.0,
            "average_test_duration": (total_duration / len(tests)) if tests else 0.0,
            "average_startup_time": (sum(startup_times) / len(startup_times)) if startup_times else 0.0,
            "total_steps": sum(len(t.steps) for t in tests),
        }

    def reset(self) -> None:
        with self._lock:
            self._completed.clear()
            self._diagnostics.clear()
            self._current = None

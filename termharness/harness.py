"""
TermHarness Test Harness

Facade over the sandbox, the mock chat-completion service and the process
controller. Provides bounded polling waits and assertion helpers used by
the scenario executor and by hand-written tests.
"""

import json
import os
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Pattern, Union

from termharness.config import Config
from termharness.errors import AssertionFailure, HarnessError, ProcessError, ProcessNotRunning, WaitTimeout
from termharness.heuristics import IDLE_STABLE_CHECKS, IdleDetector, OutputPredicate, is_processing
from termharness.logging import get_logger
from termharness.metrics import MetricsCollector
from termharness.mock_server import CHAT_COMPLETIONS, MockLLMService, MockResponse, RequestRecord
from termharness.process import AppConfig, FinalState, ManagedProcess, ProcessController, ProcessTimeouts
from termharness.sandbox import EnvironmentSandbox

logger = get_logger(__name__)

POLL_INTERVAL = 0.1
SLOW_POLL_INTERVAL = 0.2
DEFAULT_WAIT = 5.0
DEFAULT_PROCESSING_WAIT = 10.0
PROCESSING_TAIL_LINES = 50

TextOrPattern = Union[str, Pattern[str]]


@dataclass
class HarnessConfig:
    """Per-harness settings. Durations are in seconds."""
    temp_dir_prefix: str = "termharness"
    mock_host: str = "127.0.0.1"
    mock_port: int = 0
    mock_delay_ms: int = 0
    mock_logging: bool = False
    mock_responses: Dict[str, MockResponse] = field(default_factory=dict)
    app_command: List[str] = field(default_factory=list)
    app_cwd: Optional[str] = None
    use_pty: bool = False
    debug: bool = False
    app_timeout: float = 5.0
    cleanup_timeout: float = 3.0
    force_kill_timeout: float = 1.0
    watchdog_timeout: float = 30 * 60

    @classmethod
    def from_config(cls, config: Config) -> "HarnessConfig":
        return cls(
            temp_dir_prefix=config.temp_prefix,
            mock_host=config.mock_host,
            mock_port=config.mock_port,
            mock_delay_ms=config.mock_delay_ms,
            mock_logging=config.mock_logging,
            app_command=list(config.app_command),
            app_cwd=str(config.app_cwd) if config.app_cwd else None,
            use_pty=config.use_pty,
            debug=config.debug,
            app_timeout=config.init_timeout,
            cleanup_timeout=config.graceful_timeout,
            force_kill_timeout=config.force_kill_timeout,
            watchdog_timeout=config.watchdog_timeout,
        )


def _matches(text: str, expected: TextOrPattern) -> bool:
    if isinstance(expected, str):
        return expected in text
    return expected.search(text) is not None


class TestHarness:
    """
    One isolated environment for driving the application under test.

    Usage:
        harness = TestHarness(HarnessConfig(app_command=["python", "app.py"]))
        harness.setup()
        try:
            harness.start_app()
            harness.send_input("hello\\n")
            harness.wait_for_ui_text("Hello!")
        finally:
            harness.cleanup()
    """

    __test__ = False

    def __init__(
        self,
        config: Optional[HarnessConfig] = None,
        sandbox: Optional[EnvironmentSandbox] = None,
        mock: Optional[MockLLMService] = None,
        controller: Optional[ProcessController] = None,
        metrics: Optional[MetricsCollector] = None,
        processing_check: OutputPredicate = is_processing,
    ) -> None:
        self.config = config or HarnessConfig()
        self.sandbox = sandbox or EnvironmentSandbox()
        self.mock = mock or MockLLMService(
            default_delay_ms=self.config.mock_delay_ms,
            enable_logging=self.config.mock_logging,
        )
        self.controller = controller or ProcessController(watchdog_timeout=self.config.watchdog_timeout)
        self.metrics = metrics or MetricsCollector()
        self.processing_check = processing_check
        self.temp_data_path: Optional[str] = None
        self.current_process: Optional[ManagedProcess] = None
        self.last_process: Optional[ManagedProcess] = None
        self._is_setup = False

    @property
    def fs(self):
        return self.sandbox.fs

    @property
    def is_setup(self) -> bool:
        return self._is_setup

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def setup(self, config: Optional[HarnessConfig] = None) -> None:
        """Create the temp data dir, start the mock service and point the environment at it."""
        if self._is_setup:
            raise HarnessError("Test harness is already set up. Call cleanup() first.")
        if config is not None:
            self.config = config

        try:
            self.temp_data_path = self.sandbox.create_temp_dir(self.config.temp_dir_prefix)
            self.mock.start(self.config.mock_port, host=self.config.mock_host)
            for endpoint, response in self.config.mock_responses.items():
                self.mock.set_response(endpoint, response)
            self.sandbox.set_environment(
                {
                    "EI_DATA_PATH": self.temp_data_path,
                    "EI_LLM_BASE_URL": self.mock.base_url,
                    "EI_LLM_API_KEY": "test-api-key",
                    "EI_LLM_MODEL": "test-model",
                }
            )
            self._is_setup = True
        except (HarnessError, OSError) as exc:
            try:
                self.cleanup()
            except HarnessError as cleanup_exc:
                logger.warning("harness_setup_cleanup_failed", extra={"error": str(cleanup_exc)})
            raise HarnessError(f"Failed to setup test harness: {exc}") from exc

        logger.info(
            "harness_setup",
            extra={"temp_data_path": self.temp_data_path, "mock_url": self.mock.url},
        )

    def cleanup(self) -> None:
        """Stop the app and mock service and tear down the sandbox. Safe to call twice."""
        errors: List[str] = []

        if self.current_process is not None:
            try:
                self.stop_app()
            except ProcessError as exc:
                errors.append(f"Failed to stop app: {exc}")

        try:
            self.mock.stop()
        except (HarnessError, OSError) as exc:
            errors.append(f"Failed to stop mock server: {exc}")

        try:
            self.sandbox.cleanup()
        except HarnessError as exc:
            errors.append(f"Failed to cleanup environment: {exc}")

        self.current_process = None
        self.temp_data_path = None
        self._is_setup = False

        if errors:
            raise HarnessError(
                f"Cleanup completed with errors: {'; '.join(errors)}",
                metadata={"errors": errors},
            )

    def __enter__(self) -> "TestHarness":
        self.setup()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.cleanup()

    # ------------------------------------------------------------------
    # Application control
    # ------------------------------------------------------------------

    def start_app(
        self,
        debug: Optional[bool] = None,
        use_pty: Optional[bool] = None,
        timeouts: Optional[ProcessTimeouts] = None,
        command: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ManagedProcess:
        if not self._is_setup or self.temp_data_path is None:
            raise HarnessError("Test harness must be set up before starting app. Call setup() first.")
        if self.current_process is not None:
            raise HarnessError("Application is already running. Call stop_app() first.")
        argv = command or self.config.app_command
        if not argv:
            raise HarnessError("No application command configured")

        app_config = AppConfig(
            command=list(argv),
            data_path=self.temp_data_path,
            llm_base_url=self.mock.base_url,
            debug=self.config.debug if debug is None else debug,
            use_pty=self.config.use_pty if use_pty is None else use_pty,
            cwd=self.config.app_cwd,
            env=dict(env or {}),
            timeouts=timeouts
            or ProcessTimeouts(
                initialization=self.config.app_timeout,
                graceful_shutdown=self.config.cleanup_timeout,
                force_kill=self.config.force_kill_timeout,
            ),
        )
        started = time.time()
        proc = self.controller.start(app_config)
        self.current_process = proc
        self.last_process = proc
        self.metrics.update_application_metrics(startup_time=time.time() - started, process_id=proc.pid)
        return proc

    def stop_app(self) -> Optional[int]:
        if self.current_process is None:
            return None
        started = time.time()
        try:
            return self.controller.stop(self.current_process)
        finally:
            self.metrics.update_application_metrics(
                shutdown_time=time.time() - started,
                exit_code=self.current_process.exit_code,
                output_size=len(self.current_process.output),
            )
            self.current_process = None

    def _require_process(self) -> ManagedProcess:
        if self.current_process is None:
            raise ProcessNotRunning("Application is not running. Call start_app() first.")
        return self.current_process

    def send_input(self, text: str) -> None:
        self.controller.send_input(self._require_process(), text)
        if self.metrics.current is not None:
            self.metrics.current.application.input_count += 1

    def send_command(self, command: str) -> None:
        formatted = command if command.startswith("/") else f"/{command}"
        if not formatted.endswith("\n"):
            formatted += "\n"
        self.send_input(formatted)

    def get_current_output(self, lines: Optional[int] = None) -> str:
        return self.controller.get_output(self._require_process(), lines)

    def is_app_running(self) -> bool:
        return self.current_process is not None and self.controller.is_running(self.current_process)

    def get_app_final_state(self) -> FinalState:
        proc = self.current_process or self.last_process
        if proc is None:
            raise HarnessError("No application process to get final state from")
        return self.controller.get_final_state(proc)

    def resolve_path(self, path: str) -> str:
        if os.path.isabs(path):
            return path
        if self.temp_data_path is None:
            raise HarnessError("Test harness not set up properly. Temp data path not available.")
        return os.path.join(self.temp_data_path, path)

    # ------------------------------------------------------------------
    # Waits
    # ------------------------------------------------------------------

    def wait_for_condition(
        self,
        checker: Callable[[], bool],
        description: str,
        timeout: float = DEFAULT_WAIT,
        interval: float = POLL_INTERVAL,
    ) -> None:
        """Poll checker until it returns True or the timeout elapses."""
        deadline = time.time() + timeout
        while True:
            try:
                if checker():
                    return
            except (HarnessError, OSError, ValueError) as exc:
                raise HarnessError(f"Error while checking condition {description!r}: {exc}") from exc
            if time.time() >= deadline:
                raise WaitTimeout(f"Condition timeout after {timeout}s: {description}")
            time.sleep(interval)

    def _poll_output(
        self,
        check: Callable[[str], bool],
        what: str,
        timeout: float,
        interval: float = POLL_INTERVAL,
        lines: Optional[int] = None,
    ) -> str:
        proc = self._require_process()
        deadline = time.time() + timeout
        while True:
            output = self.controller.get_output(proc, lines)
            if check(output):
                return output
            if time.time() >= deadline:
                raise WaitTimeout(
                    f"{what} timeout after {timeout}s",
                    metadata={"output_tail": output[-500:]},
                )
            if not self.controller.is_running(proc):
                raise ProcessNotRunning(f"Application process stopped while waiting for {what.lower()}")
            time.sleep(interval)

    def wait_for_ui_change(self, timeout: float = DEFAULT_WAIT) -> str:
        initial = self.get_current_output()
        return self._poll_output(
            lambda out: out != initial and len(out) > len(initial),
            "UI change",
            timeout,
        )

    def wait_for_ui_text(self, text: str, timeout: float = DEFAULT_WAIT) -> str:
        return self._poll_output(lambda out: text in out, f"UI text {text!r}", timeout)

    def wait_for_ui_pattern(self, pattern: TextOrPattern, timeout: float = DEFAULT_WAIT) -> str:
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        return self._poll_output(lambda out: regex.search(out) is not None, f"UI pattern {regex.pattern!r}", timeout)

    def wait_for_processing_complete(self, timeout: float = DEFAULT_PROCESSING_WAIT) -> None:
        time.sleep(SLOW_POLL_INTERVAL)
        self._poll_output(
            lambda out: not self.processing_check(out),
            "Processing completion",
            timeout,
            interval=SLOW_POLL_INTERVAL,
            lines=PROCESSING_TAIL_LINES,
        )

    def wait_for_idle_state(self, timeout: float = DEFAULT_PROCESSING_WAIT, stable_checks: int = IDLE_STABLE_CHECKS) -> None:
        """Best-effort: output unchanged for several polls with no processing indicator."""
        detector = IdleDetector(stable_checks, self.processing_check)
        time.sleep(SLOW_POLL_INTERVAL)
        self._poll_output(detector.feed, "Idle state", timeout, interval=SLOW_POLL_INTERVAL)

    def wait_for_file_change(self, path: str, timeout: float = DEFAULT_WAIT) -> None:
        absolute = self.resolve_path(path)
        changed = threading.Event()
        watcher = self.sandbox.watch_file(absolute, lambda event, _path: changed.set())
        try:
            if not changed.wait(timeout):
                raise WaitTimeout(f"File change timeout after {timeout}s for {path}")
        finally:
            watcher.close()

    def wait_for_file_creation(self, path: str, timeout: float = DEFAULT_WAIT) -> None:
        absolute = self.resolve_path(path)
        try:
            self.wait_for_condition(lambda: self.fs.exists(absolute), f"file {path} created", timeout)
        except WaitTimeout as exc:
            raise WaitTimeout(f"File creation timeout after {timeout}s for {path}") from exc

    def wait_for_file_content(self, path: str, expected: TextOrPattern, timeout: float = DEFAULT_WAIT) -> str:
        absolute = self.resolve_path(path)
        found: Dict[str, str] = {}

        def check() -> bool:
            if not self.fs.exists(absolute):
                return False
            content = self.fs.read_text(absolute)
            if _matches(content, expected):
                found["content"] = content
                return True
            return False

        try:
            self.wait_for_condition(check, f"file {path} content", timeout)
        except WaitTimeout as exc:
            raise WaitTimeout(f"File content timeout after {timeout}s for {path}") from exc
        return found["content"]

    def wait_for_llm_request(self, timeout: float = DEFAULT_WAIT) -> None:
        initial = self.mock.total_requests
        try:
            self.wait_for_condition(lambda: self.mock.total_requests > initial, "LLM request", timeout)
        except WaitTimeout as exc:
            raise WaitTimeout(f"LLM request timeout after {timeout}s") from exc

    # ------------------------------------------------------------------
    # Assertions
    # ------------------------------------------------------------------

    def assert_ui_contains(self, text: str) -> None:
        output = self.get_current_output()
        if text not in output:
            raise AssertionFailure(
                f"UI assertion failed: Expected output to contain {text!r}. Output tail: {output[-500:]!r}"
            )

    def assert_ui_does_not_contain(self, text: str) -> None:
        if text in self.get_current_output():
            raise AssertionFailure(f"UI assertion failed: Expected output not to contain {text!r}")

    def assert_ui_matches(self, pattern: TextOrPattern) -> None:
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        if not regex.search(self.get_current_output()):
            raise AssertionFailure(f"UI assertion failed: Expected output to match {regex.pattern!r}")

    def assert_file_exists(self, path: str) -> None:
        absolute = self.resolve_path(path)
        if not self.fs.exists(absolute):
            raise AssertionFailure(f"File assertion failed: Expected file to exist at {absolute}")

    def assert_file_does_not_exist(self, path: str) -> None:
        absolute = self.resolve_path(path)
        if self.fs.exists(absolute):
            raise AssertionFailure(f"File assertion failed: Expected file not to exist at {absolute}")

    def assert_file_content(self, path: str, expected: TextOrPattern) -> None:
        self.assert_file_exists(path)
        content = self.fs.read_text(self.resolve_path(path))
        if not _matches(content, expected):
            shown = expected if isinstance(expected, str) else expected.pattern
            raise AssertionFailure(f"File content assertion failed: {path} does not match {shown!r}")

    def assert_directory_exists(self, path: str, expected_files: Optional[List[str]] = None) -> None:
        absolute = self.resolve_path(path)
        if not self.fs.exists(absolute):
            raise AssertionFailure(f"Directory assertion failed: Expected directory to exist at {absolute}")
        if not self.fs.is_dir(absolute):
            raise AssertionFailure(f"Directory assertion failed: Path exists but is not a directory: {absolute}")
        for name in expected_files or []:
            if not self.fs.exists(os.path.join(absolute, name)):
                raise AssertionFailure(
                    f"Directory assertion failed: Expected file {name!r} not found in directory {absolute}"
                )

    def assert_persona_state(self, persona: str, expected_state: Optional[Dict[str, Any]] = None) -> None:
        """Persona directory exists with a readable system file; optional key/value match on it."""
        persona_dir = self.resolve_path(os.path.join("personas", persona))
        if not self.fs.exists(persona_dir):
            raise AssertionFailure(f"Persona assertion failed: Persona {persona!r} does not exist")
        system_file = os.path.join(persona_dir, "system.jsonc")
        if not self.fs.exists(system_file):
            if expected_state:
                raise AssertionFailure(f"Persona assertion failed: Persona {persona!r} has no system file")
            return
        content = self.fs.read_text(system_file)
        if not content.strip():
            raise AssertionFailure(f"Persona assertion failed: Persona {persona!r} system file is empty")
        if not expected_state:
            return
        try:
            data = json.loads(_strip_jsonc_comments(content))
        except json.JSONDecodeError as exc:
            raise AssertionFailure(f"Persona assertion failed: Cannot parse persona {persona!r} system file: {exc}") from exc
        for key, value in expected_state.items():
            if data.get(key) != value:
                raise AssertionFailure(
                    f"Persona assertion failed: {persona}.{key} expected {value!r}, got {data.get(key)!r}"
                )

    def assert_process_state(self, expected_running: bool) -> None:
        running = self.is_app_running()
        if expected_running and not running:
            raise AssertionFailure("Process state assertion failed: Expected application to be running, but it is not")
        if not expected_running and running:
            raise AssertionFailure("Process state assertion failed: Expected application to be stopped, but it is running")

    def assert_exit_code(self, expected: Optional[int], timeout: float = DEFAULT_WAIT) -> None:
        proc = self.current_process or self.last_process
        if proc is None:
            raise AssertionFailure("No application process to check exit code")
        try:
            actual = self.controller.wait_for_exit(proc, timeout)
        except WaitTimeout as exc:
            raise AssertionFailure(f"Exit code assertion failed: Process did not exit within {timeout}s") from exc
        if actual != expected:
            raise AssertionFailure(f"Exit code assertion failed: Expected {expected}, got {actual}")

    def assert_mock_request_count(self, expected: int) -> None:
        actual = len(self.mock.get_request_history())
        if actual != expected:
            raise AssertionFailure(
                f"Mock request count assertion failed: Expected {expected} requests, got {actual}"
            )

    def assert_mock_request_received(self, endpoint: str = CHAT_COMPLETIONS, method: str = "POST") -> None:
        requests = self.mock.get_request_history()
        if not any(r.endpoint == endpoint and r.method.lower() == method.lower() for r in requests):
            seen = [f"{r.method} {r.endpoint}" for r in requests]
            raise AssertionFailure(
                f"Mock request assertion failed: No {method} request found for endpoint {endpoint}. "
                f"Received requests: {seen}"
            )

    def assert_clean_environment(self, allowed_files: Optional[List[str]] = None) -> None:
        if self.temp_data_path is None:
            raise HarnessError("Test harness not set up properly. Temp data path not available.")
        if not self.fs.exists(self.temp_data_path):
            return
        allowed = set(allowed_files or [])
        unexpected = [f for f in _walk(self.fs, self.temp_data_path) if f not in allowed]
        if unexpected:
            raise AssertionFailure(
                f"Clean environment assertion failed: Unexpected files found: {', '.join(unexpected)}"
            )

    # ------------------------------------------------------------------
    # Mock passthroughs
    # ------------------------------------------------------------------

    def set_mock_response(self, endpoint: str, content: str, delay_ms: Optional[int] = None) -> None:
        self.mock.set_response(endpoint, MockResponse(type="fixed", content=content, delay_ms=delay_ms))

    def set_mock_response_for_type(self, request_type: str, response: MockResponse) -> None:
        self.mock.set_response_for_type(request_type, response)

    def set_mock_response_queue(self, responses: List[str]) -> None:
        self.mock.set_response_queue(responses)

    def enable_mock_streaming(self, endpoint: str, chunks: List[str]) -> None:
        self.mock.enable_streaming(endpoint, chunks)

    def interrupt_mock_streams(self) -> None:
        self.mock.interrupt_all_streams()

    def get_mock_request_history(self) -> List[RequestRecord]:
        return self.mock.get_request_history()


def _strip_jsonc_comments(text: str) -> str:
    return "\n".join(line for line in text.splitlines() if not line.lstrip().startswith("//"))


def _walk(fs, root: str, prefix: str = "") -> List[str]:
    """Relative paths of every entry under root, directories included."""
    entries: List[str] = []
    for name in fs.list_dir(root):
        relative = f"{prefix}{name}"
        entries.append(relative)
        absolute = os.path.join(root, name)
        if fs.is_dir(absolute):
            entries.extend(_walk(fs, absolute, f"{relative}/"))
    return entries

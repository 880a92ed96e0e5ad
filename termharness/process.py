"""
TermHarness Process Controller

Spawns the application under test, verifies it initialised, delivers input,
captures interleaved stdout/stderr into a bounded buffer and tears it down
through a two-phase shutdown. A watchdog force-kills processes that outlive
an absolute ceiling.

Lifecycle:
    spawned -> verifying_init -> running -> stopping_graceful -> stopping_forced -> exited
Any state may move to exited directly when the process dies on its own.
"""

import codecs
import fcntl
import os
import signal
import struct
import subprocess
import termios
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from termharness.errors import (
    ForceTerminationTimeout,
    GracefulShutdownTimeout,
    InitializationAborted,
    InitializationTimeout,
    InputTimeout,
    ProcessError,
    ProcessNotRunning,
    WaitTimeout,
)
from termharness.heuristics import OutputPredicate, find_init_error, looks_ready
from termharness.logging import get_logger

logger = get_logger(__name__)

OUTPUT_LIMIT = 50_000
OUTPUT_KEEP = 40_000
FINAL_OUTPUT_TAIL = 1_000
INIT_ERROR_TAIL = 500
INIT_FIRST_CHECK_DELAY = 0.2
INIT_POLL_INTERVAL = 0.1
KILL_GRACE = 0.5
INPUT_TIMEOUT = 5.0
DEFAULT_WATCHDOG_TIMEOUT = 30 * 60
QUIT_COMMAND = "/quit\n"

OutputCallback = Callable[[str], None]
# (returncode) as reported by subprocess; negative means killed by a signal
ExitCallback = Callable[[int], None]


class ProcessState(str, Enum):
    """Lifecycle state of a managed process."""
    SPAWNED = "spawned"
    VERIFYING_INIT = "verifying_init"
    RUNNING = "running"
    STOPPING_GRACEFUL = "stopping_graceful"
    STOPPING_FORCED = "stopping_forced"
    EXITED = "exited"


@dataclass(frozen=True)
class ProcessTimeouts:
    """Per-process timeouts in seconds. All must be positive."""
    initialization: float = 5.0
    graceful_shutdown: float = 3.0
    force_kill: float = 1.0

    def __post_init__(self) -> None:
        for name in ("initialization", "graceful_shutdown", "force_kill"):
            value = getattr(self, name)
            if value is None or value <= 0:
                raise ValueError(f"ProcessTimeouts.{name} must be > 0, got {value!r}")


@dataclass
class AppConfig:
    """How to launch the application under test."""
    command: List[str]
    data_path: str
    llm_base_url: str
    llm_api_key: str = "test-api-key"
    llm_model: str = "test-model"
    debug: bool = False
    debug_flag: str = "-d"
    use_pty: bool = False
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    timeouts: ProcessTimeouts = field(default_factory=ProcessTimeouts)
    pty_size: Tuple[int, int] = (80, 24)

    @property
    def argv(self) -> List[str]:
        argv = list(self.command)
        if self.debug:
            argv.append(self.debug_flag)
        return argv

    def build_env(self, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = dict(os.environ if base is None else base)
        env.update(
            {
                "EI_DATA_PATH": self.data_path,
                "EI_LLM_BASE_URL": self.llm_base_url,
                "EI_LLM_API_KEY": self.llm_api_key,
                "EI_LLM_MODEL": self.llm_model,
                "NO_COLOR": "1",
                "NODE_ENV": "test",
                "TERMHARNESS_TEST_MODE": "1",
                "PYTHONUNBUFFERED": "1",
            }
        )
        if self.use_pty:
            env.setdefault("TERM", "xterm-256color")
        env.update(self.env)
        return env


@dataclass(frozen=True)
class FinalState:
    """Immutable snapshot of a process taken once by get_final_state()."""
    exit_code: Optional[int]
    signal: Optional[int]
    runtime: float
    output_tail: str
    was_killed: bool
    start_time: float
    config: AppConfig


class ProcessBackend(ABC):
    """Spawn strategy. The controller only talks to this interface."""

    name: str = "backend"

    @abstractmethod
    def spawn(
        self,
        argv: List[str],
        env: Dict[str, str],
        cwd: Optional[str],
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> int:
        """Start the process and its reader threads. Returns the pid."""

    @abstractmethod
    def write(self, data: str) -> None:
        ...

    @abstractmethod
    def kill(self, sig: int) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        """Release file descriptors once the process has exited."""


def _read_loop(fd: int, on_output: OutputCallback) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        try:
            data = os.read(fd, 4096)
        except OSError:
            # EIO on a pty master once the child side is closed
            break
        if not data:
            break
        text = decoder.decode(data)
        if text:
            on_output(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        on_output(tail)


class PipeBackend(ProcessBackend):
    """Plain child process with stdin/stdout pipes; stderr is merged into stdout."""

    name = "pipe"

    def __init__(self) -> None:
        self._proc: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None

    def spawn(self, argv, env, cwd, on_output, on_exit) -> int:
        self._proc = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            env=env,
            cwd=cwd,
            start_new_session=True,
        )
        proc = self._proc
        self._reader = threading.Thread(
            target=_read_loop,
            args=(proc.stdout.fileno(), on_output),
            name=f"pipe-reader:{proc.pid}",
            daemon=True,
        )
        self._reader.start()

        def wait() -> None:
            returncode = proc.wait()
            self._reader.join(timeout=1.0)
            on_exit(returncode)

        threading.Thread(target=wait, name=f"pipe-waiter:{proc.pid}", daemon=True).start()
        return proc.pid

    def write(self, data: str) -> None:
        if self._proc is None or self._proc.stdin is None:
            raise ProcessNotRunning("Process has not been spawned")
        try:
            self._proc.stdin.write(data.encode("utf-8"))
            self._proc.stdin.flush()
        except (BrokenPipeError, ValueError) as exc:
            raise ProcessNotRunning(f"Cannot write to process: {exc}") from exc

    def kill(self, sig: int) -> None:
        if self._proc is not None:
            self._proc.send_signal(sig)

    def close(self) -> None:
        if self._proc is None:
            return
        for stream in (self._proc.stdin, self._proc.stdout):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass


class PtyBackend(ProcessBackend):
    """Child process attached to a pseudo-terminal, for applications that need a real tty to render."""

    name = "pty"

    def __init__(self, size: Tuple[int, int] = (80, 24)) -> None:
        self.cols, self.rows = size
        self._proc: Optional[subprocess.Popen] = None
        self._master: Optional[int] = None
        self._reader: Optional[threading.Thread] = None
        self._write_lock = threading.Lock()

    def spawn(self, argv, env, cwd, on_output, on_exit) -> int:
        master, slave = os.openpty()
        fcntl.ioctl(slave, termios.TIOCSWINSZ, struct.pack("HHHH", self.rows, self.cols, 0, 0))
        try:
            self._proc = subprocess.Popen(
                argv,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                env=env,
                cwd=cwd,
                start_new_session=True,
                close_fds=True,
            )
        except OSError:
            os.close(master)
            raise
        finally:
            os.close(slave)
        self._master = master
        proc = self._proc
        self._reader = threading.Thread(
            target=_read_loop,
            args=(master, on_output),
            name=f"pty-reader:{proc.pid}",
            daemon=True,
        )
        self._reader.start()

        def wait() -> None:
            returncode = proc.wait()
            self._reader.join(timeout=1.0)
            on_exit(returncode)

        threading.Thread(target=wait, name=f"pty-waiter:{proc.pid}", daemon=True).start()
        return proc.pid

    def write(self, data: str) -> None:
        if self._master is None:
            raise ProcessNotRunning("Process has not been spawned")
        payload = data.encode("utf-8")
        with self._write_lock:
            try:
                while payload:
                    written = os.write(self._master, payload)
                    payload = payload[written:]
            except OSError as exc:
                raise ProcessNotRunning(f"Cannot write to process: {exc}") from exc

    def kill(self, sig: int) -> None:
        if self._proc is not None:
            self._proc.send_signal(sig)

    def close(self) -> None:
        if self._master is not None:
            try:
                os.close(self._master)
            except OSError:
                pass
            self._master = None


class ManagedProcess:
    """Handle for one spawned application. Owned by ProcessController."""

    def __init__(self, config: AppConfig, backend: ProcessBackend) -> None:
        self.config = config
        self.backend = backend
        self.timeouts = config.timeouts
        self.state = ProcessState.SPAWNED
        self.start_time = time.time()
        self.end_time: Optional[float] = None
        self.pid: Optional[int] = None
        self.exit_code: Optional[int] = None
        self.signal: Optional[int] = None
        self.was_killed = False
        self.watchdog: Optional[threading.Timer] = None
        self.final_state: Optional[FinalState] = None
        self._output = ""
        self._output_lock = threading.Lock()
        self._exited = threading.Event()

    def __repr__(self) -> str:
        return f"ManagedProcess(pid={self.pid}, state={self.state.value})"

    @property
    def alive(self) -> bool:
        return self.pid is not None and not self._exited.is_set()

    @property
    def output(self) -> str:
        with self._output_lock:
            return self._output

    def append_output(self, text: str) -> None:
        with self._output_lock:
            self._output += text
            if len(self._output) > OUTPUT_LIMIT:
                self._output = self._output[-OUTPUT_KEEP:]

    def mark_exited(self, returncode: int) -> None:
        if returncode < 0:
            self.signal = -returncode
            self.exit_code = None
        else:
            self.exit_code = returncode
        self.end_time = time.time()
        self.state = ProcessState.EXITED
        self._exited.set()
        logger.info(
            "process_exited",
            extra={"pid": self.pid, "exit_code": self.exit_code, "signal": self.signal},
        )

    def wait(self, timeout: Optional[float]) -> bool:
        return self._exited.wait(timeout)


class ProcessController:
    """
    Spawns and drives applications under test.

    Readiness and init-error detection are replaceable predicates so the
    controller can be pointed at any terminal application.
    """

    def __init__(
        self,
        ready_check: OutputPredicate = looks_ready,
        init_error_check: Callable[[str], Optional[str]] = find_init_error,
        watchdog_timeout: float = DEFAULT_WATCHDOG_TIMEOUT,
        backend_factory: Optional[Callable[[AppConfig], ProcessBackend]] = None,
    ) -> None:
        self.ready_check = ready_check
        self.init_error_check = init_error_check
        self.watchdog_timeout = watchdog_timeout
        self.backend_factory = backend_factory or _default_backend
        self._processes: Dict[int, ManagedProcess] = {}
        self._lock = threading.Lock()

    def start(self, config: AppConfig) -> ManagedProcess:
        """Spawn the application and block until it shows a readiness signal."""
        backend = self.backend_factory(config)
        proc = ManagedProcess(config, backend)
        argv = config.argv
        try:
            proc.pid = backend.spawn(
                argv,
                config.build_env(),
                config.cwd,
                proc.append_output,
                proc.mark_exited,
            )
        except OSError as exc:
            raise InitializationAborted(
                f"Failed to spawn process {argv[0] if argv else '?'}: {exc}",
                metadata={"argv": argv},
            ) from exc

        with self._lock:
            self._processes[proc.pid] = proc
        proc.watchdog = threading.Timer(self.watchdog_timeout, self._watchdog_fire, args=(proc,))
        proc.watchdog.daemon = True
        proc.watchdog.start()
        logger.info(
            "process_spawned",
            extra={"pid": proc.pid, "backend": backend.name, "argv": argv},
        )

        try:
            self._verify_initialization(proc)
        except ProcessError:
            self._discard(proc)
            raise

        proc.state = ProcessState.RUNNING
        logger.info(
            "process_started",
            extra={"pid": proc.pid, "startup_seconds": round(time.time() - proc.start_time, 3)},
        )
        return proc

    def _verify_initialization(self, proc: ManagedProcess) -> None:
        proc.state = ProcessState.VERIFYING_INIT
        timeout = proc.timeouts.initialization
        deadline = proc.start_time + timeout
        time.sleep(min(INIT_FIRST_CHECK_DELAY, timeout))
        while True:
            output = proc.output
            if self.ready_check(output):
                return
            if not proc.alive:
                raise InitializationAborted(
                    "Process exited during initialization",
                    metadata={"pid": proc.pid, "exit_code": proc.exit_code, "output": output[-INIT_ERROR_TAIL:]},
                )
            marker = self.init_error_check(output)
            if marker:
                raise InitializationAborted(
                    f"Application initialization failed: {output[-INIT_ERROR_TAIL:]}",
                    metadata={"pid": proc.pid, "marker": marker},
                )
            if time.time() >= deadline:
                raise InitializationTimeout(
                    f"Application initialization timeout after {timeout}s",
                    metadata={"pid": proc.pid, "output": output[-INIT_ERROR_TAIL:]},
                )
            time.sleep(INIT_POLL_INTERVAL)

    def _discard(self, proc: ManagedProcess) -> None:
        """Kill and forget a process that failed to initialise."""
        if proc.alive:
            proc.was_killed = True
            proc.backend.kill(signal.SIGKILL)
            proc.wait(KILL_GRACE)
        self._finish(proc)

    def _finish(self, proc: ManagedProcess) -> None:
        if proc.watchdog is not None:
            proc.watchdog.cancel()
        if not proc.alive:
            proc.state = ProcessState.EXITED
            proc.backend.close()
        with self._lock:
            if proc.pid is not None:
                self._processes.pop(proc.pid, None)

    def _watchdog_fire(self, proc: ManagedProcess) -> None:
        if not proc.alive:
            return
        logger.warning(
            "process_watchdog_fired",
            extra={"pid": proc.pid, "watchdog_seconds": self.watchdog_timeout},
        )
        proc.was_killed = True
        proc.backend.kill(signal.SIGKILL)

    def send_input(self, proc: ManagedProcess, text: str, timeout: float = INPUT_TIMEOUT) -> None:
        """Write raw text to the process input channel."""
        if not proc.alive:
            raise ProcessNotRunning("Process is not running", metadata={"pid": proc.pid})

        self._timed_write(proc, text, timeout)
        logger.debug("process_input_sent", extra={"pid": proc.pid, "chars": len(text)})

    def _timed_write(self, proc: ManagedProcess, text: str, timeout: float) -> None:
        # a writer blocked on a full input channel is left behind; it unblocks when the process dies
        errors: List[BaseException] = []

        def write() -> None:
            try:
                proc.backend.write(text)
            except ProcessError as exc:
                errors.append(exc)

        writer = threading.Thread(target=write, name=f"input:{proc.pid}", daemon=True)
        writer.start()
        writer.join(timeout)
        if writer.is_alive():
            raise InputTimeout(f"Input write timeout after {timeout}s", metadata={"pid": proc.pid})
        if errors:
            raise errors[0]

    def get_output(self, proc: ManagedProcess, lines: Optional[int] = None) -> str:
        output = proc.output
        if lines:
            return "\n".join(output.split("\n")[-lines:])
        return output

    def is_running(self, proc: ManagedProcess) -> bool:
        return proc.alive

    def stop(self, proc: ManagedProcess, escalate: bool = True) -> Optional[int]:
        """
        Two-phase shutdown: quit command, then SIGTERM, then SIGKILL.

        With escalate=False a quit command that does not end the process in
        time raises GracefulShutdownTimeout instead of sending signals.
        Returns the exit code, or None when the process ended by signal.
        """
        if not proc.alive:
            self._finish(proc)
            return proc.exit_code

        timeouts = proc.timeouts
        proc.state = ProcessState.STOPPING_GRACEFUL
        deadline = time.monotonic() + timeouts.graceful_shutdown
        try:
            self._timed_write(proc, QUIT_COMMAND, timeouts.graceful_shutdown)
        except (InputTimeout, ProcessNotRunning) as exc:
            logger.warning("process_quit_command_undelivered", extra={"pid": proc.pid, "error": str(exc)})
        if proc.wait(max(0.0, deadline - time.monotonic())):
            logger.info("process_stopped_gracefully", extra={"pid": proc.pid, "exit_code": proc.exit_code})
            self._finish(proc)
            return proc.exit_code

        if not escalate:
            proc.state = ProcessState.RUNNING
            raise GracefulShutdownTimeout(
                f"Process did not exit within {timeouts.graceful_shutdown}s of the quit command",
                metadata={"pid": proc.pid},
            )

        logger.warning("process_graceful_shutdown_timeout", extra={"pid": proc.pid})
        proc.state = ProcessState.STOPPING_FORCED
        proc.was_killed = True
        proc.backend.kill(signal.SIGTERM)
        if proc.wait(timeouts.force_kill):
            self._finish(proc)
            return proc.exit_code

        logger.warning("process_force_kill", extra={"pid": proc.pid})
        proc.backend.kill(signal.SIGKILL)
        if not proc.wait(KILL_GRACE):
            raise ForceTerminationTimeout(
                "Process survived SIGKILL",
                metadata={"pid": proc.pid},
            )
        self._finish(proc)
        return proc.exit_code

    def wait_for_exit(self, proc: ManagedProcess, timeout: Optional[float] = None) -> Optional[int]:
        """Block until the process exits. Raises WaitTimeout when it does not."""
        if not proc.wait(timeout):
            raise WaitTimeout(
                f"Process did not exit within {timeout}s",
                metadata={"pid": proc.pid},
            )
        return proc.exit_code

    def get_final_state(self, proc: ManagedProcess) -> FinalState:
        if proc.final_state is None:
            end = proc.end_time or time.time()
            proc.final_state = FinalState(
                exit_code=proc.exit_code,
                signal=proc.signal,
                runtime=end - proc.start_time,
                output_tail=proc.output[-FINAL_OUTPUT_TAIL:],
                was_killed=proc.was_killed,
                start_time=proc.start_time,
                config=proc.config,
            )
        return proc.final_state

    def get_timeouts(self, proc: ManagedProcess) -> ProcessTimeouts:
        return proc.timeouts

    def managed_processes(self) -> List[ManagedProcess]:
        with self._lock:
            return list(self._processes.values())

    def cleanup(self) -> None:
        """Stop every managed process."""
        errors: List[str] = []
        for proc in self.managed_processes():
            try:
                self.stop(proc)
            except ProcessError as exc:
                errors.append(f"pid {proc.pid}: {exc}")
        if errors:
            raise ProcessError(f"Process cleanup failed: {'; '.join(errors)}", metadata={"errors": errors})


def _default_backend(config: AppConfig) -> ProcessBackend:
    if config.use_pty:
        return PtyBackend(config.pty_size)
    return PipeBackend()

"""
TermHarness Environment Sandbox

Creates and tracks uniquely named temporary directories, applies and restores
a scoped set of environment variables, and watches individual files for
change events. All filesystem access goes through an injected FileSystem so
tests can run against an in-memory fake.
"""

import os
import random
import shutil
import string
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from pathlib import PurePosixPath
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from termharness.errors import HarnessError
from termharness.logging import get_logger

logger = get_logger(__name__)

# (exists, mtime_ns or version, size)
FileSignature = Tuple[bool, int, int]
WatchCallback = Callable[[str, str], None]


class FileSystem(ABC):
    """Filesystem capability used by the sandbox and scenario seed data."""

    @abstractmethod
    def temp_root(self) -> str:
        ...

    @abstractmethod
    def make_dir(self, path: str) -> None:
        """Create a directory and any missing parents."""

    @abstractmethod
    def remove_tree(self, path: str) -> None:
        """Remove a file or a directory tree. A missing path is not an error."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        ...

    @abstractmethod
    def read_text(self, path: str) -> str:
        ...

    @abstractmethod
    def write_text(self, path: str, content: str) -> None:
        ...

    @abstractmethod
    def signature(self, path: str) -> FileSignature:
        """Return a value that changes whenever the file changes."""

    @abstractmethod
    def list_dir(self, path: str) -> List[str]:
        ...


class OSFileSystem(FileSystem):
    """FileSystem bound to real OS calls."""

    def temp_root(self) -> str:
        return tempfile.gettempdir()

    def make_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)

    def remove_tree(self, path: str) -> None:
        if os.path.isdir(path):
            shutil.rmtree(path)
        elif os.path.exists(path):
            os.remove(path)

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def read_text(self, path: str) -> str:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read()

    def write_text(self, path: str, content: str) -> None:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(content)

    def signature(self, path: str) -> FileSignature:
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return (False, 0, 0)
        return (True, st.st_mtime_ns, st.st_size)

    def list_dir(self, path: str) -> List[str]:
        return sorted(os.listdir(path))


class MemoryFileSystem(FileSystem):
    """In-memory FileSystem for tests. Paths are treated as POSIX paths."""

    def __init__(self, root: str = "/tmp") -> None:
        self._root = root
        self._dirs = {"/", root}
        self._files: Dict[str, str] = {}
        self._versions: Dict[str, int] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _norm(path: str) -> str:
        return str(PurePosixPath(path))

    def temp_root(self) -> str:
        return self._root

    def make_dir(self, path: str) -> None:
        p = PurePosixPath(self._norm(path))
        with self._lock:
            for parent in [p, *p.parents]:
                self._dirs.add(str(parent))

    def remove_tree(self, path: str) -> None:
        prefix = self._norm(path)
        with self._lock:
            self._dirs = {d for d in self._dirs if d != prefix and not d.startswith(prefix + "/")}
            for name in [f for f in self._files if f == prefix or f.startswith(prefix + "/")]:
                del self._files[name]
                self._versions[name] = self._versions.get(name, 0) + 1

    def exists(self, path: str) -> bool:
        p = self._norm(path)
        return p in self._files or p in self._dirs

    def is_dir(self, path: str) -> bool:
        return self._norm(path) in self._dirs

    def read_text(self, path: str) -> str:
        p = self._norm(path)
        if p not in self._files:
            raise FileNotFoundError(p)
        return self._files[p]

    def write_text(self, path: str, content: str) -> None:
        p = self._norm(path)
        self.make_dir(str(PurePosixPath(p).parent))
        with self._lock:
            self._files[p] = content
            self._versions[p] = self._versions.get(p, 0) + 1

    def signature(self, path: str) -> FileSignature:
        p = self._norm(path)
        with self._lock:
            if p not in self._files:
                return (False, self._versions.get(p, 0), 0)
            return (True, self._versions[p], len(self._files[p]))

    def list_dir(self, path: str) -> List[str]:
        p = self._norm(path)
        if p not in self._dirs:
            raise FileNotFoundError(p)
        names = set()
        for entry in list(self._dirs) + list(self._files):
            entry_path = PurePosixPath(entry)
            if str(entry_path.parent) == p and entry != p:
                names.add(entry_path.name)
        return sorted(names)


class FileWatcher:
    """
    Background thread that polls one file and reports changes.

    The callback receives (event, path) where event is "change" when the
    file content changed and "rename" when it appeared or disappeared.
    """

    def __init__(
        self,
        path: str,
        callback: WatchCallback,
        fs: FileSystem,
        poll_interval: float = 0.1,
        on_close: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.path = path
        self._callback = callback
        self._fs = fs
        self._poll_interval = poll_interval
        self._on_close = on_close
        self._stop = threading.Event()
        self._last = fs.signature(path)
        self._thread = threading.Thread(target=self._run, name=f"watch:{path}", daemon=True)
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._stop.is_set()

    def _run(self) -> None:
        while not self._stop.wait(self._poll_interval):
            current = self._fs.signature(self.path)
            if current == self._last:
                continue
            event = "change" if current[0] and self._last[0] else "rename"
            self._last = current
            try:
                self._callback(event, self.path)
            except Exception as exc:
                logger.warning(
                    "file_watch_callback_failed",
                    extra={"path": self.path, "error": str(exc)},
                )

    def close(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout=self._poll_interval * 5)
        if self._on_close:
            self._on_close(self.path)


def _random_suffix(length: int = 6) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


class EnvironmentSandbox:
    """Tracks temp directories, environment overrides and file watchers for one harness."""

    def __init__(self, fs: Optional[FileSystem] = None, environ: Optional[Dict[str, str]] = None) -> None:
        self.fs = fs or OSFileSystem()
        self._environ = environ if environ is not None else os.environ
        self._temp_dirs: List[str] = []
        self._original_env: Dict[str, Optional[str]] = {}
        self._watchers: Dict[str, FileWatcher] = {}
        self._lock = threading.Lock()

    def create_temp_dir(self, prefix: str = "termharness") -> str:
        """Create a uniquely named directory under the temp root and track it."""
        name = f"{prefix}-{int(time.time() * 1000)}-{_random_suffix()}"
        path = os.path.join(self.fs.temp_root(), name)
        self.fs.make_dir(path)
        with self._lock:
            self._temp_dirs.append(path)
        logger.debug("temp_dir_created", extra={"path": path})
        return path

    def cleanup_temp_dir(self, path: str) -> None:
        with self._lock:
            if path not in self._temp_dirs:
                raise HarnessError(f"Directory {path} is not managed by this sandbox")
        if self.fs.exists(path):
            self.fs.remove_tree(path)
        with self._lock:
            self._temp_dirs.remove(path)
        logger.debug("temp_dir_removed", extra={"path": path})

    def get_temp_directories(self) -> List[str]:
        with self._lock:
            return list(self._temp_dirs)

    def set_environment(self, variables: Mapping[str, str]) -> None:
        """Apply variables, remembering the first-seen original of each one."""
        for key, value in variables.items():
            if key not in self._original_env:
                self._original_env[key] = self._environ.get(key)
            self._environ[key] = value

    def restore_environment(self) -> None:
        """Restore every variable touched by set_environment, unsetting the ones that were absent."""
        for key, original in self._original_env.items():
            if original is None:
                self._environ.pop(key, None)
            else:
                self._environ[key] = original
        self._original_env.clear()

    def watch_file(self, path: str, callback: WatchCallback, poll_interval: float = 0.1) -> FileWatcher:
        with self._lock:
            if path in self._watchers:
                raise HarnessError(f"File {path} is already being watched")
            watcher = FileWatcher(path, callback, self.fs, poll_interval, on_close=self._forget_watcher)
            self._watchers[path] = watcher
        return watcher

    def _forget_watcher(self, path: str) -> None:
        with self._lock:
            self._watchers.pop(path, None)

    def get_watched_files(self) -> List[str]:
        with self._lock:
            return list(self._watchers)

    def cleanup(self) -> None:
        """Close watchers, restore the environment and remove every tracked directory."""
        errors: List[str] = []
        for watcher in list(self._watchers.values()):
            watcher.close()
        self.restore_environment()
        for path in self.get_temp_directories():
            try:
                self.cleanup_temp_dir(path)
            except (OSError, HarnessError) as exc:
                errors.append(f"{path}: {exc}")
        if errors:
            raise HarnessError(
                f"Sandbox cleanup failed: {'; '.join(errors)}",
                metadata={"errors": errors},
            )

import os
import re
import threading
from pathlib import Path
from typing import List, Tuple

import pytest

from termharness.errors import HarnessError
from termharness.sandbox import EnvironmentSandbox, MemoryFileSystem, OSFileSystem


@pytest.fixture
def sandbox() -> EnvironmentSandbox:
    return EnvironmentSandbox(fs=MemoryFileSystem(root="/sandbox"), environ={})


def test_create_temp_dir_is_unique_and_tracked(sandbox: EnvironmentSandbox) -> None:
    first = sandbox.create_temp_dir("ei-test")
    second = sandbox.create_temp_dir("ei-test")
    assert first != second
    assert re.match(r"^/sandbox/ei-test-\d+-[a-z0-9]{6}$", first)
    assert sandbox.fs.is_dir(first)
    assert sandbox.get_temp_directories() == [first, second]


def test_cleanup_temp_dir_rejects_untracked(sandbox: EnvironmentSandbox) -> None:
    with pytest.raises(HarnessError, match="not managed"):
        sandbox.cleanup_temp_dir("/sandbox/elsewhere")


def test_cleanup_temp_dir_tolerates_missing_directory(sandbox: EnvironmentSandbox) -> None:
    path = sandbox.create_temp_dir()
    sandbox.fs.remove_tree(path)
    sandbox.cleanup_temp_dir(path)
    assert sandbox.get_temp_directories() == []


@pytest.mark.parametrize("fs_kind", ["memory", "os"])
def test_remove_tree_handles_files_directories_and_missing_paths(fs_kind: str, tmp_path: Path) -> None:
    fs = MemoryFileSystem(root=str(tmp_path)) if fs_kind == "memory" else OSFileSystem()
    note = os.path.join(str(tmp_path), "notes.txt")
    nested = os.path.join(str(tmp_path), "personas", "ava", "state.json")
    fs.write_text(note, "remember")
    fs.write_text(nested, "{}")

    fs.remove_tree(note)
    fs.remove_tree(os.path.join(str(tmp_path), "personas"))
    fs.remove_tree(os.path.join(str(tmp_path), "never-created"))

    assert not fs.exists(note)
    assert not fs.exists(nested)
    assert not fs.exists(os.path.join(str(tmp_path), "personas"))


def test_environment_restores_first_seen_original() -> None:
    environ = {"EXISTING": "original"}
    sandbox = EnvironmentSandbox(fs=MemoryFileSystem(), environ=environ)
    sandbox.set_environment({"EXISTING": "one", "NEW_VAR": "x"})
    sandbox.set_environment({"EXISTING": "two"})
    assert environ == {"EXISTING": "two", "NEW_VAR": "x"}

    sandbox.restore_environment()
    assert environ == {"EXISTING": "original"}


def test_watch_file_reports_change_and_rename(sandbox: EnvironmentSandbox) -> None:
    path = "/sandbox/data/state.json"
    events: List[Tuple[str, str]] = []
    seen = threading.Event()

    def on_event(event: str, changed: str) -> None:
        events.append((event, changed))
        if len(events) >= 2:
            seen.set()

    watcher = sandbox.watch_file(path, on_event, poll_interval=0.02)
    try:
        sandbox.fs.write_text(path, "{}")
        for _ in range(50):
            if events:
                break
            seen.wait(0.02)
        sandbox.fs.write_text(path, '{"a": 1}')
        assert seen.wait(2.0)
    finally:
        watcher.close()

    assert events[0] == ("rename", path)
    assert events[1] == ("change", path)
    assert sandbox.get_watched_files() == []


def test_watch_file_twice_raises(sandbox: EnvironmentSandbox) -> None:
    watcher = sandbox.watch_file("/sandbox/a.txt", lambda event, path: None)
    try:
        with pytest.raises(HarnessError, match="already being watched"):
            sandbox.watch_file("/sandbox/a.txt", lambda event, path: None)
    finally:
        watcher.close()


def test_callback_errors_do_not_stop_watcher(sandbox: EnvironmentSandbox) -> None:
    calls: List[str] = []
    done = threading.Event()

    def flaky(event: str, path: str) -> None:
        calls.append(event)
        if len(calls) == 1:
            raise RuntimeError("callback failed")
        done.set()

    watcher = sandbox.watch_file("/sandbox/b.txt", flaky, poll_interval=0.02)
    try:
        sandbox.fs.write_text("/sandbox/b.txt", "1")
        for _ in range(50):
            if calls:
                break
            done.wait(0.02)
        sandbox.fs.write_text("/sandbox/b.txt", "22")
        assert done.wait(2.0)
    finally:
        watcher.close()


def test_cleanup_closes_watchers_restores_env_and_removes_dirs(sandbox: EnvironmentSandbox) -> None:
    path = sandbox.create_temp_dir()
    sandbox.fs.write_text(f"{path}/personas/ava/system.jsonc", "{}")
    sandbox.set_environment({"EI_DATA_PATH": path})
    sandbox.watch_file(f"{path}/x", lambda event, p: None)

    sandbox.cleanup()

    assert not sandbox.fs.exists(path)
    assert sandbox.get_temp_directories() == []
    assert sandbox.get_watched_files() == []
    assert "EI_DATA_PATH" not in sandbox._environ


def test_os_filesystem_round_trip(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TMPDIR", str(tmp_path))
    import tempfile

    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))
    sandbox = EnvironmentSandbox(fs=OSFileSystem(), environ=dict(os.environ))
    path = sandbox.create_temp_dir("os")
    assert Path(path).parent == tmp_path

    target = os.path.join(path, "nested", "file.txt")
    sandbox.fs.write_text(target, "hello")
    assert sandbox.fs.read_text(target) == "hello"
    assert sandbox.fs.list_dir(path) == ["nested"]
    exists, _, size = sandbox.fs.signature(target)
    assert exists and size == 5

    sandbox.cleanup()
    assert not os.path.exists(path)

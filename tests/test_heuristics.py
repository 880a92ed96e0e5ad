import pytest
from hypothesis import given, settings, strategies as st

from termharness.heuristics import IdleDetector, find_init_error, is_processing, looks_ready


@pytest.mark.parametrize(
    "output,ready",
    [
        ("", False),
        ("booting...", False),
        ("Chat: ready", True),
        ("[ei] loaded", True),
        ("┌────┐", True),
        ("\x1b[32mwelcome\x1b[0m", True),
    ],
)
def test_looks_ready(output: str, ready: bool) -> None:
    assert looks_ready(output) is ready


def test_find_init_error() -> None:
    assert find_init_error("Error: EADDRINUSE") == "Error:"
    assert find_init_error("listen EADDRINUSE :::3000") == "EADDRINUSE"
    assert find_init_error("all good") is None


def test_is_processing_only_scans_the_tail() -> None:
    assert is_processing("Ava is THINKING...")
    assert not is_processing("Thinking..." + "x" * 2000)
    assert not is_processing("Ava: done")


def test_idle_detector_needs_consecutive_stable_polls() -> None:
    detector = IdleDetector(stable_checks=3)
    assert [detector.feed(o) for o in ("a", "a", "a", "a")] == [False, False, False, True]
    assert detector.feed("ab") is False


def test_idle_detector_ignores_stable_processing_output() -> None:
    detector = IdleDetector(stable_checks=2)
    assert not any(detector.feed("Loading...") for _ in range(10))


@given(st.lists(st.text(alphabet="abc", max_size=5), min_size=1, max_size=30))
@settings(max_examples=100)
def test_idle_detector_never_fires_on_changing_length(chunks) -> None:
    detector = IdleDetector(stable_checks=1)
    output = ""
    for chunk in chunks:
        output += chunk + "x"
        assert detector.feed(output) is False

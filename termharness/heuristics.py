"""
TermHarness Output Heuristics

Replaceable predicates used to interpret the captured output of the
application under test. Callers can swap any of them per target
application by passing their own callables to the controller or harness.

- readiness: output shows the application has rendered its UI
- init error: output shows the application failed during startup
- processing: output shows the application is still busy
- idle: best-effort; the output length stayed the same for several
  consecutive polls and no processing indicator is present. Slow output
  can still produce a false positive.
"""

import re
from typing import Callable, Iterable, Optional, Sequence

OutputPredicate = Callable[[str], bool]

READY_TEXT_MARKERS = ("Emotional Intelligence", "[ei]", "Chat:")
BOX_DRAWING_RE = re.compile(r"[┌┐└┘│─┬┴┼]")
ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;]*[mK]")

INIT_ERROR_MARKERS = ("Error:", "Cannot find module", "ENOENT", "EADDRINUSE")

PROCESSING_INDICATORS = (
    "Processing...",
    "Thinking...",
    "Loading...",
    "Generating...",
    "Working",
    "streaming",
    "chunk",
    "processing in progress",
    "background processing",
)

IDLE_STABLE_CHECKS = 5


def looks_ready(output: str) -> bool:
    """Default readiness check: UI text, box-drawing characters, or ANSI styling."""
    if not output:
        return False
    if any(marker in output for marker in READY_TEXT_MARKERS):
        return True
    return bool(BOX_DRAWING_RE.search(output) or ANSI_ESCAPE_RE.search(output))


def find_init_error(output: str, markers: Sequence[str] = INIT_ERROR_MARKERS) -> Optional[str]:
    """Return the first init-error marker found in output, if any."""
    for marker in markers:
        if marker in output:
            return marker
    return None


def is_processing(output: str, window: int = 1000, indicators: Iterable[str] = PROCESSING_INDICATORS) -> bool:
    """Case-insensitive scan of the output tail for a processing indicator."""
    tail = output[-window:].lower()
    return any(indicator.lower() in tail for indicator in indicators)


class IdleDetector:
    """
    Tracks output length across polls.

    feed() returns True once the length has been unchanged for
    `stable_checks` consecutive polls with no processing indicator.
    """

    def __init__(self, stable_checks: int = IDLE_STABLE_CHECKS, processing: OutputPredicate = is_processing) -> None:
        self.stable_checks = stable_checks
        self._processing = processing
        self._last_length: Optional[int] = None
        self._stable = 0

    def feed(self, output: str) -> bool:
        length = len(output)
        if self._last_length == length and not self._processing(output):
            self._stable += 1
        else:
            self._stable = 0
        self._last_length = length
        return self._stable >= self.stable_checks

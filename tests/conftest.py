import os
import sys
from pathlib import Path
from typing import Iterator, List

import pytest

# Ensure repository root is on sys.path so the in-tree package imports cleanly.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from termharness.config import _reset_config_for_tests  # noqa: E402
from termharness.harness import HarnessConfig, TestHarness  # noqa: E402
from termharness.mock_server import MockLLMService  # noqa: E402

FIXTURES = Path(__file__).resolve().parent / "fixtures"
FAKE_APP = FIXTURES / "fake_app.py"


@pytest.fixture
def fake_app_command() -> List[str]:
    return [sys.executable, str(FAKE_APP)]


@pytest.fixture(autouse=True)
def reset_config(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for key in list(os.environ):
        if key.startswith("TERMHARNESS_"):
            monkeypatch.delenv(key, raising=False)
    _reset_config_for_tests()
    yield
    _reset_config_for_tests()


@pytest.fixture
def mock_service() -> Iterator[MockLLMService]:
    service = MockLLMService()
    service.start(0)
    try:
        yield service
    finally:
        service.stop()


@pytest.fixture
def harness(fake_app_command: List[str]) -> Iterator[TestHarness]:
    h = TestHarness(HarnessConfig(app_command=fake_app_command, app_timeout=10.0))
    h.setup()
    try:
        yield h
    finally:
        h.cleanup()

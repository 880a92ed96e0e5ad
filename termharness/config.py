"""
TermHarness Configuration

Pydantic-backed configuration loaded from environment variables.
Uses TERMHARNESS_ prefix for all environment variables.
"""

import os
import shlex
import threading
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from termharness.errors import ConfigError


class Config(BaseModel):
    """
    Pydantic-backed configuration loaded from environment variables.

    Key env vars:
    - TERMHARNESS_APP_COMMAND (command line of the application under test)
    - TERMHARNESS_APP_CWD (working directory for the application)
    - TERMHARNESS_USE_PTY / TERMHARNESS_DEBUG
    - TERMHARNESS_INIT_TIMEOUT / GRACEFUL_TIMEOUT / FORCE_KILL_TIMEOUT / WATCHDOG_TIMEOUT (seconds)
    - TERMHARNESS_MOCK_HOST / TERMHARNESS_MOCK_PORT (0 picks a free port)
    - TERMHARNESS_MOCK_DELAY_MS / TERMHARNESS_MOCK_LOGGING
    - TERMHARNESS_MAX_RETRIES / RETRY_BASE_DELAY / RETRY_MAX_DELAY / CLEANUP_TIMEOUT
    - TERMHARNESS_LOG_LEVEL (default: INFO)
    """

    # Application under test
    app_command: List[str] = Field(default_factory=list)
    app_cwd: Optional[Path] = Field(default=None)
    use_pty: bool = Field(default=False)
    debug: bool = Field(default=False)

    # Process timeouts (seconds)
    init_timeout: float = Field(default=5.0)
    graceful_timeout: float = Field(default=3.0)
    force_kill_timeout: float = Field(default=1.0)
    watchdog_timeout: float = Field(default=30 * 60)

    # Mock chat-completion service
    mock_host: str = Field(default="127.0.0.1")
    mock_port: int = Field(default=0)
    mock_delay_ms: int = Field(default=0)
    mock_logging: bool = Field(default=False)

    # Sandbox
    temp_prefix: str = Field(default="termharness")

    # Retry / recovery
    max_retries: int = Field(default=3)
    retry_base_delay: float = Field(default=1.0)
    retry_max_delay: float = Field(default=30.0)
    cleanup_timeout: float = Field(default=5.0)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def app_configured(self) -> bool:
        """Check if an application command is configured."""
        return bool(self.app_command)


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Parse boolean from environment variable."""
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _parse_number(name: str, default: str, cast):
    raw = os.environ.get(name, default)
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigError(
            f"{name} must be a number, got {raw!r}",
            metadata={"variable": name},
        ) from exc


def load_config() -> Config:
    """
    Load TermHarness configuration from environment.

    Environment variables use the TERMHARNESS_ prefix.
    """
    command = os.environ.get("TERMHARNESS_APP_COMMAND", "")
    cwd = os.environ.get("TERMHARNESS_APP_CWD")
    return Config(
        # Application
        app_command=shlex.split(command) if command else [],
        app_cwd=Path(cwd).expanduser() if cwd else None,
        use_pty=_parse_bool(os.environ.get("TERMHARNESS_USE_PTY")),
        debug=_parse_bool(os.environ.get("TERMHARNESS_DEBUG")),

        # Timeouts
        init_timeout=_parse_number("TERMHARNESS_INIT_TIMEOUT", "5", float),
        graceful_timeout=_parse_number("TERMHARNESS_GRACEFUL_TIMEOUT", "3", float),
        force_kill_timeout=_parse_number("TERMHARNESS_FORCE_KILL_TIMEOUT", "1", float),
        watchdog_timeout=_parse_number("TERMHARNESS_WATCHDOG_TIMEOUT", str(30 * 60), float),

        # Mock service
        mock_host=os.environ.get("TERMHARNESS_MOCK_HOST", "127.0.0.1"),
        mock_port=_parse_number("TERMHARNESS_MOCK_PORT", "0", int),
        mock_delay_ms=_parse_number("TERMHARNESS_MOCK_DELAY_MS", "0", int),
        mock_logging=_parse_bool(os.environ.get("TERMHARNESS_MOCK_LOGGING")),

        # Sandbox
        temp_prefix=os.environ.get("TERMHARNESS_TEMP_PREFIX", "termharness"),

        # Recovery
        max_retries=_parse_number("TERMHARNESS_MAX_RETRIES", "3", int),
        retry_base_delay=_parse_number("TERMHARNESS_RETRY_BASE_DELAY", "1.0", float),
        retry_max_delay=_parse_number("TERMHARNESS_RETRY_MAX_DELAY", "30.0", float),
        cleanup_timeout=_parse_number("TERMHARNESS_CLEANUP_TIMEOUT", "5.0", float),

        log_level=os.environ.get("TERMHARNESS_LOG_LEVEL", "INFO"),
    )


# Singleton config instance (lazy loaded)
_config: Optional[Config] = None
_config_lock = threading.Lock()


def get_config() -> Config:
    """Get or create the singleton config instance."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_config()
    return _config


def _reset_config_for_tests() -> None:
    """Reset the global config cache (tests only)."""
    global _config
    with _config_lock:
        _config = None

"""
TermHarness Structured Logging

Provides structured logging with context propagation, JSON formatting,
and sensitive data redaction. Captured terminal output attached to log
records is stripped of escape sequences and truncated so JSON log lines
stay readable.
"""

import json
import logging
import os
import re
from contextlib import contextmanager
from contextvars import ContextVar
from urllib.parse import urlsplit, urlunsplit
from typing import Any, Dict, Generator, Optional


STANDARD_FIELDS = ("scenario", "step_index", "operation_id", "pid")

_RESERVED_LOG_RECORD_ATTRS = set(
    logging.LogRecord(
        name="",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg="",
        args=(),
        exc_info=None,
    ).__dict__.keys()
)
_RESERVED_LOG_RECORD_ATTRS.update({"asctime", "message"})


def _json_fallback(value: Any) -> str:  # pragma: no cover
    """Best-effort conversion for non-JSON-serializable values (Path, Exception, etc.)."""
    try:
        return str(value)
    except Exception:
        return repr(value)


_REDACTED = "[REDACTED]"
_SECRET_KEY_MARKERS = (
    "token", "secret", "password", "passwd", "api_key", "api-key", "apikey",
    "authorization", "private_key", "bearer", "credential"
)


_BEARER_RE = re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9._~+/=-]+")
_TERMINAL_ESCAPE_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07")
# record fields carrying captured application output
_TERMINAL_TEXT_KEYS = ("output", "output_tail")
TERMINAL_TEXT_LIMIT = 500


def _looks_sensitive_key(key: str) -> bool:
    """Check if a key name suggests sensitive data."""
    lower = (key or "").lower()
    return any(marker in lower for marker in _SECRET_KEY_MARKERS)


def _strip_url_credentials(value: str) -> str:
    """Remove user:pass@ from URLs."""
    try:
        parts = urlsplit(value)
    except ValueError:
        return value
    if not parts.scheme or not parts.netloc:
        return value
    if "@" not in parts.netloc:
        return value
    hostpart = parts.netloc.rsplit("@", 1)[-1]
    return urlunsplit((parts.scheme, hostpart, parts.path, parts.query, parts.fragment))


def _sanitize_for_logging(key: str, value: Any) -> Any:
    """Sanitize a value for safe logging (redact secrets, strip credentials)."""
    if _looks_sensitive_key(key):
        return _REDACTED
    if isinstance(value, str):
        if key in _TERMINAL_TEXT_KEYS:
            value = _TERMINAL_ESCAPE_RE.sub("", value)[-TERMINAL_TEXT_LIMIT:]
        return _BEARER_RE.sub(r"\1 " + _REDACTED, _strip_url_credentials(value))
    if isinstance(value, dict):
        return {k: _sanitize_for_logging(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize_for_logging(key, v) for v in value]
    return value


_LOG_CONTEXT: ContextVar[Dict[str, Any]] = ContextVar("TERMHARNESS_LOG_CONTEXT", default={})


def get_log_context() -> Dict[str, Any]:
    """Return a copy of the current log context to avoid accidental mutation."""
    return dict(_LOG_CONTEXT.get() or {})


@contextmanager
def log_context(**fields: Any) -> Generator[None, None, None]:
    """Context manager for temporarily adding fields to the log context."""
    token = _LOG_CONTEXT.set({**get_log_context(), **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


class ContextFieldFilter(logging.Filter):
    """
    Logging filter that ensures all standard context fields exist on every log record.

    Scenario name and step index are set by the scenario executor through
    log_context(), so records emitted deep inside the process controller or
    mock service still carry them.
    """

    def __init__(self, defaults: Optional[Dict[str, Any]] = None) -> None:
        super().__init__()
        self.defaults = {field: "-" for field in STANDARD_FIELDS}
        if defaults:
            self.defaults.update({k: v for k, v in defaults.items() if v is not None})

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = get_log_context()
        for key, value in ctx.items():
            if value is None:
                continue
            if key in _RESERVED_LOG_RECORD_ATTRS:
                continue
            if not hasattr(record, key):
                setattr(record, key, value)

        for key, default in self.defaults.items():
            if not hasattr(record, key):
                setattr(record, key, default)
        return True


class JsonFormatter(logging.Formatter):
    """JSON log formatter that includes all context fields and sanitizes sensitive data."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in STANDARD_FIELDS:
            data[field] = getattr(record, field, "-")

        # Everything passed via `extra=`
        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_RECORD_ATTRS:
                continue
            if key in data:
                continue
            data[key] = value

        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)

        sanitized = {k: _sanitize_for_logging(k, v) for k, v in data.items()}
        return json.dumps(sanitized, default=_json_fallback)


def setup_logging(level: Optional[str] = None, json_output: bool = False) -> logging.Logger:
    """
    Configure the root logger with structured logging support.

    Args:
        level: Log level (default: from TERMHARNESS_LOG_LEVEL or INFO)
        json_output: If True, use JSON formatting; otherwise use text format

    Returns:
        The termharness logger instance
    """
    resolved_level = level or os.environ.get("TERMHARNESS_LOG_LEVEL") or "INFO"

    handler = logging.StreamHandler()
    handler.addFilter(ContextFieldFilter())

    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s "
                "scenario=%(scenario)s step=%(step_index)s op=%(operation_id)s pid=%(pid)s"
            )
        )

    root = logging.getLogger()
    root.handlers = []
    root.setLevel(getattr(logging, str(resolved_level).upper(), logging.INFO))
    root.addHandler(handler)

    return logging.getLogger("termharness")


def get_logger(name: str = "termharness") -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def init_cli_logging(level: Optional[str] = None, json_output: bool = False) -> logging.Logger:
    """
    Initialize logging for the CLI using the configured log level.

    Args:
        level: Log level (default: from TERMHARNESS_LOG_LEVEL or WARNING)
        json_output: If True, use JSON formatting
    """
    return setup_logging(
        level or os.environ.get("TERMHARNESS_LOG_LEVEL") or "WARNING",
        json_output=json_output,
    )


def json_logging_from_env() -> bool:
    """Check if JSON logging is enabled via environment variable."""
    return os.environ.get("TERMHARNESS_LOG_JSON", "").lower() in ("1", "true", "yes")


def log_extra(
    *,
    scenario: Optional[str] = None,
    step_index: Optional[int] = None,
    operation_id: Optional[str] = None,
    pid: Optional[int] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """
    Build a consistent extra dict for structured logging.

    Only non-None values are included so defaults from ContextFieldFilter still apply.

    Example:
        logger.info("step_started", extra=log_extra(step_index=2, action="ui:Ready"))
    """
    payload: Dict[str, Any] = {}
    if scenario is not None:
        payload["scenario"] = scenario
    if step_index is not None:
        payload["step_index"] = step_index
    if operation_id is not None:
        payload["operation_id"] = operation_id
    if pid is not None:
        payload["pid"] = pid
    payload.update({k: v for k, v in extra.items() if v is not None})
    return payload


# Standard exit codes for the CLI
EXIT_OK = 0
EXIT_RUNTIME_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_SCENARIO_FAILED = 4

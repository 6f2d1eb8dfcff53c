"""Logging for branchlink.

One ``branchlink`` logger per process. Warnings and errors go to stderr;
everything at the configured level also goes to a rotating per-session
file under ``~/.branchlink/logs``. ``log_action`` and ``timeit`` emit one
JSON object per line so sessions can be grepped and aggregated.

Settings come from ``configure(LoggingConfig)``; ``BRANCHLINK_LOG_*``
environment variables override them.
"""

from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .config_schema import LoggingConfig


LOGGER_NAME = "branchlink"

ENV_LOG_DIR = "BRANCHLINK_LOG_DIR"
ENV_LOG_LEVEL = "BRANCHLINK_LOG_LEVEL"
ENV_LOG_MAX_BYTES = "BRANCHLINK_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "BRANCHLINK_LOG_BACKUP_COUNT"
ENV_LOG_DISABLE_FILE = "BRANCHLINK_LOG_DISABLE_FILE"

DEFAULT_LOG_DIR = Path.home() / ".branchlink" / "logs"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5

_FORMAT = logging.Formatter("[%(levelname)s %(asctime)s] %(message)s", datefmt="%Y-%m-%dT%H:%M:%S")
_TRUTHY = ("1", "true", "yes")

_logger_initialized = False
_session_start: Optional[str] = None
# from configure(); env vars still win when set
_overrides: Dict[str, Any] = {}


def _setting(env_name: str, key: str, default: Any) -> Any:
    for value in (os.getenv(env_name), _overrides.get(key)):
        if value not in (None, ""):
            return value
    return default


def _get_log_level() -> int:
    name = str(_setting(ENV_LOG_LEVEL, "level", DEFAULT_LOG_LEVEL)).upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _get_log_file_path() -> Optional[Path]:
    """``<log dir>/branchlink_<session start>.log``, or None when file logging is off.

    Creates the log directory.
    """
    global _session_start
    if str(_setting(ENV_LOG_DISABLE_FILE, "disable_file", "")).lower() in _TRUTHY:
        return None
    log_dir = Path(str(_setting(ENV_LOG_DIR, "dir", DEFAULT_LOG_DIR))).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    if _session_start is None:
        _session_start = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")
    return log_dir / f"branchlink_{_session_start}.log"


def _file_handler(level: int) -> Optional[logging.Handler]:
    try:
        path = _get_log_file_path()
    except OSError:
        # unwritable log dir: stderr only
        return None
    if path is None:
        return None
    handler = RotatingFileHandler(
        str(path),
        maxBytes=int(_setting(ENV_LOG_MAX_BYTES, "max_bytes", DEFAULT_MAX_BYTES)),
        backupCount=int(_setting(ENV_LOG_BACKUP_COUNT, "backup_count", DEFAULT_BACKUP_COUNT)),
    )
    handler.setLevel(level)
    return handler


def _stderr_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(max(level, logging.WARNING))
    return handler


def _get_logger() -> logging.Logger:
    """The branchlink logger, attaching handlers on first use."""
    global _logger_initialized
    logger = logging.getLogger(LOGGER_NAME)
    if _logger_initialized:
        return logger
    _logger_initialized = True
    level = _get_log_level()
    logger.setLevel(level)
    logger.handlers.clear()
    for handler in (_file_handler(level), _stderr_handler(level)):
        if handler is not None:
            handler.setFormatter(_FORMAT)
            logger.addHandler(handler)
    return logger


def configure(settings: "LoggingConfig") -> logging.Logger:
    """Rebuild the logger's handlers from a loaded ``LoggingConfig``."""
    global _logger_initialized
    _overrides.clear()
    _overrides.update(
        level=settings.level,
        dir=settings.dir,
        max_bytes=settings.max_bytes,
        backup_count=settings.backup_count,
        disable_file="1" if settings.disable_file else "",
    )
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    _logger_initialized = False
    return _get_logger()


def _with_fields(message: str, fields: Dict[str, Any]) -> str:
    if not fields:
        return message
    return f"{message} " + json.dumps(fields, separators=(",", ":"), sort_keys=True, default=str)


def log_action(
    action: str,
    *,
    outcome: str = "ok",
    duration_ms: Optional[float] = None,
    **fields: Any,
) -> None:
    """Emit a structured log line for an action.

    Fields are serialized to JSON for safety. Keep schema lightweight.

    Args:
        action: Name of the action being logged (e.g. "engine.associate_branch")
        outcome: Result status ("ok", "error", "rejected", ...)
        duration_ms: How long the action took in milliseconds
        **fields: Additional fields to include
    """
    payload: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "outcome": outcome,
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    if fields:
        payload.update(fields)

    _get_logger().info(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))


def log_debug(message: str, **fields: Any) -> None:
    """Log a debug message with optional structured fields.

    Only emitted when log level is DEBUG.
    """
    logger = _get_logger()
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(_with_fields(message, fields))


def log_info(message: str, **fields: Any) -> None:
    _get_logger().info(_with_fields(message, fields))


def log_warning(message: str, **fields: Any) -> None:
    """Log a warning message with optional structured fields."""
    _get_logger().warning(_with_fields(message, fields))


def log_error(message: str, **fields: Any) -> None:
    """Log an error message with optional structured fields."""
    _get_logger().error(_with_fields(message, fields))


@contextmanager
def timeit(action: str, **fields: Any):
    """Time a block and emit a structured log on exit.

    On exception, logs outcome="error" and re-raises. The yielded dict may
    be updated by the block; an "outcome" key overrides the default "ok",
    other keys are appended to the log line.
    """
    start = time.perf_counter()
    result_info: Dict[str, Any] = {}
    try:
        yield result_info
    except Exception:
        duration_ms = (time.perf_counter() - start) * 1000.0
        log_action(action, outcome="error", duration_ms=duration_ms, **fields)
        raise
    duration_ms = (time.perf_counter() - start) * 1000.0
    outcome = result_info.pop("outcome", "ok")
    log_action(action, outcome=outcome, duration_ms=duration_ms, **{**fields, **result_info})

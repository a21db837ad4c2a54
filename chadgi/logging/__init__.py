"""
ChadGI Logging System.

Provides structured JSONL logging for:
- Scheduling decisions (which repo/task was picked and why)
- Worker slot events (claims, completions, failures, heartbeats)
- Session lifecycle events (start, pause, stop, end)

Usage:
    from chadgi.logging import worker_logger, WorkerLogEntry, now_iso

    entry = WorkerLogEntry(
        timestamp=now_iso(),
        session_id=get_session_id(),
        worker_id=1,
        event_type="claim",
        ...
    )
    worker_logger.info(entry.to_json())

Logs are written to ~/.chadgi/logs/ (override with CHADGI_LOG_DIR):
    - scheduler.jsonl
    - worker.jsonl
    - session.jsonl
"""

import threading
from typing import Any

from .config import LogConfig, get_config, set_config
from .entries import SchedulerLogEntry, SessionLogEntry, WorkerLogEntry, now_iso
from .handlers import create_jsonl_logger

# Thread-local storage for session context
_context = threading.local()


def set_session_id(session_id: str) -> None:
    """Set the current session ID for log correlation."""
    _context.session_id = session_id


def get_session_id() -> str:
    """Get the current session ID, or 'unknown' if not set."""
    return getattr(_context, "session_id", "unknown")


# Lazy-initialized loggers to avoid creating files before needed
_loggers: dict[str, Any] | None = None
_init_lock = threading.Lock()


def _ensure_loggers() -> dict[str, Any]:
    """Initialize loggers on first use."""
    global _loggers

    if _loggers is not None:
        return _loggers

    with _init_lock:
        # Double-check after acquiring lock
        if _loggers is not None:
            return _loggers

        config = get_config()
        _loggers = {
            "scheduler": create_jsonl_logger(
                "chadgi.scheduler",
                config.scheduler_log_path,
                level=config.scheduler_level,
                max_bytes=config.max_file_size_bytes,
                backup_count=config.backup_count,
            ),
            "worker": create_jsonl_logger(
                "chadgi.worker",
                config.worker_log_path,
                level=config.worker_level,
                max_bytes=config.max_file_size_bytes,
                backup_count=config.backup_count,
            ),
            "session": create_jsonl_logger(
                "chadgi.session",
                config.session_log_path,
                level=config.session_level,
                max_bytes=config.max_file_size_bytes,
                backup_count=config.backup_count,
            ),
        }
        return _loggers


def configure_logging(config: LogConfig) -> None:
    """
    Install a log config and drop already-created loggers.

    The next log call recreates the JSONL files under the new directory.
    """
    global _loggers

    with _init_lock:
        set_config(config)
        _loggers = None


class _LazyLogger:
    """Lazy wrapper that initializes the actual logger on first use."""

    def __init__(self, name: str):
        self._name = name

    def _get_logger(self) -> Any:
        return _ensure_loggers()[self._name]

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().error(msg, *args, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().exception(msg, *args, **kwargs)


# Public logger instances
scheduler_logger = _LazyLogger("scheduler")
worker_logger = _LazyLogger("worker")
session_logger = _LazyLogger("session")


__all__ = [
    # Loggers
    "scheduler_logger",
    "worker_logger",
    "session_logger",
    # Log entries
    "SchedulerLogEntry",
    "WorkerLogEntry",
    "SessionLogEntry",
    # Utilities
    "now_iso",
    "get_session_id",
    "set_session_id",
    "configure_logging",
    # Config
    "LogConfig",
    "get_config",
    "set_config",
]

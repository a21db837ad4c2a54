"""
Logging Configuration for ChadGI.

Defines log paths, rotation settings and levels.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class LogConfig:
    """Configuration for the ChadGI logging system."""

    log_dir: Path = field(default_factory=lambda: Path.home() / ".chadgi" / "logs")

    max_file_size_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    # DEBUG, INFO, WARNING, ERROR
    scheduler_level: str = "INFO"
    worker_level: str = "INFO"
    session_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "LogConfig":
        """Load config from environment variables with defaults."""
        config = cls()

        if level := os.environ.get("CHADGI_LOG_LEVEL"):
            config.scheduler_level = level
            config.worker_level = level
            config.session_level = level

        if log_dir := os.environ.get("CHADGI_LOG_DIR"):
            config.log_dir = Path(log_dir)

        if max_size := os.environ.get("CHADGI_LOG_MAX_SIZE_MB"):
            try:
                config.max_file_size_bytes = int(max_size) * 1024 * 1024
            except ValueError:
                pass

        return config

    def ensure_log_dir(self) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)

    @property
    def scheduler_log_path(self) -> Path:
        """Path to the scheduling decision log."""
        return self.log_dir / "scheduler.jsonl"

    @property
    def worker_log_path(self) -> Path:
        """Path to the worker slot event log."""
        return self.log_dir / "worker.jsonl"

    @property
    def session_log_path(self) -> Path:
        """Path to the session lifecycle log."""
        return self.log_dir / "session.jsonl"


_config: LogConfig | None = None


def get_config() -> LogConfig:
    """Get the global log config, initializing from env if needed."""
    global _config
    if _config is None:
        _config = LogConfig.from_env()
        _config.ensure_log_dir()
    return _config


def set_config(config: LogConfig) -> None:
    """Set a custom log config (useful for testing)."""
    global _config
    _config = config
    _config.ensure_log_dir()

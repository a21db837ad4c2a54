"""
JSONL log handler shared by concurrent worker processes.

Every `chadgi worker` process appends to the same scheduler, worker and
session files. A record goes out as a single os.write on an O_APPEND
descriptor, so lines from different processes never interleave. Rotation
is decided from the file on disk under a FileMutex, and a process whose
file was rotated by a sibling reopens the new file before writing.
"""

import json
import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from chadgi.persistence.fileops import FileMutex


class JSONLRotatingHandler(RotatingFileHandler):
    """One JSON object per line; size-based rotation coordinated across processes."""

    def __init__(
        self,
        filename: str | Path,
        max_bytes: int = 10_000_000,
        backup_count: int = 5,
    ):
        filepath = Path(filename)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            str(filepath),
            mode="a",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
            delay=True,
        )
        self.rotate_mutex_path = filepath.with_name(filepath.name + ".rotate.lock")

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = (json.dumps(self._record_data(record), default=str) + "\n").encode("utf-8")
            if self.maxBytes > 0 and self._size_on_disk() + len(line) > self.maxBytes:
                self._rotate_shared(len(line))
            self._reopen_if_moved()
            os.write(self.stream.fileno(), line)
        except Exception:
            self.handleError(record)

    def _record_data(self, record: logging.LogRecord) -> Any:
        """Entry messages are already JSON; anything else gets an envelope."""
        msg = self.format(record)
        try:
            return json.loads(msg)
        except json.JSONDecodeError:
            return {
                "timestamp": datetime.fromtimestamp(record.created).isoformat(),
                "level": record.levelname,
                "message": msg,
                "logger": record.name,
            }

    def _size_on_disk(self) -> int:
        try:
            return os.stat(self.baseFilename).st_size
        except FileNotFoundError:
            return 0

    def _rotate_shared(self, incoming: int) -> None:
        with FileMutex(self.rotate_mutex_path, timeout=5.0):
            # A sibling may have rotated while we waited
            if self._size_on_disk() + incoming > self.maxBytes:
                self.doRollover()

    def _reopen_if_moved(self) -> None:
        if self.stream is not None:
            try:
                on_disk = os.stat(self.baseFilename).st_ino
            except FileNotFoundError:
                on_disk = None
            if on_disk == os.fstat(self.stream.fileno()).st_ino:
                return
            self.stream.close()
        self.stream = self._open()


class SimpleFormatter(logging.Formatter):
    """Pass the message through unchanged."""

    def format(self, record: logging.LogRecord) -> str:
        return record.getMessage()


def create_jsonl_logger(
    name: str,
    filepath: Path,
    level: str = "INFO",
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Create (or re-point) a logger that writes JSONL to filepath.

    Existing handlers are closed first, so reconfiguring the log directory
    does not leave files open.
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    handler = JSONLRotatingHandler(filepath, max_bytes=max_bytes, backup_count=backup_count)
    handler.setFormatter(SimpleFormatter())
    logger.addHandler(handler)
    logger.propagate = False

    return logger

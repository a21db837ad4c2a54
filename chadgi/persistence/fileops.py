"""
Crash-safe file helpers.

Writes go to a temporary file in the target directory and are moved into
place with os.replace, so readers only ever see the previous or the new
content. Exclusive creation uses O_CREAT | O_EXCL, which is atomic on
local filesystems.
"""

import json
import logging
import os
import tempfile
import time
import uuid
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, text: str) -> None:
    """
    Atomically replace the contents of a file.

    Args:
        path: Target file path
        text: Full new contents

    Raises:
        OSError: If the temporary file cannot be written or moved
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


def atomic_write_json(path: Path, data: Any) -> None:
    """Atomically write JSON data with 2-space indentation."""
    atomic_write_text(path, json.dumps(data, indent=2, default=str) + "\n")


def create_exclusive_json(path: Path, data: Any) -> bool:
    """
    Create a JSON file only if it does not already exist.

    Returns:
        True if this call created the file, False if it already existed
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False

    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(json.dumps(data, indent=2, default=str) + "\n")
        handle.flush()
        os.fsync(handle.fileno())
    return True


def read_json(path: Path) -> Any | None:
    """
    Read a JSON file.

    Returns:
        Parsed data, or None if the file is missing or not valid JSON
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring malformed JSON in {path}: {e}")
        return None


class FileMutex:
    """
    Short-lived cross-process mutex backed by an O_EXCL lock file.

    Used to serialise read-modify-write cycles on shared state files.
    A mutex file older than stale_after seconds is assumed to belong to a
    crashed process and is removed.
    """

    def __init__(
        self,
        path: Path,
        timeout: float = 10.0,
        poll_interval: float = 0.05,
        stale_after: float = 30.0,
    ):
        self.path = path
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.stale_after = stale_after
        self._held = False

    def acquire(self) -> None:
        """
        Block until the mutex is held.

        Raises:
            TimeoutError: If the mutex is not obtained within timeout seconds
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                os.write(fd, str(os.getpid()).encode())
                os.close(fd)
                self._held = True
                return
            except FileExistsError:
                self._break_if_stale()
                if time.monotonic() >= deadline:
                    raise TimeoutError(f"Could not acquire {self.path} within {self.timeout}s")
                time.sleep(self.poll_interval)

    def release(self) -> None:
        if not self._held:
            return
        self.path.unlink(missing_ok=True)
        self._held = False

    def _break_if_stale(self) -> None:
        """
        Remove an abandoned mutex file.

        The file is first renamed to a private name and only deleted if it is
        still the stale file that was inspected. If another waiter broke the
        mutex and re-created it in between, the fresh file is put back.
        """
        try:
            seen = self.path.stat()
        except FileNotFoundError:
            return
        age = time.time() - seen.st_mtime
        if age <= self.stale_after:
            return

        moved = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.path, moved)
        except FileNotFoundError:
            return

        taken = moved.stat()
        if (taken.st_ino, taken.st_mtime_ns) == (seen.st_ino, seen.st_mtime_ns):
            logger.warning(f"Removing abandoned mutex {self.path} ({age:.0f}s old)")
        else:
            try:
                os.link(moved, self.path)
            except FileExistsError:
                logger.warning(f"Mutex {self.path} changed hands while breaking a stale holder")
        moved.unlink(missing_ok=True)

    def __enter__(self) -> "FileMutex":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

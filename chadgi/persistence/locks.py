"""
Task locks - one file per claimed issue.

A lock lives at <repo>/.chadgi/locks/issue-<N>.lock and is created with
O_CREAT | O_EXCL, so at most one process can hold it. The owner refreshes
last_heartbeat while it works; a lock whose heartbeat is older than the
stale threshold is reported as stale but is never taken over
automatically. Only clear_stale() removes someone else's lock.

Every compare-then-modify step (release, heartbeat, stale removal) runs
under a short FileMutex on the locks directory.
"""

import json
import logging
import os
import socket
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from chadgi.exceptions import LockError
from chadgi.persistence.fileops import FileMutex, atomic_write_json, create_exclusive_json

logger = logging.getLogger(__name__)

LOCKS_DIRECTORY = "locks"
DEFAULT_LOCK_TIMEOUT_MINUTES = 120
HEARTBEAT_INTERVAL_SECONDS = 30.0


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def _parse_iso(value: str) -> float:
    """Parse an ISO 8601 timestamp (with or without a trailing Z) to epoch seconds."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def generate_session_id() -> str:
    """Session id unique per process: host, pid and a random suffix."""
    return f"{socket.gethostname()}-{os.getpid()}-{int(time.time()):x}-{uuid.uuid4().hex[:6]}"


def is_process_running(pid: int) -> bool:
    """Check whether a local process exists (signal 0 check)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


@dataclass
class TaskLock:
    """Exclusivity record for one issue."""

    issue_number: int
    session_id: str
    pid: int
    hostname: str
    locked_at: str
    last_heartbeat: str
    lock_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    worker_id: int | None = None
    repo_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_number": self.issue_number,
            "session_id": self.session_id,
            "pid": self.pid,
            "hostname": self.hostname,
            "locked_at": self.locked_at,
            "last_heartbeat": self.last_heartbeat,
            "lock_id": self.lock_id,
            "worker_id": self.worker_id,
            "repo_name": self.repo_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskLock":
        """
        Build a TaskLock from file contents.

        Raises:
            KeyError, TypeError, ValueError: If required fields are missing or malformed
        """
        worker_id = data.get("worker_id")
        return cls(
            issue_number=int(data["issue_number"]),
            session_id=str(data["session_id"]),
            pid=int(data["pid"]),
            hostname=str(data["hostname"]),
            locked_at=str(data["locked_at"]),
            last_heartbeat=str(data.get("last_heartbeat") or data["locked_at"]),
            lock_id=str(data.get("lock_id") or ""),
            worker_id=int(worker_id) if worker_id is not None else None,
            repo_name=data.get("repo_name"),
        )

    @property
    def heartbeat_ts(self) -> float:
        return _parse_iso(self.last_heartbeat)

    @property
    def locked_ts(self) -> float:
        return _parse_iso(self.locked_at)


@dataclass
class LockInfo:
    """A lock plus derived status for listings."""

    lock: TaskLock
    path: Path
    heartbeat_age_seconds: float
    locked_seconds: float
    is_stale: bool
    process_alive: bool | None  # None when the owner is on another host
    corrupt: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.lock.to_dict(),
            "heartbeat_age_seconds": int(self.heartbeat_age_seconds),
            "locked_seconds": int(self.locked_seconds),
            "is_stale": self.is_stale,
            "process_alive": self.process_alive,
            "corrupt": self.corrupt,
        }


class TaskLockStore:
    """
    Lock files for the issues of one repository.

    Args:
        state_dir: The repository's .chadgi directory
        stale_threshold_seconds: Heartbeat age after which a lock is stale
        clock: Time source in epoch seconds
    """

    def __init__(
        self,
        state_dir: Path,
        stale_threshold_seconds: float = DEFAULT_LOCK_TIMEOUT_MINUTES * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.state_dir = Path(state_dir)
        self.locks_dir = self.state_dir / LOCKS_DIRECTORY
        self.stale_threshold_seconds = stale_threshold_seconds
        self._clock = clock

    def path_for(self, issue_number: int) -> Path:
        return self.locks_dir / f"issue-{issue_number}.lock"

    def _mutex(self) -> FileMutex:
        return FileMutex(self.locks_dir / ".locks.mutex")

    def _load(self, path: Path) -> tuple[TaskLock, bool] | None:
        """
        Read a lock file.

        A file that cannot be parsed still counts as held; its mtime stands
        in for the heartbeat so it eventually becomes stale.

        Returns:
            (lock, corrupt) or None if the file does not exist
        """
        try:
            text = path.read_text(encoding="utf-8")
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            raise LockError(f"Cannot read lock file {path}", self._issue_from_name(path), {"error": str(e)})

        try:
            return TaskLock.from_dict(json.loads(text)), False
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unreadable lock file {path}: {e}")
            stamp = _iso(mtime)
            return (
                TaskLock(
                    issue_number=self._issue_from_name(path),
                    session_id="unknown",
                    pid=0,
                    hostname="",
                    locked_at=stamp,
                    last_heartbeat=stamp,
                    lock_id="",
                ),
                True,
            )

    @staticmethod
    def _issue_from_name(path: Path) -> int:
        try:
            return int(path.stem.removeprefix("issue-"))
        except ValueError:
            return -1

    def read(self, issue_number: int) -> TaskLock | None:
        """Return the current lock for an issue, or None if unlocked."""
        loaded = self._load(self.path_for(issue_number))
        return loaded[0] if loaded else None

    def is_locked(self, issue_number: int) -> bool:
        """True if any lock file exists for the issue, stale or not."""
        return self.path_for(issue_number).exists()

    def is_stale(self, lock: TaskLock, now: float | None = None) -> bool:
        """A lock is stale when its heartbeat is older than the threshold."""
        now = self._clock() if now is None else now
        try:
            age = now - lock.heartbeat_ts
        except ValueError:
            return True
        return age > self.stale_threshold_seconds

    def try_acquire(
        self,
        issue_number: int,
        session_id: str,
        worker_id: int | None = None,
        repo_name: str | None = None,
    ) -> TaskLock | None:
        """
        Create the lock for an issue if nobody holds it.

        An existing lock, even a stale one, means contention: the caller
        gets None and should try other work.

        Returns:
            The new TaskLock, or None if the issue is already locked
        """
        stamp = _iso(self._clock())
        lock = TaskLock(
            issue_number=issue_number,
            session_id=session_id,
            pid=os.getpid(),
            hostname=socket.gethostname(),
            locked_at=stamp,
            last_heartbeat=stamp,
            worker_id=worker_id,
            repo_name=repo_name,
        )
        try:
            created = create_exclusive_json(self.path_for(issue_number), lock.to_dict())
        except OSError as e:
            raise LockError(f"Cannot create lock for issue #{issue_number}", issue_number, {"error": str(e)})

        if not created:
            logger.debug(f"Issue #{issue_number} already locked")
            return None
        return lock

    def release(self, lock: TaskLock) -> bool:
        """
        Delete the lock if it is still the one we created.

        Safe to call repeatedly; a newer lock for the same issue is left alone.

        Returns:
            True if a file was deleted
        """
        path = self.path_for(lock.issue_number)
        with self._mutex():
            current = self._load(path)
            if current is None:
                return False
            if current[0].lock_id != lock.lock_id:
                logger.info(
                    f"Lock for issue #{lock.issue_number} now belongs to "
                    f"session {current[0].session_id}; leaving it"
                )
                return False
            path.unlink(missing_ok=True)
            return True

    def heartbeat(self, lock: TaskLock) -> bool:
        """
        Refresh last_heartbeat on a lock we hold.

        Returns:
            False if the lock is gone or was replaced
        """
        path = self.path_for(lock.issue_number)
        with self._mutex():
            current = self._load(path)
            if current is None or current[0].lock_id != lock.lock_id:
                return False
            lock.last_heartbeat = _iso(self._clock())
            atomic_write_json(path, lock.to_dict())
            return True

    def list_locks(self) -> list[LockInfo]:
        """All lock files with age, staleness and owner liveness, by issue number."""
        if not self.locks_dir.is_dir():
            return []

        now = self._clock()
        host = socket.gethostname()
        infos: list[LockInfo] = []
        for path in sorted(self.locks_dir.glob("issue-*.lock")):
            loaded = self._load(path)
            if loaded is None:
                continue
            lock, corrupt = loaded
            try:
                heartbeat_age = now - lock.heartbeat_ts
                locked_seconds = now - lock.locked_ts
            except ValueError:
                heartbeat_age = locked_seconds = float("inf")
            alive = is_process_running(lock.pid) if lock.hostname == host else None
            infos.append(
                LockInfo(
                    lock=lock,
                    path=path,
                    heartbeat_age_seconds=heartbeat_age,
                    locked_seconds=locked_seconds,
                    is_stale=heartbeat_age > self.stale_threshold_seconds,
                    process_alive=alive,
                    corrupt=corrupt,
                )
            )
        infos.sort(key=lambda info: info.lock.issue_number)
        return infos

    def clear_stale(self, issue_number: int | None = None) -> list[TaskLock]:
        """
        Delete every lock whose heartbeat is older than the threshold
        (only the lock of issue_number, if given).

        Each candidate is re-read and re-checked under the mutex right before
        deletion, so a lock refreshed in the meantime survives.

        Returns:
            The locks that were removed
        """
        removed: list[TaskLock] = []
        for info in self.list_locks():
            if not info.is_stale:
                continue
            if issue_number is not None and info.lock.issue_number != issue_number:
                continue
            with self._mutex():
                current = self._load(info.path)
                if current is None:
                    continue
                lock = current[0]
                if lock.lock_id != info.lock.lock_id or not self.is_stale(lock):
                    logger.info(f"Lock for issue #{lock.issue_number} refreshed; not removing")
                    continue
                info.path.unlink(missing_ok=True)
                removed.append(lock)
                logger.warning(
                    f"Removed stale lock for issue #{lock.issue_number} "
                    f"(session {lock.session_id}, {info.heartbeat_age_seconds:.0f}s without heartbeat)"
                )
        return removed

    def release_session_locks(self, session_id: str, lock_ids: set[str] | None = None) -> int:
        """
        Release locks owned by a session.

        Args:
            session_id: Session whose locks to drop
            lock_ids: If given, only these acquisitions are released

        Returns:
            Number of locks released
        """
        released = 0
        for info in self.list_locks():
            lock = info.lock
            if lock.session_id != session_id:
                continue
            if lock_ids is not None and lock.lock_id not in lock_ids:
                continue
            if self.release(lock):
                released += 1
        return released


class LockHeartbeat(threading.Thread):
    """
    Background thread that refreshes a lock while its task runs.

    Stops on its own if the lock disappears (for example after an operator
    cleared it as stale).
    """

    def __init__(
        self,
        store: TaskLockStore,
        lock: TaskLock,
        interval: float = HEARTBEAT_INTERVAL_SECONDS,
        on_beat: Callable[[TaskLock], None] | None = None,
    ):
        super().__init__(daemon=True, name=f"heartbeat-issue-{lock.issue_number}")
        self.store = store
        self.lock = lock
        self.interval = interval
        self.on_beat = on_beat
        self.lost = False
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                alive = self.store.heartbeat(self.lock)
            except (OSError, TimeoutError, LockError) as e:
                logger.warning(f"Heartbeat for issue #{self.lock.issue_number} failed: {e}")
                continue
            if not alive:
                self.lost = True
                logger.error(f"Lock for issue #{self.lock.issue_number} was removed while the task was running")
                return
            if self.on_beat:
                self.on_beat(self.lock)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)

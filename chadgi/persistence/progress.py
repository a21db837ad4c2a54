"""
ChadGI Progress Store - chadgi-progress.json access layer

The progress file is the one record monitoring tools read. Every write
replaces the whole file atomically, so a reader (or a process restarting
after a crash) sees either the previous snapshot or the new one.

Concurrent writers:
- Each worker process runs read-modify-write through update()
- update() holds an O_EXCL mutex file (progress.lock) for the cycle
- Readers never take the mutex
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, TypeVar

from chadgi.exceptions import StateError
from chadgi.persistence.fileops import FileMutex, atomic_write_json, read_json
from chadgi.persistence.locks import LockInfo, TaskLockStore
from chadgi.state import CurrentTask, ProgressSnapshot

logger = logging.getLogger(__name__)

PROGRESS_FILENAME = "chadgi-progress.json"
PROGRESS_MUTEX_FILENAME = "progress.lock"

T = TypeVar("T")


class ProgressStateStore:
    """
    Durable session and worker state for one state directory.

    Usage:
        store = ProgressStateStore(workspace_root / ".chadgi")

        snapshot = store.load()            # None before the first session

        def mark(snapshot):
            snapshot.session.max_workers = 3
        store.update(mark)                 # locked read-modify-write
    """

    def __init__(
        self,
        state_dir: Path | str,
        lock_stores: Iterable[TaskLockStore] | None = None,
        mutex_timeout: float = 10.0,
    ):
        """
        Initialize the store.

        Args:
            state_dir: Directory holding chadgi-progress.json
            lock_stores: Task lock stores to report through task_locks().
                Defaults to the locks under state_dir itself.
            mutex_timeout: Seconds to wait for the progress mutex
        """
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / PROGRESS_FILENAME
        self.mutex_path = self.state_dir / PROGRESS_MUTEX_FILENAME
        self.mutex_timeout = mutex_timeout
        self._lock_stores = list(lock_stores) if lock_stores is not None else [TaskLockStore(self.state_dir)]

    def load(self) -> ProgressSnapshot | None:
        """Read the snapshot, or None if no session has written one yet."""
        data = read_json(self.path)
        if data is None:
            return None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring progress file with unexpected layout: {self.path}")
            return None
        try:
            return ProgressSnapshot.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StateError(f"Corrupt progress file {self.path}", {"error": str(e)})

    def save(self, snapshot: ProgressSnapshot) -> None:
        """Refresh derived fields and atomically replace the progress file."""
        snapshot.refresh()
        atomic_write_json(self.path, snapshot.to_dict())

    def update(self, mutator: Callable[[ProgressSnapshot], T]) -> T:
        """
        Apply mutator to the current snapshot and save it, under the mutex.

        A missing snapshot starts from an empty one. If mutator raises,
        nothing is written.

        Returns:
            Whatever mutator returns
        """
        try:
            with FileMutex(self.mutex_path, timeout=self.mutex_timeout):
                snapshot = self.load() or ProgressSnapshot()
                result = mutator(snapshot)
                self.save(snapshot)
                return result
        except TimeoutError as e:
            raise StateError(f"Progress file is busy: {self.path}", {"error": str(e)})

    def current_task(self) -> CurrentTask | None:
        snapshot = self.load()
        return snapshot.current_task if snapshot else None

    def pending_approval(self) -> list[dict[str, Any]]:
        """Approval requests (approval-*.lock) still waiting for a decision."""
        pending = []
        for path in sorted(self.state_dir.glob("approval-*.lock")):
            data = read_json(path)
            if isinstance(data, dict) and data.get("status") == "pending":
                pending.append({**data, "file": path.name})
        return pending

    def task_locks(self) -> list[LockInfo]:
        locks: list[LockInfo] = []
        for store in self._lock_stores:
            locks.extend(store.list_locks())
        return locks

"""
ChadGI - Worker and Session State

Worker slots follow a small state machine so a slot can never start a
second task before its previous outcome was recorded. The whole session
is persisted as a ProgressSnapshot (chadgi-progress.json).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class WorkerStatus(Enum):
    """
    Possible states for a worker slot.

    State transitions:
    IDLE -> IN_PROGRESS (task claimed)
    IN_PROGRESS -> COMPLETED | FAILED (outcome recorded)
    COMPLETED | FAILED -> IDLE (lock released, slot reusable)
    """

    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# Valid state transitions
VALID_TRANSITIONS: dict[WorkerStatus, set[WorkerStatus]] = {
    WorkerStatus.IDLE: {WorkerStatus.IN_PROGRESS},
    WorkerStatus.IN_PROGRESS: {WorkerStatus.COMPLETED, WorkerStatus.FAILED},
    WorkerStatus.COMPLETED: {WorkerStatus.IDLE},
    WorkerStatus.FAILED: {WorkerStatus.IDLE},
}


@dataclass
class CurrentTask:
    """The issue a slot (or a single-task session) is working on."""

    id: str  # issue number as text, matching the progress file format
    title: str = ""
    branch: str = ""
    url: str = ""
    started_at: str = field(default_factory=utc_now)

    @property
    def issue_number(self) -> int:
        return int(self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "branch": self.branch,
            "url": self.url,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CurrentTask | None":
        if not data or data.get("id") in (None, ""):
            return None
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            branch=data.get("branch", ""),
            url=data.get("url", ""),
            started_at=data.get("started_at") or utc_now(),
        )


@dataclass
class WorkerSlot:
    """One concurrent execution lane."""

    worker_id: int
    status: WorkerStatus = WorkerStatus.IDLE
    repo_name: str | None = None
    repo_path: str | None = None
    task: CurrentTask | None = None
    lock_id: str | None = None
    cost_usd: float = 0.0
    error: str | None = None
    started_at: str | None = None

    # Kept after the slot returns to idle so monitoring can show the last result
    last_status: str | None = None
    last_task: CurrentTask | None = None

    def can_transition_to(self, new_status: WorkerStatus) -> bool:
        """Check if transition to new_status is valid from current status."""
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: WorkerStatus) -> bool:
        """
        Attempt to transition to a new status.

        Returns:
            True if transition was valid and performed, False otherwise
        """
        if self.can_transition_to(new_status):
            self.status = new_status
            return True
        return False

    def require_transition(self, new_status: WorkerStatus) -> None:
        """
        Transition to a new status, raising an exception if invalid.

        Raises:
            StateTransitionError: If the transition is not valid
        """
        from chadgi.exceptions import StateTransitionError

        if not self.transition_to(new_status):
            valid_targets = VALID_TRANSITIONS.get(self.status, set())
            valid_names = ", ".join(sorted(s.value for s in valid_targets)) or "none"
            raise StateTransitionError(
                f"Invalid worker {self.worker_id} transition: {self.status.value} -> {new_status.value}. "
                f"Valid transitions from {self.status.value}: {valid_names}",
                from_state=self.status.value,
                to_state=new_status.value,
            )

    def start(self, repo_name: str, repo_path: str, task: CurrentTask, lock_id: str) -> None:
        """Mark the slot busy with a claimed task."""
        self.require_transition(WorkerStatus.IN_PROGRESS)
        self.repo_name = repo_name
        self.repo_path = repo_path
        self.task = task
        self.lock_id = lock_id
        self.cost_usd = 0.0
        self.error = None
        self.started_at = utc_now()

    def finish(self, success: bool, cost_usd: float = 0.0, error: str | None = None) -> None:
        """Record the outcome of the current task."""
        self.require_transition(WorkerStatus.COMPLETED if success else WorkerStatus.FAILED)
        self.cost_usd = cost_usd
        self.error = None if success else (error or "Task failed")

    def reset(self) -> None:
        """Return a finished slot to idle, remembering what it last did."""
        self.require_transition(WorkerStatus.IDLE)
        self.last_status = (
            WorkerStatus.COMPLETED.value if self.error is None else WorkerStatus.FAILED.value
        )
        self.last_task = self.task
        self.task = None
        self.lock_id = None
        self.started_at = None

    @property
    def is_active(self) -> bool:
        return self.status == WorkerStatus.IN_PROGRESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "status": self.status.value,
            "repo_name": self.repo_name,
            "repo_path": self.repo_path,
            "task": self.task.to_dict() if self.task else None,
            "lock_id": self.lock_id,
            "cost_usd": self.cost_usd,
            "error": self.error,
            "started_at": self.started_at,
            "last_status": self.last_status,
            "last_task": self.last_task.to_dict() if self.last_task else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkerSlot":
        try:
            status = WorkerStatus(data.get("status", "idle"))
        except ValueError:
            status = WorkerStatus.IDLE
        return cls(
            worker_id=int(data["worker_id"]),
            status=status,
            repo_name=data.get("repo_name"),
            repo_path=data.get("repo_path"),
            task=CurrentTask.from_dict(data.get("task")),
            lock_id=data.get("lock_id"),
            cost_usd=float(data.get("cost_usd") or 0.0),
            error=data.get("error"),
            started_at=data.get("started_at"),
            last_status=data.get("last_status"),
            last_task=CurrentTask.from_dict(data.get("last_task")),
        )


@dataclass
class SessionProgress:
    """Counters for one `chadgi start` session."""

    session_id: str = ""
    started_at: str = field(default_factory=utc_now)
    tasks_completed: int = 0
    tasks_failed: int = 0
    total_cost_usd: float = 0.0
    active_workers: int = 0
    max_workers: int = 1
    aggregate_cost_usd: float = 0.0

    def record(self, success: bool, cost_usd: float) -> None:
        if success:
            self.tasks_completed += 1
        else:
            self.tasks_failed += 1
        self.total_cost_usd = round(self.total_cost_usd + cost_usd, 6)
        self.aggregate_cost_usd = round(self.aggregate_cost_usd + cost_usd, 6)


@dataclass
class SchedulerState:
    """Scheduler position carried between scheduling rounds."""

    cursor: int = 0  # round-robin: index of the next repo to try
    current_repo: str | None = None  # sequential: repo being drained

    def to_dict(self) -> dict[str, Any]:
        return {"cursor": self.cursor, "current_repo": self.current_repo}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SchedulerState":
        data = data or {}
        return cls(cursor=int(data.get("cursor") or 0), current_repo=data.get("current_repo"))


@dataclass
class ProgressSnapshot:
    """
    Everything persisted in chadgi-progress.json.

    The file keeps the single-task layout (status, current_task, session)
    and adds parallel_workers / parallel_session / scheduler for
    multi-worker sessions.
    """

    status: str = "idle"
    current_task: CurrentTask | None = None
    session: SessionProgress = field(default_factory=SessionProgress)
    parallel_mode: bool = False
    workers: list[WorkerSlot] = field(default_factory=list)
    scheduler: SchedulerState = field(default_factory=SchedulerState)
    last_updated: str = field(default_factory=utc_now)

    def get_slot(self, worker_id: int) -> WorkerSlot:
        """Return the slot for worker_id, creating an idle one if needed."""
        for slot in self.workers:
            if slot.worker_id == worker_id:
                return slot
        slot = WorkerSlot(worker_id=worker_id)
        self.workers.append(slot)
        self.workers.sort(key=lambda s: s.worker_id)
        return slot

    def find_slot(self, worker_id: int) -> WorkerSlot | None:
        for slot in self.workers:
            if slot.worker_id == worker_id:
                return slot
        return None

    def active_count(self, exclude_worker: int | None = None) -> int:
        """Number of in_progress slots, optionally ignoring one worker."""
        return sum(1 for s in self.workers if s.is_active and s.worker_id != exclude_worker)

    def refresh(self) -> None:
        """Recompute derived fields before saving."""
        active = [s for s in self.workers if s.is_active]
        self.session.active_workers = len(active)
        self.status = "in_progress" if active else "idle"
        self.current_task = active[0].task if active else None
        self.last_updated = utc_now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "current_task": self.current_task.to_dict() if self.current_task else None,
            "session": {
                "session_id": self.session.session_id,
                "started_at": self.session.started_at,
                "tasks_completed": self.session.tasks_completed,
                "tasks_failed": self.session.tasks_failed,
                "total_cost_usd": self.session.total_cost_usd,
            },
            "last_updated": self.last_updated,
            "parallel_mode": self.parallel_mode,
            "parallel_workers": [slot.to_dict() for slot in self.workers],
            "parallel_session": {
                "active_workers": self.session.active_workers,
                "max_workers": self.session.max_workers,
                "aggregate_cost_usd": self.session.aggregate_cost_usd,
            },
            "scheduler": self.scheduler.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProgressSnapshot":
        session_data = data.get("session") or {}
        parallel = data.get("parallel_session") or {}
        session = SessionProgress(
            session_id=session_data.get("session_id", ""),
            started_at=session_data.get("started_at") or utc_now(),
            tasks_completed=int(session_data.get("tasks_completed") or 0),
            tasks_failed=int(session_data.get("tasks_failed") or 0),
            total_cost_usd=float(session_data.get("total_cost_usd") or 0.0),
            active_workers=int(parallel.get("active_workers") or 0),
            max_workers=int(parallel.get("max_workers") or 1),
            aggregate_cost_usd=float(parallel.get("aggregate_cost_usd") or 0.0),
        )
        return cls(
            status=data.get("status", "idle"),
            current_task=CurrentTask.from_dict(data.get("current_task")),
            session=session,
            parallel_mode=bool(data.get("parallel_mode", False)),
            workers=[WorkerSlot.from_dict(w) for w in data.get("parallel_workers") or []],
            scheduler=SchedulerState.from_dict(data.get("scheduler")),
            last_updated=data.get("last_updated") or utc_now(),
        )

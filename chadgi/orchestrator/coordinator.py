"""
Worker Coordinator - owns one worker slot's lifecycle.

Each `chadgi worker` process runs one WorkerCoordinator. A round is:

    claim_next()   scheduler pick -> task lock -> slot in_progress (saved)
    executor       the agent works on the issue (heartbeat thread running)
    complete()     outcome saved -> lock released -> slot idle (saved)

Workers share nothing in memory. Mutual exclusion per issue comes from the
task lock files; the concurrency limit is re-checked under the progress
file mutex before a slot is marked in_progress.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from chadgi.config import RepoEntry, WorkspaceConfig
from chadgi.exceptions import StateError
from chadgi.executor import TaskExecutor, TaskOutcome
from chadgi.logging import (
    SessionLogEntry,
    WorkerLogEntry,
    get_session_id,
    now_iso,
    session_logger,
    worker_logger,
)
from chadgi.orchestrator.queue import Task
from chadgi.orchestrator.scheduler import RepoScheduler
from chadgi.persistence.control import ControlSignals
from chadgi.persistence.locks import (
    DEFAULT_LOCK_TIMEOUT_MINUTES,
    HEARTBEAT_INTERVAL_SECONDS,
    LockHeartbeat,
    TaskLock,
    TaskLockStore,
)
from chadgi.persistence.progress import ProgressStateStore
from chadgi.state import CurrentTask, ProgressSnapshot, SessionProgress, WorkerSlot, WorkerStatus

logger = logging.getLogger(__name__)

LockStoreFactory = Callable[[RepoEntry], TaskLockStore]


def default_lock_stores(stale_threshold_seconds: float = DEFAULT_LOCK_TIMEOUT_MINUTES * 60) -> LockStoreFactory:
    """Lock store per repository, under the repository's own .chadgi directory."""

    def factory(entry: RepoEntry) -> TaskLockStore:
        return TaskLockStore(entry.state_dir, stale_threshold_seconds=stale_threshold_seconds)

    return factory


@dataclass
class Claim:
    """A task this worker currently holds."""

    worker_id: int
    repo: RepoEntry
    task: Task
    lock: TaskLock
    lock_store: TaskLockStore
    branch: str
    heartbeat: LockHeartbeat | None = None
    started: float = 0.0


def _check_unfinished(slot: WorkerSlot, lock_store_for: LockStoreFactory) -> None:
    """
    Refuse to drop an in_progress slot whose task lock is still on disk.

    Raises:
        StateError: If the slot's lock is live, or stale but not yet cleared
    """
    if slot.task is None or not slot.repo_path:
        return
    store = lock_store_for(RepoEntry(slot.repo_name or slot.repo_path, slot.repo_path))
    lock = store.read(slot.task.issue_number)
    if lock is None or lock.lock_id != slot.lock_id:
        return

    details = {"worker_id": slot.worker_id, "repo": slot.repo_name, "issue_number": lock.issue_number}
    if store.is_stale(lock):
        raise StateError(
            f"Worker {slot.worker_id} left issue #{lock.issue_number} with a stale lock. "
            "Run `chadgi unlock --stale` before starting a new session",
            details,
        )
    raise StateError(
        f"Worker {slot.worker_id} is still working on issue #{lock.issue_number} "
        f"(session {lock.session_id}). Stop that session first",
        details,
    )


def begin_session(
    progress: ProgressStateStore,
    session_id: str,
    max_workers: int,
    lock_store_for: LockStoreFactory | None = None,
) -> ProgressSnapshot:
    """
    Reset the progress file for a new session with max_workers idle slots.

    The scheduler position is carried over from the previous session. A slot
    the previous session left in_progress blocks the start while its task
    lock exists; once the lock is gone the slot is recorded as failed.

    Raises:
        StateError: If a previous slot still holds its task lock
    """
    lock_store_for = lock_store_for or default_lock_stores()
    abandoned: list[WorkerSlot] = []

    def reset(snapshot: ProgressSnapshot) -> ProgressSnapshot:
        for slot in snapshot.workers:
            if slot.is_active:
                _check_unfinished(slot, lock_store_for)
                slot.finish(False, error="Previous session ended before the task finished")
                abandoned.append(slot)
            if slot.status != WorkerStatus.IDLE:
                slot.reset()

        previous = {slot.worker_id: slot for slot in snapshot.workers}
        workers = [previous.get(i) or WorkerSlot(worker_id=i) for i in range(1, max_workers + 1)]
        workers.extend(slot for slot in abandoned if slot.worker_id > max_workers)

        snapshot.session = SessionProgress(session_id=session_id, max_workers=max_workers)
        snapshot.parallel_mode = max_workers > 1
        snapshot.workers = workers
        snapshot.status = "idle"
        return snapshot

    snapshot = progress.update(reset)
    for slot in abandoned:
        issue = slot.last_task.issue_number if slot.last_task else None
        logger.warning(f"Worker {slot.worker_id} of the previous session never finished issue #{issue}")
        worker_logger.info(
            WorkerLogEntry(
                timestamp=now_iso(),
                session_id=session_id,
                worker_id=slot.worker_id,
                event_type="abandoned",
                repo=slot.repo_name,
                issue_number=issue,
                error=slot.error,
            ).to_json()
        )
    session_logger.info(
        SessionLogEntry(
            timestamp=now_iso(),
            session_id=session_id,
            event_type="start",
            max_workers=max_workers,
        ).to_json()
    )
    return snapshot


def clear_stale_locks(
    workspace: WorkspaceConfig,
    progress: ProgressStateStore,
    lock_store_for: LockStoreFactory,
    issue_number: int | None = None,
) -> list[TaskLock]:
    """
    Remove stale task locks in every repository of the workspace.

    Slots that still point at a removed lock are marked failed and returned
    to idle, so the progress file does not claim work nobody is doing.
    """
    removed: list[TaskLock] = []
    for entry in sorted(workspace.repos.values(), key=RepoEntry.sort_key):
        removed.extend(lock_store_for(entry).clear_stale(issue_number))

    if not removed:
        return removed

    removed_ids = {lock.lock_id for lock in removed if lock.lock_id}

    def release_slots(snapshot: ProgressSnapshot) -> None:
        for slot in snapshot.workers:
            if slot.lock_id is None or slot.lock_id not in removed_ids:
                continue
            if slot.status == WorkerStatus.IN_PROGRESS:
                slot.finish(False, error="Task lock went stale and was cleared")
                snapshot.session.record(False, 0.0)
            slot.reset()

    if progress.path.exists():
        progress.update(release_slots)

    for lock in removed:
        worker_logger.info(
            WorkerLogEntry(
                timestamp=now_iso(),
                session_id=get_session_id(),
                worker_id=lock.worker_id or 0,
                event_type="stale_cleared",
                repo=lock.repo_name,
                issue_number=lock.issue_number,
                lock_id=lock.lock_id,
            ).to_json()
        )
    return removed


class WorkerCoordinator:
    """
    Runs scheduling rounds for one worker slot.

    Args:
        worker_id: Slot number (1..max_parallel_tasks)
        session_id: Session the slot belongs to
        workspace: Repositories and concurrency limit
        progress: Shared progress file
        scheduler: Picks the next (repo, task)
        control: Pause/stop request files
        lock_store_for: Lock store per repository
        heartbeat_interval: Seconds between lock heartbeats
        branch_prefix: Default branch prefix when a repo has none
    """

    def __init__(
        self,
        worker_id: int,
        session_id: str,
        workspace: WorkspaceConfig,
        progress: ProgressStateStore,
        scheduler: RepoScheduler,
        control: ControlSignals,
        lock_store_for: LockStoreFactory | None = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        branch_prefix: str = "feature/issue-",
    ):
        self.worker_id = worker_id
        self.session_id = session_id
        self.workspace = workspace
        self.progress = progress
        self.scheduler = scheduler
        self.control = control
        self.lock_store_for = lock_store_for or default_lock_stores()
        self.heartbeat_interval = heartbeat_interval
        self.branch_prefix = branch_prefix
        self.current: Claim | None = None

    @property
    def max_parallel_tasks(self) -> int:
        return self.workspace.max_parallel_tasks

    def claim_next(self) -> Claim | None:
        """
        Try to move this slot from idle to in_progress.

        Returns None (slot stays idle) when paused or stopped, at capacity,
        when nothing is eligible, or when another worker won the lock.

        Raises:
            StateTransitionError: If this slot is not idle
        """
        hold = self.control.should_hold()
        if hold:
            logger.info(f"Worker {self.worker_id}: {hold}, not starting new work")
            return None

        snapshot = self.progress.load() or ProgressSnapshot()
        slot = snapshot.find_slot(self.worker_id)
        if slot is not None and not slot.can_transition_to(WorkerStatus.IN_PROGRESS):
            slot.require_transition(WorkerStatus.IN_PROGRESS)

        scheduler_state = snapshot.scheduler
        assignment = self.scheduler.next_assignment(
            scheduler_state, snapshot.active_count(exclude_worker=self.worker_id)
        )
        if assignment is None:
            return None

        repo, task = assignment.repo, assignment.task
        store = self.lock_store_for(repo)
        lock = store.try_acquire(task.number, self.session_id, worker_id=self.worker_id, repo_name=repo.name)
        if lock is None:
            self._log("lock_contention", repo=repo.name, issue_number=task.number)
            return None

        branch = f"{repo.branch_prefix or self.branch_prefix}{task.number}"

        def commit(current: ProgressSnapshot) -> bool:
            if current.active_count(exclude_worker=self.worker_id) >= self.max_parallel_tasks:
                return False
            current.get_slot(self.worker_id).start(
                repo.name,
                repo.path,
                CurrentTask(id=str(task.number), title=task.title, branch=branch, url=task.url),
                lock.lock_id,
            )
            current.scheduler = scheduler_state
            current.parallel_mode = self.max_parallel_tasks > 1
            current.session.max_workers = self.max_parallel_tasks
            return True

        try:
            committed = self.progress.update(commit)
        except Exception:
            store.release(lock)
            raise

        if not committed:
            store.release(lock)
            self._log("at_capacity", repo=repo.name, issue_number=task.number)
            return None

        claim = Claim(
            worker_id=self.worker_id,
            repo=repo,
            task=task,
            lock=lock,
            lock_store=store,
            branch=branch,
            started=time.monotonic(),
        )
        claim.heartbeat = LockHeartbeat(store, lock, interval=self.heartbeat_interval)
        claim.heartbeat.start()
        self.current = claim

        self._log("claim", repo=repo.name, issue_number=task.number, lock_id=lock.lock_id)
        return claim

    def complete(self, claim: Claim, outcome: TaskOutcome) -> None:
        """
        Record the outcome, release the lock and return the slot to idle.

        Each step is saved before the next one starts.
        """
        lock_id = claim.lock.lock_id

        def record(snapshot: ProgressSnapshot) -> None:
            slot = snapshot.get_slot(self.worker_id)
            if slot.lock_id == lock_id and slot.status == WorkerStatus.IN_PROGRESS:
                slot.finish(outcome.success, outcome.cost_usd, outcome.error)
                snapshot.session.record(outcome.success, outcome.cost_usd)
            else:
                # Already settled by clear_stale_locks or a new session
                logger.warning(f"Worker {self.worker_id}: slot was reset while issue #{claim.task.number} ran")

        self.progress.update(record)

        if claim.heartbeat is not None:
            claim.heartbeat.stop()
        claim.lock_store.release(claim.lock)

        def to_idle(snapshot: ProgressSnapshot) -> None:
            slot = snapshot.get_slot(self.worker_id)
            if slot.lock_id == lock_id and slot.status in (WorkerStatus.COMPLETED, WorkerStatus.FAILED):
                slot.reset()

        self.progress.update(to_idle)
        self.current = None

        self._log(
            "complete" if outcome.success else "fail",
            repo=claim.repo.name,
            issue_number=claim.task.number,
            lock_id=lock_id,
            cost_usd=outcome.cost_usd,
            duration_seconds=time.monotonic() - claim.started,
            error=outcome.error,
        )

    def run_once(self, executor: TaskExecutor) -> TaskOutcome | None:
        """
        Claim one task, execute it and record the outcome.

        Returns:
            The outcome, or None if nothing was claimed
        """
        claim = self.claim_next()
        if claim is None:
            return None

        try:
            outcome = executor.execute(claim.repo, claim.task, claim.branch)
        except Exception as e:
            logger.exception(f"Worker {self.worker_id}: executor crashed on issue #{claim.task.number}")
            outcome = TaskOutcome(success=False, error=f"{type(e).__name__}: {e}")

        self.complete(claim, outcome)
        return outcome

    def run(
        self,
        executor: TaskExecutor,
        once: bool = False,
        poll_interval: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> int:
        """
        Keep claiming tasks until stopped.

        Args:
            executor: Runs each claimed task
            once: Return after the first round, whether or not it ran a task
            poll_interval: Seconds to wait when there was no work
            sleep: Sleep function

        Returns:
            Number of tasks executed
        """
        executed = 0
        try:
            while not self.control.stop_requested():
                outcome = self.run_once(executor)
                if outcome is not None:
                    executed += 1
                if once:
                    break
                if outcome is None:
                    sleep(poll_interval)
        finally:
            self.shutdown()
        return executed

    def shutdown(self) -> None:
        """Stop the heartbeat and release any lock this process still holds."""
        claim = self.current
        if claim is None:
            return
        if claim.heartbeat is not None:
            claim.heartbeat.stop()
        lock_id = claim.lock.lock_id

        def interrupted(snapshot: ProgressSnapshot) -> None:
            slot = snapshot.get_slot(self.worker_id)
            if slot.lock_id != lock_id:
                return
            if slot.status == WorkerStatus.IN_PROGRESS:
                slot.finish(False, error="Worker stopped before the task finished")
                snapshot.session.record(False, 0.0)
            slot.reset()

        self.progress.update(interrupted)
        released = claim.lock_store.release_session_locks(self.session_id, {lock_id})
        if released:
            logger.info(f"Worker {self.worker_id}: released lock for issue #{claim.task.number} on shutdown")
        self.current = None

    def clear_stale_locks(self) -> list[TaskLock]:
        return clear_stale_locks(self.workspace, self.progress, self.lock_store_for)

    def _log(self, event_type: str, **fields) -> None:
        worker_logger.info(
            WorkerLogEntry(
                timestamp=now_iso(),
                session_id=self.session_id,
                worker_id=self.worker_id,
                event_type=event_type,
                **fields,
            ).to_json()
        )

"""Tests for worker coordination."""

from unittest.mock import MagicMock

import pytest

from chadgi.config import RepoEntry, SelectionStrategy, WorkspaceConfig
from chadgi.exceptions import StateError, StateTransitionError
from chadgi.executor import TaskOutcome
from chadgi.integrations.board import BoardResult
from chadgi.orchestrator.coordinator import WorkerCoordinator, begin_session, clear_stale_locks
from chadgi.orchestrator.queue import Task
from chadgi.orchestrator.scheduler import Assignment, RepoScheduler
from chadgi.persistence.control import ControlSignals
from chadgi.persistence.locks import TaskLockStore
from chadgi.persistence.progress import ProgressStateStore
from chadgi.state import CurrentTask, ProgressSnapshot, SchedulerState, WorkerStatus


class Clock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class Harness:
    """A workspace with in-memory queues and real lock/progress files."""

    def __init__(self, tmp_path, queues: dict[str, list[int]], max_parallel: int = 1,
                 strategy: SelectionStrategy = SelectionStrategy.ROUND_ROBIN):
        self.workspace = WorkspaceConfig(
            strategy=strategy,
            max_parallel_tasks=max_parallel,
            repos={
                name: RepoEntry(name, str(tmp_path / name), priority=i + 1)
                for i, name in enumerate(queues)
            },
        )
        self.queues = queues
        self.done: set[tuple[str, int]] = set()
        self.clock = Clock()
        self.state_dir = tmp_path / "ws" / ".chadgi"
        self.progress = ProgressStateStore(self.state_dir)
        self.control = ControlSignals(self.state_dir)
        self.scheduler = RepoScheduler(
            self.workspace,
            self.queue_source,
            lambda entry, number: self.lock_store_for(entry).is_locked(number),
            validator=lambda path: None,
        )

    def lock_store_for(self, entry: RepoEntry) -> TaskLockStore:
        return TaskLockStore(entry.state_dir, stale_threshold_seconds=60, clock=self.clock)

    def queue_source(self, entry: RepoEntry) -> BoardResult[list[Task]]:
        return BoardResult.success(
            [Task(n, f"Issue {n}") for n in self.queues[entry.name] if (entry.name, n) not in self.done]
        )

    def coordinator(self, worker_id: int = 1, scheduler=None) -> WorkerCoordinator:
        return WorkerCoordinator(
            worker_id=worker_id,
            session_id="session-1",
            workspace=self.workspace,
            progress=self.progress,
            scheduler=scheduler or self.scheduler,
            control=self.control,
            lock_store_for=self.lock_store_for,
            heartbeat_interval=3600,
        )

    def executor(self, success: bool = True, cost: float = 1.0) -> MagicMock:
        executor = MagicMock()

        def execute(repo, task, branch):
            self.done.add((repo.name, task.number))
            return TaskOutcome(success=success, cost_usd=cost, error=None if success else "tests failed")

        executor.execute.side_effect = execute
        return executor

    def slot(self, worker_id: int = 1):
        return self.progress.load().find_slot(worker_id)


class TestClaimAndComplete:
    """Tests for one claim/execute/complete round."""

    def test_successful_round(self, tmp_path):
        harness = Harness(tmp_path, {"A": [1]})
        begin_session(harness.progress, "session-1", 1)
        executor = harness.executor(cost=1.5)

        outcome = harness.coordinator().run_once(executor)

        assert outcome.success
        repo, task, branch = executor.execute.call_args[0]
        assert repo.name == "A"
        assert task.number == 1
        assert branch == "feature/issue-1"

        snapshot = harness.progress.load()
        slot = snapshot.find_slot(1)
        assert slot.status == WorkerStatus.IDLE
        assert slot.last_status == "completed"
        assert slot.last_task.id == "1"
        assert snapshot.session.tasks_completed == 1
        assert snapshot.session.total_cost_usd == 1.5
        assert snapshot.status == "idle"
        assert not harness.lock_store_for(harness.workspace.repos["A"]).is_locked(1)

    def test_claim_marks_slot_in_progress(self, tmp_path):
        harness = Harness(tmp_path, {"A": [4]})
        coordinator = harness.coordinator()
        claim = coordinator.claim_next()
        try:
            slot = harness.slot()
            assert slot.status == WorkerStatus.IN_PROGRESS
            assert slot.lock_id == claim.lock.lock_id
            assert slot.task.branch == "feature/issue-4"
            assert harness.progress.load().status == "in_progress"
            assert claim.lock_store.read(4).worker_id == 1
        finally:
            coordinator.complete(claim, TaskOutcome(success=True))

    def test_repo_branch_prefix(self, tmp_path):
        harness = Harness(tmp_path, {"A": [4]})
        harness.workspace.repos["A"].branch_prefix = "fix/"
        coordinator = harness.coordinator()
        claim = coordinator.claim_next()
        assert claim.branch == "fix/4"
        coordinator.complete(claim, TaskOutcome(success=True))

    def test_failed_outcome(self, tmp_path):
        harness = Harness(tmp_path, {"A": [1]})
        harness.coordinator().run_once(harness.executor(success=False, cost=0.25))
        snapshot = harness.progress.load()
        assert snapshot.session.tasks_failed == 1
        assert snapshot.session.total_cost_usd == 0.25
        assert snapshot.find_slot(1).last_status == "failed"
        assert snapshot.find_slot(1).error == "tests failed"

    def test_executor_exception_becomes_failure(self, tmp_path):
        harness = Harness(tmp_path, {"A": [1]})
        executor = MagicMock()
        executor.execute.side_effect = RuntimeError("agent crashed")

        outcome = harness.coordinator().run_once(executor)

        assert outcome.success is False
        assert outcome.error == "RuntimeError: agent crashed"
        assert harness.progress.load().session.tasks_failed == 1
        assert not harness.lock_store_for(harness.workspace.repos["A"]).is_locked(1)

    def test_no_work(self, tmp_path):
        harness = Harness(tmp_path, {"A": []})
        executor = harness.executor()
        assert harness.coordinator().run_once(executor) is None
        executor.execute.assert_not_called()

    def test_busy_slot_cannot_claim(self, tmp_path):
        harness = Harness(tmp_path, {"A": [1]})
        snapshot = ProgressSnapshot()
        snapshot.get_slot(1).start("A", "/srv/A", CurrentTask(id="9"), "other")
        harness.progress.save(snapshot)
        with pytest.raises(StateTransitionError):
            harness.coordinator().claim_next()


class TestConcurrency:
    """Tests for the max_parallel_tasks bound and lock exclusivity."""

    def test_bound_with_more_tasks_than_slots(self, tmp_path):
        harness = Harness(tmp_path, {"A": [1, 2, 3], "B": [10, 11]}, max_parallel=2)
        workers = [harness.coordinator(i) for i in (1, 2, 3)]

        first = workers[0].claim_next()
        second = workers[1].claim_next()
        assert workers[2].claim_next() is None
        assert harness.progress.load().active_count() == 2
        assert {(first.repo.name, first.task.number), (second.repo.name, second.task.number)} == {
            ("A", 1),
            ("B", 10),
        }

        harness.done.add(("A", 1))
        workers[0].complete(first, TaskOutcome(success=True))
        third = workers[2].claim_next()
        assert (third.repo.name, third.task.number) == ("A", 2)

        workers[1].complete(second, TaskOutcome(success=True))
        workers[2].complete(third, TaskOutcome(success=True))
        assert harness.progress.load().session.tasks_completed == 3

    def test_capacity_rechecked_when_committing(self, tmp_path):
        """A stale scheduling view cannot push the slot count over the limit."""
        harness = Harness(tmp_path, {"A": [1]}, max_parallel=2)
        snapshot = ProgressSnapshot()
        snapshot.get_slot(2).start("A", "/srv/A", CurrentTask(id="7"), "x")
        snapshot.get_slot(3).start("A", "/srv/A", CurrentTask(id="8"), "y")
        harness.progress.save(snapshot)

        scheduler = MagicMock()
        entry = harness.workspace.repos["A"]
        scheduler.next_assignment.return_value = Assignment(entry, Task(1, "Issue 1"))

        assert harness.coordinator(1, scheduler=scheduler).claim_next() is None
        assert not harness.lock_store_for(entry).is_locked(1)
        assert harness.progress.load().active_count() == 2

    def test_lost_lock_race(self, tmp_path):
        harness = Harness(tmp_path, {"A": [1]})
        entry = harness.workspace.repos["A"]
        scheduler = MagicMock()
        scheduler.next_assignment.return_value = Assignment(entry, Task(1, "Issue 1"))
        harness.lock_store_for(entry).try_acquire(1, "other-session")

        assert harness.coordinator(scheduler=scheduler).claim_next() is None
        assert harness.progress.load() is None


class TestControl:
    """Tests for pause, stop and the run loop."""

    def test_pause_blocks_new_claims(self, tmp_path):
        harness = Harness(tmp_path, {"A": [1]})
        harness.control.pause(reason="maintenance")
        scheduler = MagicMock()
        assert harness.coordinator(scheduler=scheduler).claim_next() is None
        scheduler.next_assignment.assert_not_called()

    def test_stop_before_start(self, tmp_path):
        harness = Harness(tmp_path, {"A": [1]})
        harness.control.request_stop()
        executor = harness.executor()
        assert harness.coordinator().run(executor) == 0
        executor.execute.assert_not_called()

    def test_run_once(self, tmp_path):
        harness = Harness(tmp_path, {"A": [1, 2]})
        assert harness.coordinator().run(harness.executor(), once=True) == 1

    def test_run_until_stopped(self, tmp_path):
        harness = Harness(tmp_path, {"A": [1], "B": [5]})
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            harness.control.request_stop()

        executed = harness.coordinator().run(harness.executor(), poll_interval=7, sleep=sleep)
        assert executed == 2
        assert sleeps == [7]

    def test_shutdown_releases_held_lock(self, tmp_path):
        harness = Harness(tmp_path, {"A": [3]})
        coordinator = harness.coordinator()
        claim = coordinator.claim_next()

        coordinator.shutdown()

        assert not claim.lock_store.is_locked(3)
        assert not claim.heartbeat.is_alive()
        slot = harness.slot()
        assert slot.status == WorkerStatus.IDLE
        assert slot.last_status == "failed"
        assert harness.progress.load().session.tasks_failed == 1
        assert coordinator.current is None


class TestSessionHelpers:
    """Tests for begin_session and clear_stale_locks."""

    def test_begin_session_keeps_scheduler_position(self, tmp_path):
        progress = ProgressStateStore(tmp_path)
        old = ProgressSnapshot(scheduler=SchedulerState(cursor=3))
        old.session.tasks_completed = 8
        progress.save(old)

        snapshot = begin_session(progress, "new-session", 3)

        assert [s.worker_id for s in snapshot.workers] == [1, 2, 3]
        assert snapshot.parallel_mode is True
        loaded = progress.load()
        assert loaded.session.session_id == "new-session"
        assert loaded.session.tasks_completed == 0
        assert loaded.session.max_workers == 3
        assert loaded.scheduler.cursor == 3

    def test_clear_stale_frees_slot(self, tmp_path):
        harness = Harness(tmp_path, {"A": [2]})
        coordinator = harness.coordinator()
        claim = coordinator.claim_next()
        claim.heartbeat.stop()

        harness.clock.now += 120
        removed = coordinator.clear_stale_locks()

        assert [lock.issue_number for lock in removed] == [2]
        slot = harness.slot()
        assert slot.status == WorkerStatus.IDLE
        assert slot.last_status == "failed"
        assert slot.last_task.id == "2"
        assert harness.progress.load().session.tasks_failed == 1

    def test_clear_stale_leaves_fresh_locks(self, tmp_path):
        harness = Harness(tmp_path, {"A": [2]})
        coordinator = harness.coordinator()
        claim = coordinator.claim_next()

        assert clear_stale_locks(harness.workspace, harness.progress, harness.lock_store_for) == []
        assert harness.slot().status == WorkerStatus.IN_PROGRESS
        coordinator.complete(claim, TaskOutcome(success=True))

    def test_clear_stale_then_complete_counts_once(self, tmp_path):
        harness = Harness(tmp_path, {"A": [2]})
        coordinator = harness.coordinator()
        claim = coordinator.claim_next()
        claim.heartbeat.stop()

        harness.clock.now += 120
        coordinator.clear_stale_locks()
        coordinator.complete(claim, TaskOutcome(success=True, cost_usd=2.0))

        session = harness.progress.load().session
        assert (session.tasks_completed, session.tasks_failed) == (0, 1)
        assert session.total_cost_usd == 0.0
        assert harness.slot().status == WorkerStatus.IDLE


class TestSessionRestart:
    """Tests for begin_session over a progress file with unfinished slots."""

    def _claim_two(self, harness):
        workers = [harness.coordinator(i) for i in (1, 2)]
        claims = [worker.claim_next() for worker in workers]
        assert harness.progress.load().active_count() == 2
        return workers, claims

    def test_refuses_while_slots_hold_live_locks(self, tmp_path):
        harness = Harness(tmp_path, {"A": [1, 2]}, max_parallel=2)
        workers, claims = self._claim_two(harness)

        with pytest.raises(StateError, match="Worker 1 is still working on issue #1") as exc:
            begin_session(harness.progress, "session-2", 2, harness.lock_store_for)

        assert exc.value.details["issue_number"] == 1
        snapshot = harness.progress.load()
        assert snapshot.active_count() == 2
        assert snapshot.session.session_id == ""

        for worker, claim in zip(workers, claims):
            worker.complete(claim, TaskOutcome(success=True))

    def test_second_session_cannot_exceed_bound(self, tmp_path):
        harness = Harness(tmp_path, {"A": [1, 2, 3, 4]}, max_parallel=2)
        workers, claims = self._claim_two(harness)

        with pytest.raises(StateError):
            begin_session(harness.progress, "session-2", 2, harness.lock_store_for)
        for worker_id in (1, 2):
            with pytest.raises(StateTransitionError):
                harness.coordinator(worker_id).claim_next()

        locked = [n for n in (1, 2, 3, 4) if harness.lock_store_for(harness.workspace.repos["A"]).is_locked(n)]
        assert locked == [1, 2]

        for worker, claim in zip(workers, claims):
            worker.complete(claim, TaskOutcome(success=True))

    def test_refuses_stale_lock_until_cleared(self, tmp_path):
        harness = Harness(tmp_path, {"A": [5]})
        coordinator = harness.coordinator()
        claim = coordinator.claim_next()
        claim.heartbeat.stop()
        harness.clock.now += 120

        with pytest.raises(StateError, match="unlock --stale"):
            begin_session(harness.progress, "session-2", 1, harness.lock_store_for)

        clear_stale_locks(harness.workspace, harness.progress, harness.lock_store_for)
        snapshot = begin_session(harness.progress, "session-2", 1, harness.lock_store_for)
        assert snapshot.workers[0].status == WorkerStatus.IDLE
        assert snapshot.workers[0].last_status == "failed"

    def test_slot_without_lock_recorded_as_failed(self, tmp_path):
        harness = Harness(tmp_path, {"A": [7]}, max_parallel=2)
        coordinator = harness.coordinator(2)
        claim = coordinator.claim_next()
        claim.heartbeat.stop()
        claim.lock_store.release(claim.lock)

        begin_session(harness.progress, "session-2", 1, harness.lock_store_for)

        snapshot = harness.progress.load()
        assert [s.worker_id for s in snapshot.workers] == [1, 2]
        abandoned = snapshot.find_slot(2)
        assert abandoned.status == WorkerStatus.IDLE
        assert abandoned.last_status == "failed"
        assert abandoned.last_task.id == "7"
        assert "Previous session" in abandoned.error
        assert snapshot.active_count() == 0
        assert snapshot.session.session_id == "session-2"

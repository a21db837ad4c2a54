"""Tests for the repository scheduler."""

import json

import pytest

from chadgi.config import RepoEntry, SelectionStrategy, WorkspaceConfig
from chadgi.integrations.board import BoardResult, ErrorKind
from chadgi.logging.config import get_config
from chadgi.orchestrator.dependencies import DependencyState
from chadgi.orchestrator.queue import Task
from chadgi.orchestrator.scheduler import RepoScheduler
from chadgi.state import SchedulerState


class FakeQueues:
    """Per-repository ready queues plus a lock set, as the scheduler sees them."""

    def __init__(self, **queues: list[int]):
        self.queues = {name: [Task(n, f"{name}#{n}") for n in numbers] for name, numbers in queues.items()}
        self.locked: set[tuple[str, int]] = set()
        self.fetches: list[str] = []
        self.failing: set[str] = set()

    def source(self, entry: RepoEntry) -> BoardResult[list[Task]]:
        self.fetches.append(entry.name)
        if entry.name in self.failing:
            return BoardResult.failure(ErrorKind.UNAVAILABLE, "gh timed out")
        return BoardResult.success(list(self.queues.get(entry.name, [])))

    def is_locked(self, entry: RepoEntry, number: int) -> bool:
        return (entry.name, number) in self.locked


def _workspace(strategy: SelectionStrategy, names=("A", "B"), max_parallel: int = 1) -> WorkspaceConfig:
    return WorkspaceConfig(
        strategy=strategy,
        max_parallel_tasks=max_parallel,
        repos={name: RepoEntry(name, f"/srv/{name}", priority=i + 1) for i, name in enumerate(names)},
    )


def _scheduler(workspace, queues, validator=lambda path: None) -> RepoScheduler:
    return RepoScheduler(workspace, queues.source, queues.is_locked, validator=validator)


def _take(scheduler, state, queues, times: int) -> list[tuple[str, int]]:
    """Run several decisions, locking each assigned task like a worker would."""
    picked = []
    for _ in range(times):
        assignment = scheduler.next_assignment(state, active_workers=0)
        if assignment is None:
            picked.append(None)
            continue
        key = (assignment.repo.name, assignment.task.number)
        queues.locked.add(key)
        picked.append(key)
    return picked


class TestRoundRobin:
    """Tests for the round-robin strategy."""

    def test_alternates(self):
        queues = FakeQueues(A=[1, 2], B=[10, 11])
        scheduler = _scheduler(_workspace(SelectionStrategy.ROUND_ROBIN), queues)
        state = SchedulerState()
        assert _take(scheduler, state, queues, 4) == [("A", 1), ("B", 10), ("A", 2), ("B", 11)]

    def test_skips_empty_repo_and_advances_past_served(self):
        queues = FakeQueues(A=[], B=[10], C=[20, 21])
        scheduler = _scheduler(_workspace(SelectionStrategy.ROUND_ROBIN, names=("A", "B", "C")), queues)
        state = SchedulerState(cursor=0)
        assert _take(scheduler, state, queues, 1) == [("B", 10)]
        assert state.cursor == 2
        assert _take(scheduler, state, queues, 2) == [("C", 20), ("C", 21)]

    def test_cursor_larger_than_repo_count(self):
        queues = FakeQueues(A=[1], B=[2])
        scheduler = _scheduler(_workspace(SelectionStrategy.ROUND_ROBIN), queues)
        state = SchedulerState(cursor=5)
        assert _take(scheduler, state, queues, 1) == [("B", 2)]


class TestSequential:
    """Tests for the sequential strategy."""

    def test_drains_repo_before_moving_on(self):
        queues = FakeQueues(A=[1, 2], B=[10])
        scheduler = _scheduler(_workspace(SelectionStrategy.SEQUENTIAL), queues)
        state = SchedulerState()
        assert _take(scheduler, state, queues, 4) == [("A", 1), ("A", 2), ("B", 10), None]
        assert state.current_repo == "B"

    def test_wraps_to_earlier_repo(self):
        queues = FakeQueues(A=[1], B=[])
        scheduler = _scheduler(_workspace(SelectionStrategy.SEQUENTIAL), queues)
        state = SchedulerState(current_repo="B")
        assert _take(scheduler, state, queues, 1) == [("A", 1)]
        assert state.current_repo == "A"


class TestPriority:
    """Tests for the priority strategy."""

    def test_highest_priority_repo_first(self):
        queues = FakeQueues(A=[1], B=[10, 11])
        scheduler = _scheduler(_workspace(SelectionStrategy.PRIORITY), queues)
        state = SchedulerState()
        assert _take(scheduler, state, queues, 3) == [("A", 1), ("B", 10), ("B", 11)]

    def test_new_work_in_first_repo_wins(self):
        queues = FakeQueues(A=[], B=[10, 11])
        scheduler = _scheduler(_workspace(SelectionStrategy.PRIORITY), queues)
        state = SchedulerState()
        _take(scheduler, state, queues, 1)
        queues.queues["A"] = [Task(5, "urgent")]
        assert _take(scheduler, state, queues, 1) == [("A", 5)]


class TestEligibility:
    """Tests for capacity, locks, blocked tasks and skipped repositories."""

    def test_at_capacity_returns_none(self):
        queues = FakeQueues(A=[1])
        scheduler = _scheduler(_workspace(SelectionStrategy.ROUND_ROBIN, max_parallel=2), queues)
        assert scheduler.next_assignment(SchedulerState(), active_workers=2) is None
        assert queues.fetches == []

    def test_below_capacity_assigns(self):
        queues = FakeQueues(A=[1])
        scheduler = _scheduler(_workspace(SelectionStrategy.ROUND_ROBIN, max_parallel=2), queues)
        assert scheduler.next_assignment(SchedulerState(), active_workers=1) is not None

    def test_locked_tasks_skipped(self):
        queues = FakeQueues(A=[1, 2])
        queues.locked.add(("A", 1))
        scheduler = _scheduler(_workspace(SelectionStrategy.SEQUENTIAL, names=("A",)), queues)
        assignment = scheduler.next_assignment(SchedulerState(), active_workers=0)
        assert assignment.task.number == 2

    def test_blocked_tasks_skipped(self):
        queues = FakeQueues(A=[1, 2])
        queues.queues["A"][0].dependency_status = DependencyState.BLOCKED
        scheduler = _scheduler(_workspace(SelectionStrategy.SEQUENTIAL, names=("A",)), queues)
        assignment = scheduler.next_assignment(SchedulerState(), active_workers=0)
        assert assignment.task.number == 2

    def test_all_locked_returns_none(self):
        queues = FakeQueues(A=[1], B=[2])
        queues.locked = {("A", 1), ("B", 2)}
        scheduler = _scheduler(_workspace(SelectionStrategy.ROUND_ROBIN), queues)
        assert scheduler.next_assignment(SchedulerState(), active_workers=0) is None

    def test_invalid_repo_skipped_not_fatal(self):
        queues = FakeQueues(A=[1], B=[2])
        scheduler = _scheduler(
            _workspace(SelectionStrategy.PRIORITY),
            queues,
            validator=lambda path: "Path does not exist" if path.endswith("A") else None,
        )
        assignment = scheduler.next_assignment(SchedulerState(), active_workers=0)
        assert (assignment.repo.name, assignment.task.number) == ("B", 2)
        assert scheduler.skipped == {"A": "Path does not exist"}
        assert "A" not in queues.fetches

    def test_unreachable_repo_skipped(self):
        queues = FakeQueues(A=[1], B=[2])
        queues.failing = {"A"}
        scheduler = _scheduler(_workspace(SelectionStrategy.PRIORITY), queues)
        assignment = scheduler.next_assignment(SchedulerState(), active_workers=0)
        assert assignment.repo.name == "B"
        assert scheduler.skipped["A"] == "gh timed out"

    def test_each_repo_fetched_once_per_decision(self):
        queues = FakeQueues(A=[], B=[])
        scheduler = _scheduler(_workspace(SelectionStrategy.ROUND_ROBIN), queues)
        assert scheduler.next_assignment(SchedulerState(cursor=1), active_workers=0) is None
        assert sorted(queues.fetches) == ["A", "B"]

    def test_no_enabled_repos(self):
        workspace = _workspace(SelectionStrategy.ROUND_ROBIN)
        for entry in workspace.repos.values():
            entry.enabled = False
        assert _scheduler(workspace, FakeQueues()).next_assignment(SchedulerState(), 0) is None


class TestDecisionLog:
    """Scheduling decisions are written to scheduler.jsonl."""

    def test_assignment_logged(self):
        queues = FakeQueues(A=[1])
        scheduler = _scheduler(_workspace(SelectionStrategy.ROUND_ROBIN, names=("A",)), queues)
        scheduler.next_assignment(SchedulerState(), active_workers=0)

        lines = get_config().scheduler_log_path.read_text().splitlines()
        entry = json.loads(lines[-1])
        assert entry["decision"] == "assigned"
        assert entry["repo"] == "A"
        assert entry["issue_number"] == 1
        assert entry["strategy"] == "round-robin"

    @pytest.mark.parametrize("active,decision", [(0, "no_work"), (1, "at_capacity")])
    def test_idle_decisions_logged(self, active, decision):
        scheduler = _scheduler(_workspace(SelectionStrategy.ROUND_ROBIN, names=("A",)), FakeQueues(A=[]))
        scheduler.next_assignment(SchedulerState(), active_workers=active)
        entry = json.loads(get_config().scheduler_log_path.read_text().splitlines()[-1])
        assert entry["decision"] == decision

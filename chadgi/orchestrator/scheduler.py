"""
Repository scheduler.

Decides which repository (and which of its ready tasks) the next idle
worker slot should take. The decision never blocks: when nothing is
eligible, or the workspace is already running max_parallel_tasks, it
returns None.

Scheduling position (round-robin cursor, sequential current repo) lives in
SchedulerState, which is persisted in the progress snapshot so every
worker process continues the same cycle.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from chadgi.config import RepoEntry, SelectionStrategy, WorkspaceConfig, validate_repo_path
from chadgi.integrations.board import BoardResult
from chadgi.logging import SchedulerLogEntry, get_session_id, now_iso, scheduler_logger
from chadgi.orchestrator.queue import Task
from chadgi.state import SchedulerState

logger = logging.getLogger(__name__)

QueueSource = Callable[[RepoEntry], BoardResult[list[Task]]]
LockCheck = Callable[[RepoEntry, int], bool]


@dataclass
class Assignment:
    """A task picked for a worker slot."""

    repo: RepoEntry
    task: Task


class _Round:
    """Per-decision cache so each repository is validated and fetched at most once."""

    def __init__(self, scheduler: "RepoScheduler"):
        self._scheduler = scheduler
        self._eligible: dict[str, Task | None] = {}

    def first_eligible(self, entry: RepoEntry) -> Task | None:
        if entry.name not in self._eligible:
            self._eligible[entry.name] = self._scheduler._first_eligible(entry)
        return self._eligible[entry.name]


class RepoScheduler:
    """
    Picks (repository, task) pairs according to the workspace strategy.

    Args:
        workspace: Repositories, strategy and concurrency limit
        queue_source: Returns a repository's ready queue (already ordered)
        is_locked: True if a task of a repository currently holds a lock
        validator: Returns an error message for unusable repository paths
    """

    def __init__(
        self,
        workspace: WorkspaceConfig,
        queue_source: QueueSource,
        is_locked: LockCheck,
        validator: Callable[[str], str | None] = validate_repo_path,
    ):
        self.workspace = workspace
        self.queue_source = queue_source
        self.is_locked = is_locked
        self.validator = validator
        self.skipped: dict[str, str] = {}
        self._handlers: dict[
            SelectionStrategy, Callable[[list[RepoEntry], SchedulerState, _Round], Assignment | None]
        ] = {
            SelectionStrategy.ROUND_ROBIN: self._round_robin,
            SelectionStrategy.PRIORITY: self._priority,
            SelectionStrategy.SEQUENTIAL: self._sequential,
        }

    @property
    def strategy(self) -> SelectionStrategy:
        return self.workspace.strategy

    @property
    def max_parallel_tasks(self) -> int:
        return self.workspace.max_parallel_tasks

    def next_assignment(self, state: SchedulerState, active_workers: int) -> Assignment | None:
        """
        Choose the next task for an idle slot.

        Updates state (cursor / current repo) when a task is chosen; the
        caller persists it together with the claim.

        Args:
            state: Scheduler position from the progress snapshot
            active_workers: Slots currently in_progress

        Returns:
            An Assignment, or None if there is no work or no capacity
        """
        self.skipped = {}
        if active_workers >= self.max_parallel_tasks:
            self._log("at_capacity", active_workers, reason="all slots busy")
            return None

        repos = self.workspace.enabled_repos()
        if not repos:
            self._log("no_work", active_workers, reason="no enabled repositories")
            return None

        assignment = self._handlers[self.strategy](repos, state, _Round(self))
        if assignment is None:
            self._log("no_work", active_workers, reason="no eligible tasks")
        else:
            self._log(
                "assigned",
                active_workers,
                repo=assignment.repo.name,
                issue_number=assignment.task.number,
            )
        return assignment

    def _first_eligible(self, entry: RepoEntry) -> Task | None:
        problem = self.validator(entry.path)
        if problem:
            self._skip(entry, problem)
            return None

        result = self.queue_source(entry)
        if not result.ok:
            self._skip(entry, result.message or result.error.value)
            return None

        for task in result.value or []:
            if task.is_blocked:
                continue
            if self.is_locked(entry, task.number):
                continue
            return task
        return None

    def _skip(self, entry: RepoEntry, reason: str) -> None:
        self.skipped[entry.name] = reason
        logger.warning(f"Skipping repository {entry.name} this round: {reason}")
        self._log("repo_skipped", 0, repo=entry.name, reason=reason)

    # Strategy handlers

    def _round_robin(self, repos: list[RepoEntry], state: SchedulerState, round_: _Round) -> Assignment | None:
        """Start at the cursor; the cursor moves one past the repository served."""
        count = len(repos)
        start = state.cursor % count
        for offset in range(count):
            index = (start + offset) % count
            task = round_.first_eligible(repos[index])
            if task is not None:
                state.cursor = (index + 1) % count
                return Assignment(repos[index], task)
        return None

    def _priority(self, repos: list[RepoEntry], state: SchedulerState, round_: _Round) -> Assignment | None:
        for entry in repos:
            task = round_.first_eligible(entry)
            if task is not None:
                return Assignment(entry, task)
        return None

    def _sequential(self, repos: list[RepoEntry], state: SchedulerState, round_: _Round) -> Assignment | None:
        """Drain the current repository, then move on to the next one with work."""
        names = [entry.name for entry in repos]
        start = names.index(state.current_repo) if state.current_repo in names else 0
        for offset in range(len(repos)):
            entry = repos[(start + offset) % len(repos)]
            task = round_.first_eligible(entry)
            if task is not None:
                state.current_repo = entry.name
                return Assignment(entry, task)
        return None

    def _log(
        self,
        decision: str,
        active_workers: int,
        repo: str | None = None,
        issue_number: int | None = None,
        reason: str = "",
    ) -> None:
        scheduler_logger.info(
            SchedulerLogEntry(
                timestamp=now_iso(),
                session_id=get_session_id(),
                decision=decision,
                strategy=self.strategy.value,
                repo=repo,
                issue_number=issue_number,
                reason=reason,
                active_workers=active_workers,
                max_workers=self.max_parallel_tasks,
            ).to_json()
        )

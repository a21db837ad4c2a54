"""
Task Queue - ready-column issues, annotated and ordered.

QueueAggregator builds the queue for one repository; WorkspaceQueue
merges the queues of every enabled repository in a workspace into one
priority-ordered view.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from chadgi.config import ProjectConfig, RepoEntry, WorkspaceConfig, load_project_config, validate_repo_path
from chadgi.exceptions import ConfigError
from chadgi.integrations.board import BoardClient, BoardResult, ErrorKind, GitHubBoard
from chadgi.orchestrator.dependencies import DependencyResolver, DependencyState
from chadgi.orchestrator.priority import DEFAULT_PRIORITY, PriorityClassifier

logger = logging.getLogger(__name__)


@dataclass
class Task:
    """A ready issue as seen by one scheduling pass."""

    number: int
    title: str
    url: str = ""
    item_id: str = ""
    category: str | None = None
    priority: int | None = None
    priority_name: str | None = None
    labels: list[str] = field(default_factory=list)
    dependencies: list[int] = field(default_factory=list)
    dependency_status: DependencyState | None = None
    blocking_issues: list[int] = field(default_factory=list)
    repo: str | None = None

    @property
    def is_blocked(self) -> bool:
        return self.dependency_status == DependencyState.BLOCKED

    @property
    def sort_priority(self) -> int:
        return DEFAULT_PRIORITY[0] if self.priority is None else self.priority

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "url": self.url,
            "item_id": self.item_id,
            "category": self.category,
            "priority": self.priority,
            "priority_name": self.priority_name,
            "labels": self.labels,
            "dependencies": self.dependencies,
            "dependency_status": self.dependency_status.value if self.dependency_status else None,
            "blocking_issues": self.blocking_issues,
            "repo": self.repo,
        }


def categorize(labels: list[str], mappings: dict[str, list[str]]) -> str | None:
    """First category (in config order) sharing a label with the issue."""
    lowered = {label.lower() for label in labels}
    for category, category_labels in mappings.items():
        if lowered.intersection(category_labels):
            return category
    return None


def sort_by_priority(tasks: list[Task]) -> list[Task]:
    """Stable sort; unclassified tasks rank as normal."""
    return sorted(tasks, key=lambda task: task.sort_priority)


class QueueAggregator:
    """Builds the annotated ready queue for one repository."""

    def __init__(self, config: ProjectConfig, board: BoardClient):
        self.config = config
        self.board = board
        self.classifier = PriorityClassifier(config.priority_labels)
        self.resolver = DependencyResolver(board, config.dependency_patterns)

    @property
    def repo(self) -> str:
        return self.config.github.repo

    def build_queue(self, check_dependencies: bool = True) -> BoardResult[list[Task]]:
        """
        List the ready column and annotate each issue.

        Args:
            check_dependencies: Resolve dependencies when dependency mode is on

        Returns:
            Tasks in board order, stably sorted by priority in priority mode
        """
        items = self.board.list_ready_items(self.repo)
        if not items.ok:
            return BoardResult.failure(items.error, items.message)

        tasks = []
        for item in items.value or []:
            task = Task(number=item.number, title=item.title, url=item.url, item_id=item.item_id)

            labels = self.board.get_issue_labels(item.number, self.repo)
            if not labels.ok:
                logger.warning(f"Could not read labels of #{item.number} in {self.repo}: {labels.message}")
            task.labels = labels.unwrap_or([])
            task.category = categorize(task.labels, self.config.category_mappings)

            if self.config.priority_enabled:
                task.priority, task.priority_name = self.classifier.classify(task.labels)

            if self.config.dependencies_enabled and check_dependencies:
                self._annotate_dependencies(task)

            tasks.append(task)

        if self.config.priority_enabled:
            tasks = sort_by_priority(tasks)
        return BoardResult.success(tasks)

    def _annotate_dependencies(self, task: Task) -> None:
        body = self.board.get_issue_body(task.number, self.repo)
        if not body.ok:
            # Unknown dependencies are treated as unmet
            logger.warning(f"Could not read body of #{task.number} in {self.repo}; marking blocked")
            task.dependency_status = DependencyState.BLOCKED
            return

        task.dependencies = self.resolver.parse(body.value or "")
        status = self.resolver.resolve(task.dependencies, self.repo)
        task.dependency_status = status.state
        task.blocking_issues = status.blocking_issues


@dataclass
class CombinedQueue:
    """Merged workspace queue plus the repositories that could not be read."""

    tasks: list[Task] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self.tasks],
            "total": len(self.tasks),
            "skipped": self.skipped,
        }


def default_aggregator(entry: RepoEntry) -> QueueAggregator:
    """Aggregator for a workspace repository using its own project config."""
    config = load_project_config(entry.path)
    return QueueAggregator(config, GitHubBoard.from_config(config))


class WorkspaceQueue:
    """
    Queues of all enabled repositories in a workspace.

    Aggregators (and so project configs) are built once per repository
    and reused across calls.
    """

    def __init__(
        self,
        workspace: WorkspaceConfig,
        aggregator_for: Callable[[RepoEntry], QueueAggregator] = default_aggregator,
        validator: Callable[[str], str | None] = validate_repo_path,
    ):
        self.workspace = workspace
        self._aggregator_for = aggregator_for
        self._validator = validator
        self._aggregators: dict[str, QueueAggregator] = {}

    def aggregator(self, entry: RepoEntry) -> QueueAggregator:
        """
        Raises:
            ConfigError: If the repository's project config is invalid
        """
        if entry.name not in self._aggregators:
            self._aggregators[entry.name] = self._aggregator_for(entry)
        return self._aggregators[entry.name]

    def repo_queue(self, entry: RepoEntry, check_dependencies: bool = True) -> BoardResult[list[Task]]:
        """Queue of one repository, each task tagged with the repository name."""
        problem = self._validator(entry.path)
        if problem:
            return BoardResult.failure(ErrorKind.MISCONFIGURED, problem)
        try:
            aggregator = self.aggregator(entry)
        except ConfigError as e:
            return BoardResult.failure(ErrorKind.MISCONFIGURED, str(e))

        result = aggregator.build_queue(check_dependencies=check_dependencies)
        if result.ok:
            for task in result.value or []:
                task.repo = entry.name
        return result

    def combined(self, limit: int | None = None, check_dependencies: bool = True) -> CombinedQueue:
        """
        Concatenate every enabled repository's queue and order by priority.

        Repositories are read in (priority, name) order; ties keep that
        order. limit applies after sorting.
        """
        queue = CombinedQueue()
        merged: list[Task] = []
        for entry in self.workspace.enabled_repos():
            result = self.repo_queue(entry, check_dependencies=check_dependencies)
            if not result.ok:
                logger.warning(f"Skipping {entry.name}: {result.message}")
                queue.skipped[entry.name] = result.message
                continue
            merged.extend(result.value or [])

        ordered = sort_by_priority(merged)
        queue.tasks = ordered[:limit] if limit is not None else ordered
        return queue

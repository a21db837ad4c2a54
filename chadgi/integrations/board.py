"""
Board collaborator.

Queue building and dependency checks talk to the issue tracker only
through BoardClient. Every call returns a BoardResult instead of raising,
so callers decide per call site whether to skip, log or fail closed.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Protocol, TypeVar

from chadgi.config import ProjectConfig
from chadgi.exceptions import GitHubError
from chadgi.integrations.github_ops import GitHubOps, ProjectItem, ProjectMetadata

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(Enum):
    """Why a board call produced no value."""

    UNAVAILABLE = "unavailable"  # gh missing, timed out or failed
    NOT_FOUND = "not_found"
    INVALID_RESPONSE = "invalid_response"
    MISCONFIGURED = "misconfigured"  # repository config missing or invalid


@dataclass
class BoardResult(Generic[T]):
    """Either a value or an error kind with a message."""

    value: T | None = None
    error: ErrorKind | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "BoardResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "BoardResult[T]":
        return cls(error=kind, message=message)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok and self.value is not None else default


@dataclass
class BoardItem:
    """A ready-column card that refers to an issue."""

    number: int
    title: str
    url: str
    item_id: str


class BoardClient(Protocol):
    """Read access to a repository's board and issues."""

    def list_ready_items(self, repo: str) -> BoardResult[list[BoardItem]]: ...

    def get_issue_labels(self, issue: int, repo: str) -> BoardResult[list[str]]: ...

    def get_issue_body(self, issue: int, repo: str) -> BoardResult[str]: ...

    def is_issue_completed(self, issue: int, repo: str) -> BoardResult[bool]: ...


def _classify(error: GitHubError) -> ErrorKind:
    text = error.message.lower()
    if "invalid json" in text:
        return ErrorKind.INVALID_RESPONSE
    if "cli not found" in text:
        return ErrorKind.UNAVAILABLE
    if "not found" in text or "could not resolve" in text:
        return ErrorKind.NOT_FOUND
    return ErrorKind.UNAVAILABLE


class GitHubBoard:
    """
    BoardClient backed by a GitHub Projects board through the gh CLI.

    The project item list is fetched once per list_ready_items() call and
    reused by is_issue_completed() for the same pass, so dependency checks
    cost at most one extra `gh issue view` each.
    """

    def __init__(
        self,
        project_number: int,
        ready_column: str = "Ready",
        done_column: str = "Done",
        backlog_column: str = "Backlog",
        ops_factory=GitHubOps,
    ):
        self.project_number = project_number
        self.ready_column = ready_column
        self.done_column = done_column
        self.backlog_column = backlog_column
        self._ops_factory = ops_factory
        self._items: dict[str, list[ProjectItem]] = {}

    @classmethod
    def from_config(cls, config: ProjectConfig) -> "GitHubBoard":
        github = config.github
        return cls(
            project_number=github.project_number,
            ready_column=github.ready_column,
            done_column=github.done_column,
            backlog_column=github.backlog_column,
        )

    def _ops(self, repo: str) -> GitHubOps:
        return self._ops_factory(repo)

    def _project_items(self, repo: str, refresh: bool = False) -> list[ProjectItem]:
        if refresh or repo not in self._items:
            self._items[repo] = self._ops(repo).list_project_items(self.project_number)
        return self._items[repo]

    def list_ready_items(self, repo: str) -> BoardResult[list[BoardItem]]:
        try:
            items = self._project_items(repo, refresh=True)
        except GitHubError as e:
            logger.warning(f"Could not list board items for {repo}: {e}")
            return BoardResult.failure(_classify(e), str(e))

        return BoardResult.success(
            [
                BoardItem(number=item.number, title=item.title, url=item.url, item_id=item.item_id)
                for item in items
                if item.status == self.ready_column and item.content_type == "Issue" and item.number is not None
            ]
        )

    def get_issue_labels(self, issue: int, repo: str) -> BoardResult[list[str]]:
        try:
            return BoardResult.success(self._ops(repo).get_issue(issue).labels)
        except GitHubError as e:
            return BoardResult.failure(_classify(e), str(e))

    def get_issue_body(self, issue: int, repo: str) -> BoardResult[str]:
        try:
            return BoardResult.success(self._ops(repo).get_issue(issue).body)
        except GitHubError as e:
            return BoardResult.failure(_classify(e), str(e))

    def is_issue_completed(self, issue: int, repo: str) -> BoardResult[bool]:
        """Completed means closed, or sitting in the done column."""
        try:
            if self._ops(repo).get_issue(issue).is_closed:
                return BoardResult.success(True)
            items = self._project_items(repo)
        except GitHubError as e:
            return BoardResult.failure(_classify(e), str(e))

        in_done = any(
            item.number == issue and item.content_type == "Issue" and item.status == self.done_column
            for item in items
        )
        return BoardResult.success(in_done)

    # Mutations used by `chadgi queue skip` / `chadgi queue promote`

    def find_ready_item(self, issue: int, repo: str) -> BoardResult[BoardItem]:
        result = self.list_ready_items(repo)
        if not result.ok:
            return BoardResult.failure(result.error, result.message)
        for item in result.value or []:
            if item.number == issue:
                return BoardResult.success(item)
        return BoardResult.failure(
            ErrorKind.NOT_FOUND, f"Issue #{issue} is not in the {self.ready_column} column"
        )

    def move_to_backlog(self, issue: int, repo: str) -> BoardResult[str]:
        """Move a ready card to the backlog column. Returns the column name."""
        found = self.find_ready_item(issue, repo)
        if not found.ok:
            return BoardResult.failure(found.error, found.message)
        try:
            ops = self._ops(repo)
            metadata: ProjectMetadata = ops.get_project_metadata(self.project_number)
            ops.set_item_status(metadata, found.value.item_id, self.backlog_column)
        except GitHubError as e:
            return BoardResult.failure(_classify(e), str(e))
        return BoardResult.success(self.backlog_column)

    def add_label(self, issue: int, label: str, repo: str) -> BoardResult[str]:
        try:
            self._ops(repo).add_label(issue, label)
        except GitHubError as e:
            return BoardResult.failure(_classify(e), str(e))
        return BoardResult.success(label)

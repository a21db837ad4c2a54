"""Shared fixtures: isolated log directory, repository factory and a fake board."""

from pathlib import Path

import pytest
import yaml

from chadgi.integrations.board import BoardItem, BoardResult, ErrorKind
from chadgi.logging import LogConfig, configure_logging


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path_factory):
    """Keep JSONL logs out of the home directory."""
    configure_logging(LogConfig(log_dir=tmp_path_factory.mktemp("logs")))
    yield


@pytest.fixture
def make_repo(tmp_path):
    """Create a ChadGI-initialized repository directory and return its path."""

    def _make(name: str = "app", repo: str | None = None, **sections) -> Path:
        path = tmp_path / name
        (path / ".chadgi").mkdir(parents=True, exist_ok=True)
        config = {"github": {"repo": repo or f"acme/{name}", "project_number": 7}}
        config.update(sections)
        (path / ".chadgi" / "chadgi-config.yaml").write_text(yaml.safe_dump(config))
        return path

    return _make


class FakeBoard:
    """In-memory BoardClient."""

    def __init__(self):
        self.ready: dict[str, list[BoardItem]] = {}
        self.labels: dict[int, list[str]] = {}
        self.bodies: dict[int, str] = {}
        self.completed: set[int] = set()
        self.unreachable: set[str] = set()
        self.failing_checks: set[int] = set()
        self.completion_calls: list[int] = []

    def add(self, repo: str, number: int, title: str = "", labels=None, body: str = "") -> None:
        self.ready.setdefault(repo, []).append(
            BoardItem(number=number, title=title or f"Issue {number}", url=f"https://x/{number}", item_id=f"I_{number}")
        )
        self.labels[number] = list(labels or [])
        self.bodies[number] = body

    def list_ready_items(self, repo):
        if repo in self.unreachable:
            return BoardResult.failure(ErrorKind.UNAVAILABLE, f"{repo} unreachable")
        return BoardResult.success(list(self.ready.get(repo, [])))

    def get_issue_labels(self, issue, repo):
        return BoardResult.success(self.labels.get(issue, []))

    def get_issue_body(self, issue, repo):
        return BoardResult.success(self.bodies.get(issue, ""))

    def is_issue_completed(self, issue, repo):
        self.completion_calls.append(issue)
        if issue in self.failing_checks:
            return BoardResult.failure(ErrorKind.UNAVAILABLE, "gh timed out")
        return BoardResult.success(issue in self.completed)


@pytest.fixture
def board():
    return FakeBoard()

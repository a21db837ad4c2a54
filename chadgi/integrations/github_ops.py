"""
GitHub Operations Integration

Provides GitHub operations via the gh CLI for:
- Issue details (labels, body, state)
- Label mutation (queue promotion)
- Projects (v2) board items and column moves
"""

import json
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Any

from chadgi.exceptions import GitHubError

logger = logging.getLogger(__name__)

PROJECT_ITEM_LIMIT = 100


@dataclass
class IssueInfo:
    """Information about a GitHub issue."""

    number: int
    title: str
    body: str = ""
    state: str = "OPEN"
    labels: list[str] = field(default_factory=list)
    url: str = ""

    @property
    def is_closed(self) -> bool:
        return self.state.upper() == "CLOSED"


@dataclass
class ProjectItem:
    """One card on a Projects board."""

    item_id: str
    status: str | None
    content_type: str
    number: int | None = None
    title: str = ""
    url: str = ""

    @classmethod
    def from_gh(cls, data: dict[str, Any]) -> "ProjectItem":
        content = data.get("content") or {}
        return cls(
            item_id=str(data.get("id", "")),
            status=data.get("status"),
            content_type=content.get("type", ""),
            number=content.get("number"),
            title=content.get("title") or data.get("title", ""),
            url=content.get("url", ""),
        )


@dataclass
class ProjectMetadata:
    """IDs needed to move a card between Status columns."""

    project_id: str
    status_field_id: str
    option_ids: dict[str, str] = field(default_factory=dict)


class GitHubOps:
    """
    GitHub operations via gh CLI.

    Uses the GitHub CLI (gh) for all operations,
    which handles authentication automatically.
    """

    def __init__(self, repo: str | None = None, timeout: int = 30):
        """
        Initialize GitHub operations.

        Args:
            repo: Repository in owner/repo format (auto-detected if not provided)
            timeout: Seconds before a gh call is abandoned
        """
        self.repo = repo
        self.timeout = timeout
        self._authenticated = False

    @property
    def owner(self) -> str | None:
        return self.repo.split("/")[0] if self.repo else None

    def check_auth(self) -> bool:
        """Check if gh CLI is authenticated."""
        try:
            result = subprocess.run(
                ["gh", "auth", "status"],
                capture_output=True,
                text=True,
                timeout=10,
            )
            self._authenticated = result.returncode == 0
            return self._authenticated
        except FileNotFoundError:
            logger.error("gh CLI not found - install from https://cli.github.com")
            return False
        except subprocess.TimeoutExpired:
            logger.error("gh auth status timed out")
            return False

    def _run_gh(
        self,
        args: list[str],
        timeout: int | None = None,
        check: bool = True,
        with_repo: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run a gh CLI command."""
        cmd = ["gh"] + args
        timeout = timeout or self.timeout

        # Project commands are owner-scoped and reject --repo
        if with_repo and self.repo and "--repo" not in args and "-R" not in args:
            cmd.extend(["--repo", self.repo])

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )

            if check and result.returncode != 0:
                raise GitHubError(
                    f"gh command failed: {result.stderr.strip()}",
                    {"command": " ".join(args[:3]), "returncode": result.returncode},
                )

            return result

        except FileNotFoundError:
            raise GitHubError("gh CLI not found")
        except subprocess.TimeoutExpired:
            raise GitHubError(f"gh command timed out after {timeout}s")

    def _json(self, result: subprocess.CompletedProcess) -> Any:
        try:
            return json.loads(result.stdout) if result.stdout.strip() else {}
        except json.JSONDecodeError as e:
            raise GitHubError("gh returned invalid JSON", {"error": str(e)})

    # Issue Operations

    def get_issue(self, number: int) -> IssueInfo:
        """Get a specific issue by number."""
        args = [
            "issue",
            "view",
            str(number),
            "--json",
            "number,title,body,state,labels,url",
        ]

        data = self._json(self._run_gh(args))
        return IssueInfo(
            number=data.get("number", number),
            title=data.get("title", ""),
            body=data.get("body") or "",
            state=data.get("state", "OPEN"),
            labels=[l["name"] for l in data.get("labels", [])],
            url=data.get("url", ""),
        )

    def add_label(self, number: int, label: str) -> None:
        """Add a label to an issue."""
        self._run_gh(["issue", "edit", str(number), "--add-label", label])
        logger.info(f"Added label '{label}' to issue #{number}")

    # Project Operations

    def list_project_items(self, project_number: int, limit: int = PROJECT_ITEM_LIMIT) -> list[ProjectItem]:
        """List the cards of a Projects board owned by the repo owner."""
        args = [
            "project",
            "item-list",
            str(project_number),
            "--owner",
            self.owner or "@me",
            "--format",
            "json",
            "--limit",
            str(limit),
        ]
        data = self._json(self._run_gh(args, with_repo=False))
        return [ProjectItem.from_gh(item) for item in data.get("items", [])]

    def get_project_metadata(self, project_number: int) -> ProjectMetadata:
        """
        Look up the project id and Status field options.

        Raises:
            GitHubError: If the project or its Status field cannot be found
        """
        owner = self.owner or "@me"
        projects = self._json(
            self._run_gh(["project", "list", "--owner", owner, "--format", "json"], with_repo=False)
        )
        project = next(
            (p for p in projects.get("projects", []) if p.get("number") == project_number),
            None,
        )
        if project is None:
            raise GitHubError(f"Project #{project_number} not found", {"owner": owner})

        fields = self._json(
            self._run_gh(
                ["project", "field-list", str(project_number), "--owner", owner, "--format", "json"],
                with_repo=False,
            )
        )
        status_field = next((f for f in fields.get("fields", []) if f.get("name") == "Status"), None)
        if status_field is None:
            raise GitHubError(f"Project #{project_number} has no Status field")

        return ProjectMetadata(
            project_id=project["id"],
            status_field_id=status_field["id"],
            option_ids={o["name"]: o["id"] for o in status_field.get("options", [])},
        )

    def set_item_status(self, metadata: ProjectMetadata, item_id: str, column: str) -> None:
        """Move a card to the named Status column."""
        option_id = metadata.option_ids.get(column)
        if option_id is None:
            raise GitHubError(
                f"Column '{column}' not found on board",
                {"available": sorted(metadata.option_ids)},
            )
        self._run_gh(
            [
                "project",
                "item-edit",
                "--project-id",
                metadata.project_id,
                "--id",
                item_id,
                "--field-id",
                metadata.status_field_id,
                "--single-select-option-id",
                option_id,
            ],
            with_repo=False,
        )

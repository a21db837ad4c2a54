"""
ChadGI - Configuration Management

Loads the per-repository project config (.chadgi/chadgi-config.yaml) and
the multi-repository workspace config (.chadgi/workspace.yaml).
"""

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from chadgi.exceptions import ConfigError, RepoNotFoundError, WorkspaceNotFoundError
from chadgi.persistence.fileops import atomic_write_text


# Configuration paths (relative to a repository or workspace root)
CHADGI_DIR = ".chadgi"
PROJECT_CONFIG_FILENAME = "chadgi-config.yaml"
WORKSPACE_CONFIG_FILENAME = "workspace.yaml"
PLACEHOLDER_REPO = "owner/repo"

DEFAULT_PRIORITY_LABELS: dict[str, list[str]] = {
    "critical": ["priority:critical", "p0", "urgent"],
    "high": ["priority:high", "p1"],
    "normal": ["priority:normal", "p2"],
    "low": ["priority:low", "p3", "backlog"],
}

DEFAULT_CATEGORY_MAPPINGS: dict[str, list[str]] = {
    "bug": ["bug", "bugfix", "fix", "hotfix"],
    "feature": ["feature", "enhancement", "new-feature"],
    "refactor": ["refactor", "refactoring", "cleanup", "tech-debt"],
    "docs": ["docs", "documentation"],
    "test": ["test", "testing", "tests"],
    "chore": ["chore", "maintenance", "ci", "build"],
}

DEFAULT_DEPENDENCY_PATTERNS: list[str] = ["depends on", "blocked by", "requires"]


class SelectionStrategy(Enum):
    """How a workspace picks the repository for the next task."""

    ROUND_ROBIN = "round-robin"
    PRIORITY = "priority"
    SEQUENTIAL = "sequential"

    @classmethod
    def parse(cls, value: str) -> "SelectionStrategy":
        """
        Parse a strategy name from configuration.

        Raises:
            ConfigError: If the name is not a known strategy
        """
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigError(
                f"Unknown workspace strategy '{value}'",
                {"valid": [s.value for s in cls]},
            )


def _lower_list(values: Any) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    return [str(v).strip().lower() for v in values if str(v).strip()]


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{key}' must be a mapping", {"got": type(value).__name__})
    return value


@dataclass
class PriorityLabels:
    """Label sets that map an issue to a priority tier."""

    critical: list[str] = field(default_factory=lambda: list(DEFAULT_PRIORITY_LABELS["critical"]))
    high: list[str] = field(default_factory=lambda: list(DEFAULT_PRIORITY_LABELS["high"]))
    normal: list[str] = field(default_factory=lambda: list(DEFAULT_PRIORITY_LABELS["normal"]))
    low: list[str] = field(default_factory=lambda: list(DEFAULT_PRIORITY_LABELS["low"]))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PriorityLabels":
        data = data or {}
        return cls(
            **{
                tier: _lower_list(data[tier]) if data.get(tier) else list(defaults)
                for tier, defaults in DEFAULT_PRIORITY_LABELS.items()
            }
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "critical": self.critical,
            "high": self.high,
            "normal": self.normal,
            "low": self.low,
        }


@dataclass
class GitHubSettings:
    """Board location for one repository."""

    repo: str
    project_number: int
    ready_column: str = "Ready"
    done_column: str = "Done"
    backlog_column: str = "Backlog"

    @property
    def owner(self) -> str:
        return self.repo.split("/")[0]


@dataclass
class ProjectConfig:
    """Settings loaded from a repository's chadgi-config.yaml."""

    github: GitHubSettings
    priority_enabled: bool = False
    priority_labels: PriorityLabels = field(default_factory=PriorityLabels)
    dependencies_enabled: bool = False
    dependency_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_DEPENDENCY_PATTERNS))
    category_mappings: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_CATEGORY_MAPPINGS.items()}
    )
    max_parallel_tasks: int = 1
    heartbeat_interval_seconds: float = 30.0
    lock_timeout_minutes: float = 120.0
    agent_command: str = "claude -p --output-format json"
    agent_timeout_minutes: float = 60.0
    branch_prefix: str = "feature/issue-"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProjectConfig":
        """
        Build a ProjectConfig from parsed YAML.

        Raises:
            ConfigError: If required fields are missing or malformed
        """
        github = _section(data, "github")
        repo = str(github.get("repo") or "").strip()
        if not repo or repo == PLACEHOLDER_REPO or "/" not in repo:
            raise ConfigError(
                "Repository not configured",
                {"field": "github.repo", "hint": "Set github.repo to owner/name"},
            )
        if github.get("project_number") in (None, ""):
            raise ConfigError("Missing required field", {"field": "github.project_number"})
        try:
            project_number = int(github["project_number"])
        except (TypeError, ValueError):
            raise ConfigError(
                "github.project_number must be an integer",
                {"got": github["project_number"]},
            )

        priority = _section(data, "priority")
        dependencies = _section(data, "dependencies")
        category = _section(data, "category")
        parallel = _section(data, "parallel")
        agent = _section(data, "agent")
        branch = _section(data, "branch")

        mappings = category.get("mappings") or {}
        if not isinstance(mappings, dict):
            raise ConfigError("category.mappings must be a mapping")

        patterns = dependencies.get("patterns")
        if isinstance(patterns, str):
            patterns = [patterns]

        config = cls(
            github=GitHubSettings(
                repo=repo,
                project_number=project_number,
                ready_column=github.get("ready_column", "Ready"),
                done_column=github.get("done_column", "Done"),
                backlog_column=github.get("backlog_column", "Backlog"),
            ),
            priority_enabled=bool(priority.get("enabled", False)),
            priority_labels=PriorityLabels.from_dict(priority.get("labels")),
            dependencies_enabled=bool(dependencies.get("enabled", False)),
            dependency_patterns=[str(p) for p in patterns] if patterns else list(DEFAULT_DEPENDENCY_PATTERNS),
            max_parallel_tasks=int(parallel.get("max_parallel_tasks", 1)),
            heartbeat_interval_seconds=float(parallel.get("heartbeat_interval_seconds", 30)),
            lock_timeout_minutes=float(parallel.get("lock_timeout_minutes", 120)),
            agent_command=agent.get("command", "claude -p --output-format json"),
            agent_timeout_minutes=float(agent.get("timeout_minutes", 60)),
            branch_prefix=branch.get("prefix", "feature/issue-"),
        )
        if mappings:
            config.category_mappings = {str(k): _lower_list(v) for k, v in mappings.items()}

        if config.max_parallel_tasks < 1:
            raise ConfigError(
                "parallel.max_parallel_tasks must be at least 1",
                {"got": config.max_parallel_tasks},
            )
        return config

    @property
    def stale_threshold_seconds(self) -> float:
        return self.lock_timeout_minutes * 60


def project_config_path(repo_path: str | Path) -> Path:
    """Path to a repository's chadgi-config.yaml."""
    return Path(repo_path) / CHADGI_DIR / PROJECT_CONFIG_FILENAME


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}", {"error": str(e)})
    except OSError as e:
        raise ConfigError(f"Cannot read {path}", {"error": str(e)})

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")
    return document


def load_project_config(repo_path: str | Path) -> ProjectConfig:
    """
    Load the project config for a repository.

    Args:
        repo_path: Repository root (the directory containing .chadgi/)

    Raises:
        ConfigError: If the file is missing or invalid
    """
    path = project_config_path(repo_path)
    if not path.exists():
        raise ConfigError(
            f"Config file not found: {path}",
            {"hint": "Run `chadgi init` in the repository first"},
        )
    return ProjectConfig.from_dict(_load_yaml(path))


def validate_repo_path(repo_path: str | Path) -> str | None:
    """
    Check that a path is a usable ChadGI repository.

    Returns:
        None if valid, otherwise a human-readable error
    """
    path = Path(repo_path)
    if not path.exists():
        return f"Path does not exist: {path}"
    if not path.is_dir():
        return f"Path is not a directory: {path}"
    if not (path / CHADGI_DIR).is_dir():
        return f"Not a ChadGI project (missing {CHADGI_DIR} directory): {path}"
    if not project_config_path(path).exists():
        return f"Missing {PROJECT_CONFIG_FILENAME} in {path / CHADGI_DIR}"
    return None


@dataclass
class RepoEntry:
    """A repository managed by a workspace."""

    name: str
    path: str
    remote: str | None = None
    enabled: bool = True
    priority: int = 999
    branch_prefix: str | None = None
    test_command: str | None = None
    build_command: str | None = None

    def __post_init__(self) -> None:
        self.path = str(Path(self.path).expanduser())

    @property
    def state_dir(self) -> Path:
        """The repository's .chadgi directory (holds its task locks)."""
        return Path(self.path) / CHADGI_DIR

    def sort_key(self) -> tuple[int, str]:
        return (self.priority, self.name)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "path": self.path,
            "enabled": self.enabled,
            "priority": self.priority,
        }
        for key in ("remote", "branch_prefix", "test_command", "build_command"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "RepoEntry":
        if not isinstance(data, dict) or not data.get("path"):
            raise ConfigError(f"Repository '{name}' is missing a path", {"repo": name})
        return cls(
            name=name,
            path=data["path"],
            remote=data.get("remote"),
            enabled=data.get("enabled", True) is not False,
            priority=int(data.get("priority", 999)),
            branch_prefix=data.get("branch_prefix"),
            test_command=data.get("test_command"),
            build_command=data.get("build_command"),
        )


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class WorkspaceConfig:
    """A named collection of repositories scheduled together."""

    name: str = "workspace"
    description: str = ""
    strategy: SelectionStrategy = SelectionStrategy.ROUND_ROBIN
    repos: dict[str, RepoEntry] = field(default_factory=dict)
    max_parallel_tasks: int = 1
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def enabled_repos(self) -> list[RepoEntry]:
        """Enabled repositories ordered by (priority, name)."""
        return sorted((r for r in self.repos.values() if r.enabled), key=RepoEntry.sort_key)

    def get_repo(self, name_or_path: str) -> RepoEntry:
        """
        Find a repository by name or local path.

        Raises:
            RepoNotFoundError: If no repository matches
        """
        if name_or_path in self.repos:
            return self.repos[name_or_path]

        resolved = str(Path(name_or_path).expanduser().resolve())
        for entry in self.repos.values():
            if entry.path == resolved:
                return entry

        raise RepoNotFoundError(
            f"Repository '{name_or_path}' not found in workspace",
            {"available": sorted(self.repos)},
        )

    def add_repo(self, entry: RepoEntry) -> bool:
        """Add or replace a repository. Returns True if it replaced an existing entry."""
        replaced = entry.name in self.repos
        self.repos[entry.name] = entry
        return replaced

    def remove_repo(self, name_or_path: str) -> RepoEntry:
        entry = self.get_repo(name_or_path)
        return self.repos.pop(entry.name)

    def update_repo(self, name: str, **changes: Any) -> RepoEntry:
        entry = self.get_repo(name)
        for key, value in changes.items():
            if not hasattr(entry, key) or key == "name":
                raise ConfigError(f"Unknown repository field '{key}'")
            setattr(entry, key, value)
        return entry

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "strategy": self.strategy.value,
            "settings": {"max_parallel_tasks": self.max_parallel_tasks},
            "repos": {name: entry.to_dict() for name, entry in self.repos.items()},
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkspaceConfig":
        repos_data = data.get("repos") or {}
        if not isinstance(repos_data, dict):
            raise ConfigError("Workspace 'repos' must be a mapping of name to settings")
        settings = data.get("settings") or {}

        config = cls(
            name=data.get("name") or "workspace",
            description=data.get("description") or "",
            strategy=SelectionStrategy.parse(data.get("strategy") or "round-robin"),
            repos={name: RepoEntry.from_dict(name, entry) for name, entry in repos_data.items()},
            max_parallel_tasks=int(settings.get("max_parallel_tasks", 1)),
            created_at=str(data.get("created_at") or _utc_now()),
            updated_at=str(data.get("updated_at") or _utc_now()),
        )
        if config.max_parallel_tasks < 1:
            raise ConfigError(
                "settings.max_parallel_tasks must be at least 1",
                {"got": config.max_parallel_tasks},
            )
        return config


def get_workspace_config_path(root: str | Path | None = None) -> Path:
    """Default workspace config location under root (or the current directory)."""
    return Path(root or os.getcwd()) / CHADGI_DIR / WORKSPACE_CONFIG_FILENAME


def load_workspace_config(path: Path) -> WorkspaceConfig:
    """
    Load a workspace config file.

    Raises:
        WorkspaceNotFoundError: If the file does not exist
        ConfigError: If it is invalid
    """
    if not path.exists():
        raise WorkspaceNotFoundError(
            "Workspace not initialized",
            {"path": str(path), "hint": "Run `chadgi workspace init` first"},
        )
    return WorkspaceConfig.from_dict(_load_yaml(path))


def save_workspace_config(path: Path, config: WorkspaceConfig) -> None:
    """Write the workspace config atomically, refreshing updated_at."""
    config.updated_at = _utc_now()
    header = (
        "# ChadGI Workspace Configuration\n"
        "# Multi-repository workspace for ChadGI task automation\n\n"
    )
    body = yaml.safe_dump(config.to_dict(), sort_keys=False, default_flow_style=False)
    atomic_write_text(path, header + body)


def single_repo_workspace(repo_path: str | Path, config: ProjectConfig) -> WorkspaceConfig:
    """Wrap a single repository as a one-entry workspace."""
    path = str(Path(repo_path).resolve())
    entry = RepoEntry(name=config.github.repo, path=path, priority=1)
    return WorkspaceConfig(
        name=config.github.repo,
        strategy=SelectionStrategy.SEQUENTIAL,
        repos={entry.name: entry},
        max_parallel_tasks=config.max_parallel_tasks,
    )

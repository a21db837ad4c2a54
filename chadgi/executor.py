"""
Agent Executor

Runs the configured coding agent (by default `claude -p`) on one issue
inside the repository checkout and reports a TaskOutcome. Timeouts and
non-zero exits become failed outcomes; the coordinator records them on
the worker slot.
"""

import json
import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from chadgi.config import RepoEntry, load_project_config
from chadgi.exceptions import ExecutorError, ExecutorTimeoutError

if TYPE_CHECKING:
    from chadgi.orchestrator.queue import Task

logger = logging.getLogger(__name__)

# Max characters of agent output kept in an error message
ERROR_TAIL_CHARS = 500


@dataclass
class TaskOutcome:
    """Result of running one task."""

    success: bool
    cost_usd: float = 0.0
    error: str | None = None
    duration_seconds: float = 0.0


class TaskExecutor(Protocol):
    def execute(self, repo: RepoEntry, task: "Task", branch: str) -> TaskOutcome: ...


class CommandExecutor:
    """
    Executes tasks by running a shell-style agent command.

    The prompt is written to the agent's stdin. Issue details are also
    exported as CHADGI_* environment variables for wrapper scripts.
    """

    def __init__(self, command: str = "claude -p --output-format json", timeout_seconds: float = 3600):
        self.command = command
        self.timeout_seconds = timeout_seconds

    def build_prompt(self, repo: RepoEntry, task: "Task", branch: str) -> str:
        parts = [
            f"Work on GitHub issue #{task.number}: {task.title}",
            f"Issue URL: {task.url}" if task.url else "",
            f"Create your changes on branch: {branch}",
        ]
        if repo.test_command:
            parts.append(f"Run the tests with: {repo.test_command}")
        if repo.build_command:
            parts.append(f"Build with: {repo.build_command}")
        parts.append("When the work is complete, commit it and open a pull request that closes the issue.")
        return "\n".join(p for p in parts if p)

    def _build_command(self) -> list[str]:
        cmd = shlex.split(self.command)
        if not cmd:
            raise ExecutorError("Agent command is empty")
        return cmd

    def _environment(self, repo: RepoEntry, task: "Task", branch: str) -> dict[str, str]:
        env = os.environ.copy()
        # Keys for other model providers are never handed to the agent
        for key in ("OPENAI_API_KEY", "OPENROUTER_API_KEY", "PERPLEXITY_API_KEY"):
            env.pop(key, None)
        env.update(
            {
                "CHADGI_ISSUE_NUMBER": str(task.number),
                "CHADGI_ISSUE_TITLE": task.title,
                "CHADGI_ISSUE_URL": task.url,
                "CHADGI_BRANCH": branch,
                "CHADGI_REPO": repo.name,
            }
        )
        return env

    def run(self, repo: RepoEntry, task: "Task", branch: str) -> subprocess.CompletedProcess:
        """
        Run the agent command once.

        Raises:
            ExecutorTimeoutError: If the command exceeds timeout_seconds
            ExecutorError: If the command cannot be started
        """
        cmd = self._build_command()
        try:
            return subprocess.run(
                cmd,
                input=self.build_prompt(repo, task, branch),
                capture_output=True,
                text=True,
                cwd=repo.path,
                env=self._environment(repo, task, branch),
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            raise ExecutorTimeoutError(
                f"Agent timed out on issue #{task.number}",
                timeout_seconds=self.timeout_seconds,
            )
        except FileNotFoundError:
            raise ExecutorError(f"Agent command not found: {cmd[0]}", {"command": self.command})

    def execute(self, repo: RepoEntry, task: "Task", branch: str) -> TaskOutcome:
        start = time.monotonic()
        try:
            result = self.run(repo, task, branch)
        except ExecutorError as e:
            return TaskOutcome(success=False, error=str(e), duration_seconds=time.monotonic() - start)

        duration = time.monotonic() - start
        cost = parse_cost(result.stdout)
        if result.returncode != 0:
            tail = (result.stderr or result.stdout or "").strip()[-ERROR_TAIL_CHARS:]
            return TaskOutcome(
                success=False,
                cost_usd=cost,
                error=f"Agent exited with code {result.returncode}: {tail}",
                duration_seconds=duration,
            )
        return TaskOutcome(success=True, cost_usd=cost, duration_seconds=duration)


def parse_cost(output: str) -> float:
    """
    Read total_cost_usd from the agent's JSON output.

    Accepts a single JSON document or JSON lines (the last result wins).
    """
    cost = 0.0
    for line in reversed((output or "").strip().splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and "total_cost_usd" in data:
            try:
                return float(data["total_cost_usd"])
            except (TypeError, ValueError):
                return cost
    try:
        data = json.loads(output)
    except (json.JSONDecodeError, TypeError):
        return cost
    if isinstance(data, dict):
        try:
            return float(data.get("total_cost_usd") or 0.0)
        except (TypeError, ValueError):
            return cost
    return cost


class ProjectCommandExecutor:
    """Runs each task with the agent settings of the task's own repository."""

    def execute(self, repo: RepoEntry, task: "Task", branch: str) -> TaskOutcome:
        config = load_project_config(repo.path)
        executor = CommandExecutor(config.agent_command, config.agent_timeout_minutes * 60)
        return executor.execute(repo, task, branch)

"""Tests for the agent executor."""

import json
import subprocess
from unittest.mock import patch

import pytest

from chadgi.config import RepoEntry
from chadgi.exceptions import ExecutorError, ExecutorTimeoutError
from chadgi.executor import CommandExecutor, ProjectCommandExecutor, parse_cost
from chadgi.orchestrator.queue import Task


@pytest.fixture
def repo(tmp_path):
    return RepoEntry("acme/app", str(tmp_path), test_command="make test")


@pytest.fixture
def task():
    return Task(12, "Fix login", url="https://github.com/acme/app/issues/12")


class TestParseCost:
    """Tests for parse_cost."""

    @pytest.mark.parametrize(
        "output,expected",
        [
            ('{"result": "ok", "total_cost_usd": 0.42}', 0.42),
            (json.dumps({"total_cost_usd": 1.5}, indent=2), 1.5),
            ('{"type": "progress"}\n{"type": "result", "total_cost_usd": 2.0}', 2.0),
            ("plain text output", 0.0),
            ("", 0.0),
            ('{"total_cost_usd": "n/a"}', 0.0),
        ],
    )
    def test_outputs(self, output, expected):
        assert parse_cost(output) == pytest.approx(expected)


class TestCommandExecutor:
    """Tests for CommandExecutor."""

    def test_prompt_mentions_issue_and_branch(self, repo, task):
        prompt = CommandExecutor().build_prompt(repo, task, "feature/issue-12")
        assert "#12: Fix login" in prompt
        assert "feature/issue-12" in prompt
        assert "make test" in prompt

    def test_environment(self, repo, task, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        env = CommandExecutor()._environment(repo, task, "b")
        assert "OPENAI_API_KEY" not in env
        assert env["CHADGI_ISSUE_NUMBER"] == "12"
        assert env["CHADGI_REPO"] == "acme/app"

    def test_success(self, repo, task):
        completed = subprocess.CompletedProcess(["claude"], 0, stdout='{"total_cost_usd": 0.3}', stderr="")
        with patch("chadgi.executor.subprocess.run", return_value=completed) as mock_run:
            outcome = CommandExecutor("claude -p", timeout_seconds=10).execute(repo, task, "b")

        assert outcome.success
        assert outcome.cost_usd == pytest.approx(0.3)
        args, kwargs = mock_run.call_args
        assert args[0] == ["claude", "-p"]
        assert kwargs["cwd"] == repo.path
        assert kwargs["timeout"] == 10

    def test_nonzero_exit(self, repo, task):
        completed = subprocess.CompletedProcess(["claude"], 2, stdout="", stderr="rate limited")
        with patch("chadgi.executor.subprocess.run", return_value=completed):
            outcome = CommandExecutor().execute(repo, task, "b")
        assert not outcome.success
        assert "code 2" in outcome.error
        assert "rate limited" in outcome.error

    def test_timeout(self, repo, task):
        executor = CommandExecutor(timeout_seconds=5)
        with patch(
            "chadgi.executor.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="claude", timeout=5),
        ):
            with pytest.raises(ExecutorTimeoutError) as exc_info:
                executor.run(repo, task, "b")
            assert exc_info.value.timeout_seconds == 5

            outcome = executor.execute(repo, task, "b")
        assert not outcome.success
        assert "timed out" in outcome.error

    def test_missing_binary(self, repo, task):
        with patch("chadgi.executor.subprocess.run", side_effect=FileNotFoundError):
            outcome = CommandExecutor("no-such-agent").execute(repo, task, "b")
        assert "not found" in outcome.error

    def test_empty_command(self, repo, task):
        with pytest.raises(ExecutorError):
            CommandExecutor("   ").run(repo, task, "b")


class TestProjectCommandExecutor:
    """Tests for per-repository agent settings."""

    def test_uses_repository_config(self, make_repo, task):
        path = make_repo("svc", agent={"command": "my-agent --json", "timeout_minutes": 2})
        repo = RepoEntry("svc", str(path))
        completed = subprocess.CompletedProcess(["my-agent"], 0, stdout="", stderr="")
        with patch("chadgi.executor.subprocess.run", return_value=completed) as mock_run:
            ProjectCommandExecutor().execute(repo, task, "b")
        args, kwargs = mock_run.call_args
        assert args[0] == ["my-agent", "--json"]
        assert kwargs["timeout"] == 120

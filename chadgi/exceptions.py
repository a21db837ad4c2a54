"""
ChadGI - Exception Hierarchy

All ChadGI-specific exceptions inherit from ChadGIError and carry an
optional details dict for structured reporting.
"""

from typing import Any


class ChadGIError(Exception):
    """Base exception for all ChadGI errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# Configuration Errors
class ConfigError(ChadGIError):
    """Raised when configuration is invalid or missing."""

    pass


class WorkspaceNotFoundError(ConfigError):
    """Raised when no workspace configuration exists."""

    pass


class RepoNotFoundError(ConfigError):
    """Raised when a repository is not registered in the workspace."""

    pass


# Board / GitHub Errors
class GitHubError(ChadGIError):
    """Base exception for GitHub CLI errors."""

    pass


# Lock Errors
class LockError(ChadGIError):
    """Raised when a task lock file cannot be read or written."""

    def __init__(self, message: str, issue_number: int, details: dict[str, Any] | None = None):
        super().__init__(message, {"issue_number": issue_number, **(details or {})})
        self.issue_number = issue_number


# State Errors
class StateError(ChadGIError):
    """Raised when the progress file is unreadable or inconsistent."""

    pass


class StateTransitionError(StateError):
    """Raised when an invalid worker slot transition is attempted.

    Includes the current state and the attempted target state for debugging.
    """

    def __init__(self, message: str, from_state: str, to_state: str):
        super().__init__(message, {"from_state": from_state, "to_state": to_state})
        self.from_state = from_state
        self.to_state = to_state


# Executor Errors
class ExecutorError(ChadGIError):
    """Base exception for agent execution errors."""

    pass


class ExecutorTimeoutError(ExecutorError):
    """Raised when the agent command exceeds its timeout."""

    def __init__(self, message: str, timeout_seconds: float):
        super().__init__(message, {"timeout_seconds": timeout_seconds})
        self.timeout_seconds = timeout_seconds

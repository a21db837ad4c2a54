"""
ChadGI - task distribution for autonomous coding agents.

Pulls ready issues from GitHub project boards across one or more
repositories and hands them to parallel agent workers.
"""

__version__ = "0.1.0"

from chadgi.exceptions import (
    ChadGIError,
    ConfigError,
    GitHubError,
    LockError,
    StateError,
    StateTransitionError,
)

__all__ = [
    "__version__",
    "ChadGIError",
    "ConfigError",
    "GitHubError",
    "LockError",
    "StateError",
    "StateTransitionError",
]

"""
ChadGI Integrations

External tools ChadGI talks to: the gh CLI and the project board built on it.
"""

from chadgi.integrations.board import BoardClient, BoardItem, BoardResult, ErrorKind, GitHubBoard
from chadgi.integrations.github_ops import GitHubOps, IssueInfo, ProjectItem, ProjectMetadata

__all__ = [
    "BoardClient",
    "BoardItem",
    "BoardResult",
    "ErrorKind",
    "GitHubBoard",
    "GitHubOps",
    "IssueInfo",
    "ProjectItem",
    "ProjectMetadata",
]

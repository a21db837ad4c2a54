"""
Dependency declarations in issue bodies.

Issues name their prerequisites in free text ("Depends on #12",
"blocked by #3, #5 and 6"). A task is runnable only once every issue it
names is completed on the board.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache

from chadgi.config import DEFAULT_DEPENDENCY_PATTERNS
from chadgi.integrations.board import BoardClient

logger = logging.getLogger(__name__)


class DependencyState(Enum):
    RESOLVED = "resolved"
    BLOCKED = "blocked"


@dataclass
class DependencyStatus:
    state: DependencyState
    blocking_issues: list[int] = field(default_factory=list)

    @property
    def is_blocked(self) -> bool:
        return self.state == DependencyState.BLOCKED


@lru_cache(maxsize=32)
def _compile(patterns: tuple[str, ...]) -> re.Pattern[str] | None:
    phrases = [
        r"\s+".join(re.escape(word) for word in phrase.split())
        for phrase in patterns
        if phrase.strip()
    ]
    if not phrases:
        return None
    trigger = "|".join(phrases)
    return re.compile(
        rf"(?:{trigger})\s+(#?\d+(?:[,\s]+(?:and\s+)?#?\d+)*)",
        re.IGNORECASE,
    )


def parse_dependencies(body: str, patterns: list[str] | None = None) -> list[int]:
    """
    Extract referenced issue numbers, in order of first mention.

    Args:
        body: Issue description
        patterns: Trigger phrases; whitespace inside a phrase matches any run
            of whitespace

    Returns:
        De-duplicated issue numbers
    """
    if not body:
        return []
    regex = _compile(tuple(patterns if patterns is not None else DEFAULT_DEPENDENCY_PATTERNS))
    if regex is None:
        return []

    numbers: list[int] = []
    for match in regex.finditer(body):
        for raw in re.findall(r"\d+", match.group(1)):
            try:
                number = int(raw)
            except ValueError:
                continue
            if number > 0 and number not in numbers:
                numbers.append(number)
    return numbers


class DependencyResolver:
    """Parses dependency declarations and checks them against the board."""

    def __init__(self, board: BoardClient, patterns: list[str] | None = None):
        self.board = board
        self.patterns = list(patterns) if patterns is not None else list(DEFAULT_DEPENDENCY_PATTERNS)

    def parse(self, body: str) -> list[int]:
        return parse_dependencies(body, self.patterns)

    def resolve(self, dependencies: list[int], repo: str) -> DependencyStatus:
        """
        Check each dependency once.

        A dependency whose completion check fails counts as not completed.
        """
        blocking: list[int] = []
        for issue in dependencies:
            result = self.board.is_issue_completed(issue, repo)
            if not result.ok:
                logger.warning(
                    f"Could not check dependency #{issue} in {repo} ({result.error.value}); treating as open"
                )
                blocking.append(issue)
            elif not result.value:
                blocking.append(issue)

        if blocking:
            return DependencyStatus(DependencyState.BLOCKED, blocking)
        return DependencyStatus(DependencyState.RESOLVED, [])

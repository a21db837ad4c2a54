"""
Log Entry Data Structures for ChadGI.

Defines structured log entries for scheduling decisions, worker slot
events and session lifecycle events.
"""

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any


@dataclass
class SchedulerLogEntry:
    """Log entry for one scheduling decision."""

    timestamp: str  # ISO 8601
    session_id: str
    decision: str  # "assigned", "no_work", "at_capacity", "repo_skipped"
    strategy: str = ""

    repo: str | None = None
    issue_number: int | None = None
    reason: str = ""

    active_workers: int = 0
    max_workers: int = 0

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SchedulerLogEntry":
        """Create from dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class WorkerLogEntry:
    """Log entry for worker slot events."""

    timestamp: str  # ISO 8601
    session_id: str
    worker_id: int
    event_type: str  # "claim", "lock_contention", "complete", "fail", "heartbeat", "stale_cleared", "abandoned"

    repo: str | None = None
    issue_number: int | None = None
    lock_id: str | None = None

    # Outcome (populated on "complete" / "fail")
    cost_usd: float = 0.0
    duration_seconds: float = 0.0
    error: str | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkerLogEntry":
        """Create from dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class SessionLogEntry:
    """Log entry for session lifecycle events."""

    timestamp: str  # ISO 8601
    session_id: str
    event_type: str  # "start", "end", "pause", "resume", "stop", "error"

    workspace: str = ""
    strategy: str = ""
    max_workers: int = 0

    # Session end metrics (populated on "end" event)
    tasks_completed: int = 0
    tasks_failed: int = 0
    total_cost_usd: float = 0.0

    # Error info (populated on "error" event)
    error: str | None = None
    error_type: str | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionLogEntry":
        """Create from dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


def now_iso() -> str:
    """Get current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()

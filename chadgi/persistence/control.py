"""
Pause and stop requests.

Both are plain files in the state directory that workers check between
tasks: pause.lock ({paused_at, reason, resume_at}) and stop.lock. A pause
with a resume_at in the past no longer counts.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from chadgi.exceptions import ConfigError
from chadgi.persistence.fileops import atomic_write_json, read_json

PAUSE_FILENAME = "pause.lock"
STOP_FILENAME = "stop.lock"

_DURATION_PART = re.compile(r"(\d+)\s*([hms])", re.IGNORECASE)


def parse_duration(text: str) -> timedelta:
    """
    Parse durations like "30m", "2h" or "1h30m".

    Raises:
        ConfigError: If nothing usable is found
    """
    seconds = 0
    for amount, unit in _DURATION_PART.findall(text):
        seconds += int(amount) * {"h": 3600, "m": 60, "s": 1}[unit.lower()]
    if seconds <= 0:
        raise ConfigError(f"Invalid duration '{text}'", {"examples": ["30m", "2h", "1h30m"]})
    return timedelta(seconds=seconds)


@dataclass
class PauseState:
    paused_at: str
    reason: str | None = None
    resume_at: str | None = None

    def expired(self, now: datetime | None = None) -> bool:
        if not self.resume_at:
            return False
        now = now or datetime.now(timezone.utc)
        resume = datetime.fromisoformat(self.resume_at.replace("Z", "+00:00"))
        if resume.tzinfo is None:
            resume = resume.replace(tzinfo=timezone.utc)
        return now >= resume

    def to_dict(self) -> dict[str, Any]:
        return {"paused_at": self.paused_at, "reason": self.reason, "resume_at": self.resume_at}


class ControlSignals:
    """Reads and writes the pause/stop request files of one state directory."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    @property
    def pause_path(self) -> Path:
        return self.state_dir / PAUSE_FILENAME

    @property
    def stop_path(self) -> Path:
        return self.state_dir / STOP_FILENAME

    def pause(self, reason: str | None = None, duration: timedelta | None = None) -> PauseState:
        now = datetime.now(timezone.utc)
        state = PauseState(
            paused_at=now.isoformat(),
            reason=reason,
            resume_at=(now + duration).isoformat() if duration else None,
        )
        atomic_write_json(self.pause_path, state.to_dict())
        return state

    def resume(self) -> bool:
        """Remove a pause request. Returns False if none was set."""
        if not self.pause_path.exists():
            return False
        self.pause_path.unlink(missing_ok=True)
        return True

    def pause_state(self) -> PauseState | None:
        """The active pause, or None if not paused or the pause has expired."""
        if not self.pause_path.exists():
            return None
        data = read_json(self.pause_path) or {}
        state = PauseState(
            paused_at=data.get("paused_at") or "",
            reason=data.get("reason"),
            resume_at=data.get("resume_at"),
        )
        try:
            if state.expired():
                return None
        except ValueError:
            pass
        return state

    def request_stop(self) -> None:
        atomic_write_json(self.stop_path, {"requested_at": datetime.now(timezone.utc).isoformat()})

    def clear_stop(self) -> None:
        self.stop_path.unlink(missing_ok=True)

    def stop_requested(self) -> bool:
        return self.stop_path.exists()

    def should_hold(self) -> str | None:
        """Reason new work must not start ("stopped" / "paused"), or None."""
        if self.stop_requested():
            return "stopped"
        if self.pause_state() is not None:
            return "paused"
        return None

"""
ChadGI Persistence Layer

File-based shared state: the progress snapshot, per-issue task locks and
pause/stop requests. Coordination between worker processes happens only
through these files.
"""

from chadgi.persistence.control import ControlSignals, PauseState, parse_duration
from chadgi.persistence.locks import (
    LockHeartbeat,
    LockInfo,
    TaskLock,
    TaskLockStore,
    generate_session_id,
    is_process_running,
)
from chadgi.persistence.progress import ProgressStateStore

__all__ = [
    "ControlSignals",
    "PauseState",
    "parse_duration",
    "LockHeartbeat",
    "LockInfo",
    "TaskLock",
    "TaskLockStore",
    "generate_session_id",
    "is_process_running",
    "ProgressStateStore",
]

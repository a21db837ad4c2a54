"""
ChadGI Orchestrator

Task distribution across repositories and worker slots:
dependency resolution, priority classification, queue building,
repository scheduling and worker coordination.
"""

from chadgi.orchestrator.coordinator import (
    Claim,
    WorkerCoordinator,
    begin_session,
    clear_stale_locks,
    default_lock_stores,
)
from chadgi.orchestrator.dependencies import (
    DependencyResolver,
    DependencyState,
    DependencyStatus,
    parse_dependencies,
)
from chadgi.orchestrator.priority import PriorityClassifier
from chadgi.orchestrator.queue import CombinedQueue, QueueAggregator, Task, WorkspaceQueue
from chadgi.orchestrator.scheduler import Assignment, RepoScheduler

__all__ = [
    "Claim",
    "WorkerCoordinator",
    "begin_session",
    "clear_stale_locks",
    "default_lock_stores",
    "DependencyResolver",
    "DependencyState",
    "DependencyStatus",
    "parse_dependencies",
    "PriorityClassifier",
    "CombinedQueue",
    "QueueAggregator",
    "Task",
    "WorkspaceQueue",
    "Assignment",
    "RepoScheduler",
]

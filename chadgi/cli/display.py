"""
ChadGI CLI - Rich rendering

Tables and panels for queue, worker and lock listings.
"""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from chadgi.config import WorkspaceConfig, validate_repo_path
from chadgi.orchestrator.queue import Task
from chadgi.persistence.control import PauseState
from chadgi.persistence.locks import LockInfo
from chadgi.state import ProgressSnapshot, WorkerStatus

console = Console()

_PRIORITY_STYLES = {"critical": "bold red", "high": "yellow", "normal": "white", "low": "dim"}
_STATUS_STYLES = {
    WorkerStatus.IDLE: "dim",
    WorkerStatus.IN_PROGRESS: "cyan",
    WorkerStatus.COMPLETED: "green",
    WorkerStatus.FAILED: "red",
}


def format_age(seconds: float) -> str:
    """Compact age like 45s, 12m, 3h05m."""
    if seconds == float("inf"):
        return "?"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h{(seconds % 3600) // 60:02d}m"


def queue_table(tasks: list[Task], title: str, show_repo: bool = False) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("#", style="cyan", justify="right")
    if show_repo:
        table.add_column("Repo", style="green")
    table.add_column("Title")
    table.add_column("Priority")
    table.add_column("Category", style="dim")
    table.add_column("Dependencies")

    for task in tasks:
        priority = task.priority_name or "-"
        style = _PRIORITY_STYLES.get(priority, "white")
        if task.is_blocked:
            blocking = ", ".join(f"#{n}" for n in task.blocking_issues) or "unknown"
            deps = f"[red]blocked by {blocking}[/red]"
        elif task.dependencies:
            deps = "[green]resolved[/green]"
        else:
            deps = "[dim]-[/dim]"

        row = [str(task.number)]
        if show_repo:
            row.append(task.repo or "-")
        row.extend([task.title, f"[{style}]{priority}[/{style}]", task.category or "-", deps])
        table.add_row(*row)
    return table


def workers_table(snapshot: ProgressSnapshot) -> Table:
    table = Table(title="Workers", show_header=True, header_style="bold")
    table.add_column("Slot", justify="right")
    table.add_column("Status")
    table.add_column("Repo", style="green")
    table.add_column("Task")
    table.add_column("Cost", justify="right")
    table.add_column("Last result", style="dim")

    for slot in snapshot.workers:
        style = _STATUS_STYLES.get(slot.status, "white")
        task = f"#{slot.task.id} {slot.task.title}" if slot.task else "-"
        last = "-"
        if slot.last_status and slot.last_task:
            last = f"{slot.last_status} #{slot.last_task.id}"
            if slot.error:
                last += f": {slot.error[:60]}"
        table.add_row(
            str(slot.worker_id),
            f"[{style}]{slot.status.value}[/{style}]",
            slot.repo_name or "-",
            task,
            f"${slot.cost_usd:.2f}",
            last,
        )
    return table


def locks_table(locks: list[LockInfo]) -> Table:
    table = Table(title="Task locks", show_header=True, header_style="bold")
    table.add_column("Issue", style="cyan", justify="right")
    table.add_column("Repo", style="green")
    table.add_column("Worker", justify="right")
    table.add_column("Session", style="dim")
    table.add_column("Held", justify="right")
    table.add_column("Heartbeat", justify="right")
    table.add_column("State")

    for info in locks:
        lock = info.lock
        if info.corrupt:
            state = "[red]unreadable[/red]"
        elif info.is_stale:
            state = "[red]stale[/red]"
        else:
            state = "[green]active[/green]"
        if info.process_alive is False:
            state += " [yellow](process gone)[/yellow]"
        table.add_row(
            f"#{lock.issue_number}",
            lock.repo_name or "-",
            str(lock.worker_id) if lock.worker_id is not None else "-",
            lock.session_id[:24],
            format_age(info.locked_seconds),
            format_age(info.heartbeat_age_seconds),
            state,
        )
    return table


def show_session(snapshot: ProgressSnapshot, pause: PauseState | None, stop_requested: bool) -> None:
    session = snapshot.session
    lines = [
        f"[bold]Status:[/bold] {snapshot.status}",
        f"[bold]Session:[/bold] {session.session_id or '-'} (started {session.started_at[:19]})",
        f"[bold]Tasks:[/bold] {session.tasks_completed} completed, {session.tasks_failed} failed",
        f"[bold]Cost:[/bold] ${session.total_cost_usd:.2f}",
    ]
    if snapshot.parallel_mode:
        lines.append(f"[bold]Workers:[/bold] {session.active_workers}/{session.max_workers} active")
    if pause:
        detail = f" - {pause.reason}" if pause.reason else ""
        until = f" until {pause.resume_at[:19]}" if pause.resume_at else ""
        lines.append(f"[yellow]Paused{until}{detail}[/yellow]")
    if stop_requested:
        lines.append("[red]Stop requested - workers exit after their current task[/red]")
    console.print(Panel("\n".join(lines), title="ChadGI", border_style="blue"))


def repos_table(workspace: WorkspaceConfig) -> Table:
    table = Table(title=f"Workspace: {workspace.name} ({workspace.strategy.value})", show_header=True, header_style="bold")
    table.add_column("Priority", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Path", style="dim")
    table.add_column("Enabled")
    table.add_column("Check")

    for entry in sorted(workspace.repos.values(), key=lambda e: e.sort_key()):
        problem = validate_repo_path(entry.path)
        table.add_row(
            str(entry.priority),
            entry.name,
            entry.path,
            "[green]yes[/green]" if entry.enabled else "[dim]no[/dim]",
            "[green]ok[/green]" if problem is None else f"[red]{problem}[/red]",
        )
    return table

"""
ChadGI CLI - Typer Commands

CLI entry points for the queue, workspaces, worker sessions and
lock/pause maintenance.

Architecture:
  chadgi start  ->  N x `chadgi worker` processes
                        |  scheduler -> task lock -> agent -> release
                        v
        .chadgi/chadgi-progress.json  +  <repo>/.chadgi/locks/
"""

import json
import logging
import os
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from chadgi.cli.display import (
    format_age,
    locks_table,
    queue_table,
    repos_table,
    show_session,
    workers_table,
)
from chadgi.config import (
    ProjectConfig,
    RepoEntry,
    SelectionStrategy,
    WorkspaceConfig,
    get_workspace_config_path,
    load_project_config,
    load_workspace_config,
    project_config_path,
    save_workspace_config,
    single_repo_workspace,
    validate_repo_path,
)
from chadgi.exceptions import ChadGIError, ConfigError
from chadgi.executor import ProjectCommandExecutor
from chadgi.integrations.board import GitHubBoard
from chadgi.logging import SessionLogEntry, now_iso, session_logger, set_session_id
from chadgi.orchestrator.coordinator import WorkerCoordinator, begin_session, clear_stale_locks
from chadgi.orchestrator.priority import PriorityClassifier
from chadgi.orchestrator.queue import WorkspaceQueue
from chadgi.orchestrator.scheduler import RepoScheduler
from chadgi.persistence.control import ControlSignals, parse_duration
from chadgi.persistence.locks import (
    DEFAULT_LOCK_TIMEOUT_MINUTES,
    HEARTBEAT_INTERVAL_SECONDS,
    TaskLockStore,
    generate_session_id,
)
from chadgi.persistence.progress import ProgressStateStore

logger = logging.getLogger(__name__)
console = Console()

app = typer.Typer(
    name="chadgi",
    help="Autonomous task worker - feeds ready GitHub project issues to a coding agent",
    add_completion=False,
    no_args_is_help=True,
)
queue_app = typer.Typer(help="Show and manage the ready queue", invoke_without_command=True)
workspace_app = typer.Typer(help="Manage multi-repository workspaces", no_args_is_help=True)
app.add_typer(queue_app, name="queue")
app.add_typer(workspace_app, name="workspace")


@dataclass
class RunContext:
    """Where the CLI is running: one repository, or a workspace of several."""

    root: Path
    workspace: WorkspaceConfig
    workspace_mode: bool
    project: ProjectConfig | None = None
    _lock_stores: dict[str, TaskLockStore] = field(default_factory=dict)

    @property
    def state_dir(self) -> Path:
        return self.root / ".chadgi"

    @property
    def control(self) -> ControlSignals:
        return ControlSignals(self.state_dir)

    @property
    def heartbeat_interval(self) -> float:
        return self.project.heartbeat_interval_seconds if self.project else HEARTBEAT_INTERVAL_SECONDS

    @property
    def branch_prefix(self) -> str:
        return self.project.branch_prefix if self.project else "feature/issue-"

    def lock_store_for(self, entry: RepoEntry) -> TaskLockStore:
        """Lock store of a repository, using that repository's lock timeout."""
        if entry.name not in self._lock_stores:
            threshold = DEFAULT_LOCK_TIMEOUT_MINUTES * 60
            if self.project is not None:
                threshold = self.project.stale_threshold_seconds
            else:
                try:
                    threshold = load_project_config(entry.path).stale_threshold_seconds
                except ConfigError:
                    pass
            self._lock_stores[entry.name] = TaskLockStore(entry.state_dir, stale_threshold_seconds=threshold)
        return self._lock_stores[entry.name]

    def progress(self) -> ProgressStateStore:
        stores = [self.lock_store_for(entry) for entry in sorted(self.workspace.repos.values(), key=RepoEntry.sort_key)]
        return ProgressStateStore(self.state_dir, lock_stores=stores)


def load_context(use_workspace: bool = False, root: Path | None = None) -> RunContext:
    """
    Resolve the run context for the current directory.

    A directory with only a workspace.yaml runs in workspace mode; one with
    a chadgi-config.yaml runs single-repository unless --workspace is given.

    Raises:
        ConfigError: If neither config can be loaded
    """
    root = Path(root or os.getcwd()).resolve()
    workspace_path = get_workspace_config_path(root)
    if use_workspace or (workspace_path.exists() and not project_config_path(root).exists()):
        return RunContext(root=root, workspace=load_workspace_config(workspace_path), workspace_mode=True)

    project = load_project_config(root)
    return RunContext(
        root=root,
        workspace=single_repo_workspace(root, project),
        workspace_mode=False,
        project=project,
    )


def _fail(error: Exception) -> typer.Exit:
    console.print(f"[bold red]Error:[/bold red] {error}")
    return typer.Exit(1)


def _resolve_repo(run: RunContext, name: str | None) -> tuple[RepoEntry, ProjectConfig]:
    if not run.workspace_mode:
        entry = next(iter(run.workspace.repos.values()))
        return entry, run.project
    if name is None:
        if len(run.workspace.repos) != 1:
            raise ConfigError("Specify the repository with --repo", {"available": sorted(run.workspace.repos)})
        name = next(iter(run.workspace.repos))
    entry = run.workspace.get_repo(name)
    return entry, load_project_config(entry.path)


# Queue


@queue_app.callback(invoke_without_command=True)
def queue(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print the queue as JSON"),
    limit: int = typer.Option(None, "--limit", "-n", help="Show at most N tasks"),
    no_deps: bool = typer.Option(False, "--no-deps", help="Skip dependency checks (faster)"),
    workspace: bool = typer.Option(False, "--workspace", "-w", help="Use the workspace config"),
) -> None:
    """Show the ready queue in priority order."""
    if ctx.invoked_subcommand is not None:
        return

    try:
        run = load_context(workspace)
        combined = WorkspaceQueue(run.workspace).combined(limit=limit, check_dependencies=not no_deps)
    except ChadGIError as e:
        raise _fail(e)

    if as_json:
        typer.echo(json.dumps(combined.to_dict(), indent=2))
        return

    title = f"Ready queue - {run.workspace.name}"
    if not combined.tasks:
        console.print(f"[dim]No ready tasks in {run.workspace.name}[/dim]")
    else:
        console.print(queue_table(combined.tasks, title, show_repo=run.workspace_mode))
    for repo_name, reason in combined.skipped.items():
        console.print(f"[yellow]Skipped {repo_name}:[/yellow] {reason}")


@queue_app.command("skip")
def queue_skip(
    issue: int = typer.Argument(..., help="Issue number"),
    repo: str = typer.Option(None, "--repo", "-r", help="Repository name (workspace mode)"),
    workspace: bool = typer.Option(False, "--workspace", "-w", help="Use the workspace config"),
) -> None:
    """Move a ready issue to the backlog column."""
    try:
        run = load_context(workspace)
        _, project = _resolve_repo(run, repo)
    except ChadGIError as e:
        raise _fail(e)

    result = GitHubBoard.from_config(project).move_to_backlog(issue, project.github.repo)
    if not result.ok:
        console.print(f"[bold red]Could not skip #{issue}:[/bold red] {result.message}")
        raise typer.Exit(1)
    console.print(f"[green]Moved #{issue} to {result.value}[/green]")


@queue_app.command("promote")
def queue_promote(
    issue: int = typer.Argument(..., help="Issue number"),
    repo: str = typer.Option(None, "--repo", "-r", help="Repository name (workspace mode)"),
    workspace: bool = typer.Option(False, "--workspace", "-w", help="Use the workspace config"),
) -> None:
    """Label a ready issue as critical so it sorts first on the next pass."""
    try:
        run = load_context(workspace)
        _, project = _resolve_repo(run, repo)
    except ChadGIError as e:
        raise _fail(e)

    if not project.priority_enabled:
        console.print("[yellow]Priority mode is off - enable priority.enabled in chadgi-config.yaml[/yellow]")
        raise typer.Exit(1)

    label = PriorityClassifier(project.priority_labels).first_label("critical")
    if label is None:
        console.print("[bold red]No critical priority label configured[/bold red]")
        raise typer.Exit(1)

    board = GitHubBoard.from_config(project)
    found = board.find_ready_item(issue, project.github.repo)
    if not found.ok:
        console.print(f"[bold red]Could not promote #{issue}:[/bold red] {found.message}")
        raise typer.Exit(1)

    result = board.add_label(issue, label, project.github.repo)
    if not result.ok:
        console.print(f"[bold red]Could not promote #{issue}:[/bold red] {result.message}")
        raise typer.Exit(1)
    console.print(f"[green]Added '{label}' to #{issue}[/green]")
    console.print("[dim]Tasks already running are not affected.[/dim]")


# Workspace


def _workspace_path() -> Path:
    return get_workspace_config_path(Path.cwd())


@workspace_app.command("init")
def workspace_init(
    name: str = typer.Option(None, "--name", help="Workspace name (default: directory name)"),
    strategy: str = typer.Option("round-robin", "--strategy", "-s", help="round-robin, priority or sequential"),
    max_parallel: int = typer.Option(1, "--max-parallel", help="Concurrent worker limit"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing workspace"),
) -> None:
    """Create .chadgi/workspace.yaml in the current directory."""
    path = _workspace_path()
    if path.exists() and not force:
        console.print(f"[yellow]Workspace already exists:[/yellow] {path} (use --force to overwrite)")
        raise typer.Exit(1)

    try:
        if max_parallel < 1:
            raise ConfigError("--max-parallel must be at least 1")
        config = WorkspaceConfig(
            name=name or Path.cwd().name,
            strategy=SelectionStrategy.parse(strategy),
            max_parallel_tasks=max_parallel,
        )
        save_workspace_config(path, config)
    except ChadGIError as e:
        raise _fail(e)
    console.print(f"[green]Created workspace '{config.name}'[/green] ({config.strategy.value})")


@workspace_app.command("add")
def workspace_add(
    path: str = typer.Argument(..., help="Path to a ChadGI-initialized repository"),
    name: str = typer.Option(None, "--name", help="Repository name (default: directory name)"),
    priority: int = typer.Option(None, "--priority", "-p", help="Lower runs first"),
    disabled: bool = typer.Option(False, "--disabled", help="Add without scheduling it"),
) -> None:
    """Register a repository in the workspace."""
    repo_path = Path(path).expanduser().resolve()
    problem = validate_repo_path(repo_path)
    if problem:
        console.print(f"[bold red]Error:[/bold red] {problem}")
        raise typer.Exit(1)

    try:
        workspace = load_workspace_config(_workspace_path())
        project = load_project_config(repo_path)
        entry = RepoEntry(
            name=name or repo_path.name,
            path=str(repo_path),
            remote=f"https://github.com/{project.github.repo}",
            priority=priority if priority is not None else len(workspace.repos) + 1,
            enabled=not disabled,
        )
        replaced = workspace.add_repo(entry)
        save_workspace_config(_workspace_path(), workspace)
    except ChadGIError as e:
        raise _fail(e)

    verb = "Updated" if replaced else "Added"
    console.print(f"[green]{verb} '{entry.name}'[/green] (priority {entry.priority})")


@workspace_app.command("remove")
def workspace_remove(name: str = typer.Argument(..., help="Repository name or path")) -> None:
    """Remove a repository from the workspace."""
    try:
        workspace = load_workspace_config(_workspace_path())
        entry = workspace.remove_repo(name)
        save_workspace_config(_workspace_path(), workspace)
    except ChadGIError as e:
        raise _fail(e)
    console.print(f"[green]Removed '{entry.name}'[/green]")


@workspace_app.command("list")
def workspace_list() -> None:
    """List workspace repositories."""
    try:
        workspace = load_workspace_config(_workspace_path())
    except ChadGIError as e:
        raise _fail(e)

    if not workspace.repos:
        console.print("  [dim]No repositories yet.[/dim] Use [cyan]chadgi workspace add[/cyan].")
        return
    console.print(repos_table(workspace))


@workspace_app.command("status")
def workspace_status(
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
    limit: int = typer.Option(None, "--limit", "-n", help="Show at most N tasks"),
) -> None:
    """Show repositories and the combined ready queue."""
    try:
        workspace = load_workspace_config(_workspace_path())
        combined = WorkspaceQueue(workspace).combined(limit=limit)
    except ChadGIError as e:
        raise _fail(e)

    if as_json:
        typer.echo(json.dumps({"workspace": workspace.to_dict(), "queue": combined.to_dict()}, indent=2))
        return

    console.print(repos_table(workspace))
    if combined.tasks:
        console.print(queue_table(combined.tasks, "Combined queue", show_repo=True))
    else:
        console.print("[dim]No ready tasks[/dim]")
    for repo_name, reason in combined.skipped.items():
        console.print(f"[yellow]Skipped {repo_name}:[/yellow] {reason}")


# Session state


@app.command()
def status(
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
    workspace: bool = typer.Option(False, "--workspace", "-w", help="Use the workspace config"),
) -> None:
    """Show session progress, worker slots and task locks."""
    try:
        run = load_context(workspace)
        progress = run.progress()
        snapshot = progress.load()
        locks = progress.task_locks()
    except ChadGIError as e:
        raise _fail(e)

    control = run.control
    pause = control.pause_state()
    approvals = progress.pending_approval()

    if as_json:
        data = {
            "progress": snapshot.to_dict() if snapshot else None,
            "paused": pause.to_dict() if pause else None,
            "stop_requested": control.stop_requested(),
            "task_locks": [info.to_dict() for info in locks],
            "pending_approval": approvals,
        }
        typer.echo(json.dumps(data, indent=2, default=str))
        return

    if snapshot is None:
        console.print("[dim]No session has run here yet.[/dim]")
    else:
        show_session(snapshot, pause, control.stop_requested())
        if snapshot.workers:
            console.print(workers_table(snapshot))

    if locks:
        console.print(locks_table(locks))
        if any(info.is_stale for info in locks):
            console.print("[yellow]Stale locks found.[/yellow] Run [cyan]chadgi unlock --stale[/cyan] to clear them.")

    for approval in approvals:
        console.print(
            f"[yellow]Awaiting approval:[/yellow] #{approval.get('issue_number')} "
            f"{approval.get('issue_title', '')} ({approval.get('phase', '')})"
        )


@app.command()
def unlock(
    issue: int = typer.Argument(None, help="Only clear this issue's lock (if stale)"),
    stale: bool = typer.Option(False, "--stale", help="Clear all stale locks"),
    list_only: bool = typer.Option(False, "--list", "-l", help="List locks without changing anything"),
    workspace: bool = typer.Option(False, "--workspace", "-w", help="Use the workspace config"),
) -> None:
    """List task locks or clear stale ones. Active locks are never removed."""
    try:
        run = load_context(workspace)
        progress = run.progress()
        locks = progress.task_locks()
    except ChadGIError as e:
        raise _fail(e)

    if list_only or (issue is None and not stale):
        if not locks:
            console.print("[green]No task locks held.[/green]")
            return
        console.print(locks_table(locks))
        return

    if issue is not None:
        held = [info for info in locks if info.lock.issue_number == issue]
        if not held:
            console.print(f"[dim]Issue #{issue} is not locked.[/dim]")
            return
        active = [info for info in held if not info.is_stale]
        if active:
            age = format_age(active[0].heartbeat_age_seconds)
            console.print(
                f"[yellow]Lock for #{issue} is active[/yellow] (heartbeat {age} ago); "
                "it will be released when the worker finishes."
            )
            raise typer.Exit(1)

    try:
        removed = clear_stale_locks(run.workspace, progress, run.lock_store_for, issue_number=issue)
    except ChadGIError as e:
        raise _fail(e)

    if not removed:
        console.print("[green]No stale locks to clear.[/green]")
        return
    for lock in removed:
        console.print(f"[green]Cleared stale lock[/green] #{lock.issue_number} ({lock.repo_name or '-'})")


@app.command()
def pause(
    duration: str = typer.Option(None, "--for", help="Auto-resume after e.g. 30m, 2h, 1h30m"),
    reason: str = typer.Option(None, "--reason", help="Shown in status"),
    workspace: bool = typer.Option(False, "--workspace", "-w", help="Use the workspace config"),
) -> None:
    """Stop starting new tasks. Running tasks finish normally."""
    try:
        run = load_context(workspace)
        existing = run.control.pause_state()
        if existing is not None:
            console.print(f"[yellow]Already paused[/yellow] since {existing.paused_at[:19]}")
            return
        state = run.control.pause(reason=reason, duration=parse_duration(duration) if duration else None)
    except ChadGIError as e:
        raise _fail(e)

    session_logger.info(
        SessionLogEntry(timestamp=now_iso(), session_id="cli", event_type="pause", workspace=run.workspace.name).to_json()
    )
    until = f" until {state.resume_at[:19]}" if state.resume_at else ""
    console.print(f"[yellow]Paused{until}.[/yellow] Run [cyan]chadgi resume[/cyan] to continue.")


@app.command()
def resume(
    workspace: bool = typer.Option(False, "--workspace", "-w", help="Use the workspace config"),
) -> None:
    """Allow workers to start new tasks again."""
    try:
        run = load_context(workspace)
    except ChadGIError as e:
        raise _fail(e)

    if not run.control.resume():
        console.print("[dim]Not paused.[/dim]")
        return
    session_logger.info(
        SessionLogEntry(timestamp=now_iso(), session_id="cli", event_type="resume", workspace=run.workspace.name).to_json()
    )
    console.print("[green]Resumed.[/green]")


@app.command()
def stop(
    workspace: bool = typer.Option(False, "--workspace", "-w", help="Use the workspace config"),
) -> None:
    """Ask workers to exit after their current task."""
    try:
        run = load_context(workspace)
    except ChadGIError as e:
        raise _fail(e)

    run.control.request_stop()
    session_logger.info(
        SessionLogEntry(timestamp=now_iso(), session_id="cli", event_type="stop", workspace=run.workspace.name).to_json()
    )
    console.print("[yellow]Stop requested.[/yellow] Workers exit once their current task is done.")


# Workers


def _validate_repos(run: RunContext) -> None:
    """Fail on broken project configs; warn about missing checkouts."""
    for entry in run.workspace.enabled_repos():
        problem = validate_repo_path(entry.path)
        if problem:
            console.print(f"[yellow]Warning:[/yellow] {entry.name}: {problem} (skipped until fixed)")
            continue
        load_project_config(entry.path)


@app.command()
def start(
    workspace: bool = typer.Option(False, "--workspace", "-w", help="Use the workspace config"),
    workers: int = typer.Option(None, "--workers", "-j", help="Worker processes (default: max_parallel_tasks)"),
    once: bool = typer.Option(False, "--once", help="Each worker runs at most one task"),
    poll_interval: float = typer.Option(30.0, "--poll-interval", help="Seconds between empty rounds"),
) -> None:
    """Start a session: spawn worker processes and wait for them."""
    try:
        run = load_context(workspace)
        max_workers = workers if workers is not None else run.workspace.max_parallel_tasks
        if max_workers < 1:
            raise ConfigError("--workers must be at least 1")
        _validate_repos(run)

        session_id = generate_session_id()
        set_session_id(session_id)
        progress = run.progress()
        begin_session(progress, session_id, max_workers, run.lock_store_for)
        run.control.clear_stop()
    except ChadGIError as e:
        raise _fail(e)

    console.print(
        Panel.fit(
            f"[bold]Session:[/bold] {session_id}\n"
            f"[bold]Workspace:[/bold] {run.workspace.name} ({run.workspace.strategy.value})\n"
            f"[bold]Workers:[/bold] {max_workers}",
            title="ChadGI",
            border_style="blue",
        )
    )

    base = [sys.executable, "-m", "chadgi", "worker", "--session", session_id, "--max-parallel", str(max_workers)]
    base += ["--poll-interval", str(poll_interval)]
    if run.workspace_mode:
        base.append("--workspace")
    if once:
        base.append("--once")

    # Own process group: Ctrl-C reaches only this process, which asks the
    # workers to stop through stop.lock.
    processes = [
        subprocess.Popen(base + ["--id", str(i)], cwd=run.root, start_new_session=True)
        for i in range(1, max_workers + 1)
    ]
    try:
        codes = [p.wait() for p in processes]
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping - workers finish their current task first...[/yellow]")
        run.control.request_stop()
        codes = [p.wait() for p in processes]

    snapshot = progress.load()
    if snapshot is not None:
        session = snapshot.session
        session_logger.info(
            SessionLogEntry(
                timestamp=now_iso(),
                session_id=session_id,
                event_type="end",
                workspace=run.workspace.name,
                strategy=run.workspace.strategy.value,
                max_workers=max_workers,
                tasks_completed=session.tasks_completed,
                tasks_failed=session.tasks_failed,
                total_cost_usd=session.total_cost_usd,
            ).to_json()
        )
        console.print(
            f"[bold]Done:[/bold] {session.tasks_completed} completed, {session.tasks_failed} failed, "
            f"${session.total_cost_usd:.2f}"
        )

    if any(code != 0 for code in codes):
        raise typer.Exit(1)


@app.command(hidden=True)
def worker(
    worker_id: int = typer.Option(..., "--id", help="Slot number"),
    session: str = typer.Option(..., "--session", help="Session id"),
    workspace: bool = typer.Option(False, "--workspace", "-w", help="Use the workspace config"),
    once: bool = typer.Option(False, "--once", help="Run at most one task"),
    max_parallel: int = typer.Option(None, "--max-parallel", help="Override max_parallel_tasks"),
    poll_interval: float = typer.Option(30.0, "--poll-interval", help="Seconds between empty rounds"),
) -> None:
    """Run scheduling rounds for one worker slot."""
    set_session_id(session)
    try:
        run = load_context(workspace)
        if max_parallel is not None:
            run.workspace.max_parallel_tasks = max_parallel

        queue_view = WorkspaceQueue(run.workspace)
        scheduler = RepoScheduler(
            run.workspace,
            queue_source=queue_view.repo_queue,
            is_locked=lambda entry, number: run.lock_store_for(entry).is_locked(number),
        )
        coordinator = WorkerCoordinator(
            worker_id=worker_id,
            session_id=session,
            workspace=run.workspace,
            progress=run.progress(),
            scheduler=scheduler,
            control=run.control,
            lock_store_for=run.lock_store_for,
            heartbeat_interval=run.heartbeat_interval,
            branch_prefix=run.branch_prefix,
        )
        executed = coordinator.run(ProjectCommandExecutor(), once=once, poll_interval=poll_interval)
    except ChadGIError as e:
        raise _fail(e)
    except KeyboardInterrupt:
        raise typer.Exit(130)

    logger.info(f"Worker {worker_id} exiting after {executed} task(s)")


def run() -> None:
    """Entry point wrapper that invokes the Typer app."""
    app()


if __name__ == "__main__":
    run()

"""
ChadGI CLI components.

- typer_commands.py: CLI entry points (queue, workspace, status, start, ...)
- display.py: Rich tables and panels
"""

from chadgi.cli.typer_commands import RunContext, app, load_context, run

__all__ = [
    "app",
    "run",
    "RunContext",
    "load_context",
]

"""procbox CLI application."""

from __future__ import annotations

import subprocess
import sys
from datetime import timedelta
from pathlib import Path
from typing import List, NoReturn, Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table
from rich.text import Text

from procbox import __version__
from procbox.config import (
    ConfigError,
    create_default_config,
    find_project_root,
    load_project_config,
    project_name,
)
from procbox.core.log_utils import format_bytes, parse_duration
from procbox.core.supervisor import Supervisor
from procbox.environment import build_env, env_to_dict, resolve_workdir
from procbox.errors import ProcboxError, SUPERVISOR_EXIT_CODE
from procbox.models import ProcessStatus, ProjectConfig

# Initialize
app = typer.Typer(
    name="procbox",
    help="procbox - run and supervise project daemons",
    no_args_is_help=True,
)
console = Console()

STATUS_STYLES = {
    ProcessStatus.RUNNING: "green",
    ProcessStatus.STOPPED: "yellow",
    ProcessStatus.CRASHED: "red",
}


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else "WARNING"

    # Console logging
    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )


def format_duration(delta: timedelta) -> str:
    """Format an uptime, e.g. 45s, 3m12s, 2h5m, 1d4h."""
    seconds = max(int(delta.total_seconds()), 0)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m{seconds % 60}s"
    if seconds < 86400:
        return f"{seconds // 3600}h{(seconds % 3600) // 60}m"
    return f"{seconds // 86400}d{(seconds % 86400) // 3600}h"


def _load_project() -> tuple[Path, ProjectConfig]:
    root = find_project_root()
    try:
        return root, load_project_config(root)
    except ConfigError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(SUPERVISOR_EXIT_CODE)


def _supervisor() -> tuple[Supervisor, Path, ProjectConfig]:
    root, config = _load_project()
    return Supervisor(root, config=config.supervisor), root, config


def _fail(error: ProcboxError) -> NoReturn:
    console.print(f"[red]✗ {error}[/red]")
    raise typer.Exit(error.exit_code)


# ============================================================================
# Lifecycle Commands
# ============================================================================


@app.command("run")
def run(
    command: Optional[List[str]] = typer.Argument(None, help="Command to run (default: launch.cmd)"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Daemon name (default: project name)"),
    detach: bool = typer.Option(False, "--detach", "-d", help="Run as a background daemon"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run a command in the project, in the foreground or as a daemon."""
    setup_logging(verbose)
    supervisor, root, config = _supervisor()

    cmd = " ".join(command) if command else config.launch.cmd
    if not cmd:
        console.print("[red]✗ No command specified and no launch.cmd in procbox.yaml[/red]")
        raise typer.Exit(SUPERVISOR_EXIT_CODE)

    workdir = resolve_workdir(root, config.launch)
    env = build_env(config.launch)

    if not detach:
        try:
            result = subprocess.run(cmd, shell=True, cwd=str(workdir), env=env_to_dict(env))
        except OSError as e:
            console.print(f"[red]✗ Failed to run command: {e}[/red]")
            raise typer.Exit(SUPERVISOR_EXIT_CODE)
        except KeyboardInterrupt:
            raise typer.Exit(130)
        code = result.returncode
        # Killed by a signal: report it the way a shell does
        if code < 0:
            code = 128 - code
        raise typer.Exit(code)

    name = name or project_name(root)
    console.print(f"[blue]Starting daemon: {name}[/blue]")
    try:
        record = supervisor.start(name, cmd, workdir, env)
    except ProcboxError as e:
        _fail(e)

    console.print("[green]✓ Daemon started[/green]")
    console.print(f"  PID:     {record.pid}")
    console.print(f"  Name:    {record.name}")
    console.print(f"  Command: {record.command}", markup=False)
    console.print(f"  Log:     {record.log_file}", markup=False)
    console.print(f"\n  Use 'procbox logs {name}' to view output")
    console.print(f"  Use 'procbox stop {name}' to stop the daemon")


@app.command("stop")
def stop(
    name: Optional[str] = typer.Argument(None, help="Daemon name (default: project name)"),
    all_: bool = typer.Option(False, "--all", "-a", help="Stop all running daemons"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Stop a running daemon."""
    setup_logging(verbose)
    supervisor, root, _ = _supervisor()

    if all_:
        running = supervisor.list()
        if not running:
            console.print("[yellow]No running processes to stop[/yellow]")
            return

        console.print("[blue]Stopping all processes...[/blue]")
        report = supervisor.stop_all()
        for stopped in report.stopped:
            console.print(f"[green]✓ Stopped {stopped}[/green]")
        for failed, error in report.failed.items():
            console.print(f"[red]✗ Failed to stop {failed}: {error}[/red]")
        if not report.ok:
            raise typer.Exit(SUPERVISOR_EXIT_CODE)
        return

    name = name or project_name(root)
    try:
        record = supervisor.stop(name)
    except ProcboxError as e:
        _fail(e)
    console.print(f"[green]✓ Stopped {name} (PID {record.pid})[/green]")


@app.command("restart")
def restart(
    name: Optional[str] = typer.Argument(None, help="Daemon name (default: project name)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Restart a daemon with its recorded command."""
    setup_logging(verbose)
    supervisor, root, config = _supervisor()
    name = name or project_name(root)

    # Working directory and environment are recomputed, not taken from the old launch
    workdir = resolve_workdir(root, config.launch)
    env = build_env(config.launch)

    try:
        record = supervisor.restart(name, workdir, env)
    except ProcboxError as e:
        _fail(e)
    console.print(f"[green]✓ Process restarted (PID {record.pid})[/green]")


@app.command("rm")
def remove(
    name: str = typer.Argument(..., help="Daemon name"),
) -> None:
    """Remove a stopped daemon's record."""
    setup_logging()
    supervisor, _, _ = _supervisor()
    try:
        removed = supervisor.remove(name)
    except ProcboxError as e:
        _fail(e)
    if not removed:
        console.print(f"[yellow]Process '{name}' not found[/yellow]")
        raise typer.Exit(SUPERVISOR_EXIT_CODE)
    console.print(f"[green]✓ Removed {name}[/green]")


@app.command("adopt")
def adopt(
    name: str = typer.Argument(..., help="Name to track the process under"),
    pid: int = typer.Argument(..., help="PID of a running process"),
) -> None:
    """Track an already-running process (table recovery)."""
    setup_logging()
    supervisor, _, _ = _supervisor()
    try:
        record = supervisor.adopt(name, pid)
    except ProcboxError as e:
        _fail(e)
    console.print(f"[green]✓ Tracking PID {record.pid} as '{record.name}'[/green]")


# ============================================================================
# Inspection Commands
# ============================================================================


@app.command("ps")
def ps(
    all_: bool = typer.Option(False, "--all", "-a", help="Show stopped processes too"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only show process IDs"),
    system: bool = typer.Option(False, "--system", help="Scan the OS for this project's daemons"),
) -> None:
    """List the project's daemons."""
    setup_logging()
    supervisor, _, _ = _supervisor()

    if system:
        found = supervisor.system_processes()
        if not found:
            console.print("[yellow]No procbox processes found on the system[/yellow]")
            return
        table = Table(title="System processes")
        table.add_column("PID", justify="right")
        table.add_column("Name", style="cyan")
        table.add_column("Started")
        table.add_column("Command")
        for proc in found:
            table.add_row(
                str(proc.pid),
                proc.name or "-",
                proc.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                Text(proc.command),
            )
        console.print(table)
        return

    try:
        records = supervisor.list(include_stopped=all_)
    except ProcboxError as e:
        _fail(e)

    if not records:
        if not quiet:
            console.print(f"[yellow]No {'' if all_ else 'running '}processes[/yellow]")
        return

    if quiet:
        for record in records:
            typer.echo(record.pid)
        return

    table = Table(title="Processes")
    table.add_column("PID", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Uptime")
    table.add_column("Command")

    for record in records:
        style = STATUS_STYLES.get(record.status, "white")
        uptime = format_duration(record.uptime()) if record.is_running else "-"
        command = record.command
        if len(command) > 40:
            command = command[:37] + "..."
        table.add_row(
            str(record.pid),
            record.name,
            f"[{style}]{record.status.value}[/{style}]",
            uptime,
            Text(command),
        )

    console.print(table)


@app.command("logs")
def logs(
    name: Optional[str] = typer.Argument(None, help="Daemon name (default: project name)"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output"),
    lines: Optional[int] = typer.Option(None, "--lines", "-n", help="Number of lines to show"),
    list_: bool = typer.Option(False, "--list", help="List available log files"),
) -> None:
    """Show daemon logs."""
    setup_logging()
    supervisor, root, _ = _supervisor()

    if list_:
        names = supervisor.list_logs()
        if not names:
            console.print("[yellow]No log files found[/yellow]")
            return
        console.print("[blue]Available logs:[/blue]")
        for log_name in names:
            console.print(f"  • {log_name} ({format_bytes(supervisor.log_size(log_name))})")
        return

    name = name or project_name(root)

    try:
        if follow:
            console.print(f"[dim]Following logs for '{name}' (Ctrl+C to exit)...[/dim]")
            stream = supervisor.follow(name)
            try:
                for line in stream:
                    console.print(line, markup=False, highlight=False, soft_wrap=True)
            except KeyboardInterrupt:
                pass
            finally:
                stream.close()
            return

        for line in supervisor.logs(name, lines):
            console.print(line, markup=False, highlight=False, soft_wrap=True)
    except ProcboxError as e:
        _fail(e)


# ============================================================================
# Maintenance Commands
# ============================================================================


@app.command("clean")
def clean(
    logs_older_than: Optional[str] = typer.Option(
        None, "--logs-older-than", help="Remove logs older than this (e.g. 24h, 7d)"
    ),
    stop_running: bool = typer.Option(False, "--stop", help="Stop running daemons first"),
) -> None:
    """Prune old log files."""
    setup_logging()
    supervisor, _, _ = _supervisor()

    retention = logs_older_than or supervisor.config.log_retention
    try:
        max_age = parse_duration(retention)
    except ValueError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(SUPERVISOR_EXIT_CODE)

    if stop_running:
        report = supervisor.stop_all()
        for stopped in report.stopped:
            console.print(f"  Stopped: {stopped}")
        for failed, error in report.failed.items():
            console.print(f"[red]✗ Failed to stop {failed}: {error}[/red]")

    console.print(f"[blue]Cleaning logs older than {retention}...[/blue]")
    removed = supervisor.prune_logs(max_age)
    console.print(f"[green]✓ Removed {removed} log file(s)[/green]")


@app.command("init")
def init_config() -> None:
    """Initialize procbox in the current directory."""
    path = create_default_config(Path.cwd())
    console.print(f"[green]✓ Created configuration at {path}[/green]")


@app.command("version")
def version() -> None:
    """Show version."""
    console.print(f"procbox v{__version__}")


def main() -> None:
    """Entry point."""
    app()


if __name__ == "__main__":
    main()

"""CLI entry point for agentctl.

Commands:
- agentctl run: Run the supervisor daemon in the foreground
- agentctl status: Show whether a daemon is running
- agentctl sessions: List tracked sessions from persisted state
- agentctl locks: List directory locks
- agentctl fuses: List armed fuses
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from agentctl import __version__
from agentctl.core.adapters import load_entry_point_adapters
from agentctl.core.config import ConfigError, default_config_dir, load_config
from agentctl.core.models import LockType, utc_now
from agentctl.core.utils import is_process_alive
from agentctl.daemon.server import PID_FILE, Daemon, DaemonAlreadyRunning
from agentctl.daemon.session_tracker import filter_sessions
from agentctl.daemon.state import StateManager

console = Console()

STATUS_STYLES = {
    "running": "green",
    "idle": "cyan",
    "pending": "yellow",
    "stopped": "dim",
    "completed": "blue",
    "failed": "red",
    "error": "red",
}


def _config_dir(value: str | None) -> Path:
    return Path(value).expanduser() if value else default_config_dir()


config_dir_option = click.option(
    "--config-dir",
    "-d",
    envvar="AGENTCTL_DIR",
    help="State/config directory (default: ~/.agentctl)",
)


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """agentctl - supervisor for local AI coding-agent sessions.

    Tracks agent sessions, keeps two agents out of the same directory,
    and runs cleanup actions once a directory goes idle.
    """
    pass


@main.command()
@config_dir_option
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    help="Logging verbosity",
)
def run(config_dir: str | None, log_level: str) -> None:
    """Run the daemon in the foreground until interrupted."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )
    directory = _config_dir(config_dir)

    try:
        config = load_config(directory)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    adapters = load_entry_point_adapters()
    if not adapters:
        console.print("[yellow]No adapters installed; only locks and fuses are active.[/yellow]")

    daemon = Daemon(config, adapters, config_dir=directory)
    try:
        daemon.start()
    except DaemonAlreadyRunning as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    stop = threading.Event()

    def request_stop(signum, frame) -> None:
        logging.getLogger(__name__).info(f"Received {signal.Signals(signum).name}, shutting down")
        stop.set()

    signal.signal(signal.SIGTERM, request_stop)
    signal.signal(signal.SIGINT, request_stop)
    try:
        while not stop.wait(1.0):
            pass
    finally:
        daemon.shutdown()


@main.command()
@config_dir_option
def status(config_dir: str | None) -> None:
    """Show whether a daemon is running for the config directory."""
    directory = _config_dir(config_dir)
    pid_path = directory / PID_FILE
    try:
        pid = int(pid_path.read_text().strip())
    except (OSError, ValueError):
        console.print("[yellow]Daemon is not running[/yellow]")
        sys.exit(1)

    if not is_process_alive(pid):
        console.print(f"[yellow]Daemon is not running[/yellow] [dim](stale pid file: {pid})[/dim]")
        sys.exit(1)
    console.print(f"[green]Daemon running[/green] (pid {pid}, state in {directory})")


@main.command()
@config_dir_option
@click.option("--all", "-a", "show_all", is_flag=True, help="Include stopped sessions")
@click.option("--status", "-s", "status_filter", help="Only sessions with this status")
@click.option("--group", "-g", help="Only sessions launched in this group")
def sessions(
    config_dir: str | None, show_all: bool, status_filter: str | None, group: str | None
) -> None:
    """List sessions recorded in the daemon's state."""
    state = StateManager.load(_config_dir(config_dir))
    try:
        records = filter_sessions(
            state.get_sessions().values(), status=status_filter, all=show_all, group=group
        )
    except ValueError:
        console.print(f"[red]Error:[/red] Unknown status '{status_filter}'")
        sys.exit(1)

    if not records:
        console.print("[dim]No sessions[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Adapter")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Directory")
    table.add_column("Prompt", max_width=40)
    for record in records:
        style = STATUS_STYLES.get(record.status.value, "white")
        table.add_row(
            record.id[:12],
            record.adapter,
            f"[{style}]{record.status.value}[/{style}]",
            record.started_at.strftime("%Y-%m-%d %H:%M"),
            record.cwd or "-",
            (record.prompt or "").splitlines()[0] if record.prompt else "-",
        )
    console.print(table)


@main.command()
@config_dir_option
def locks(config_dir: str | None) -> None:
    """List directory locks."""
    state = StateManager.load(_config_dir(config_dir))
    held = state.get_locks()
    if not held:
        console.print("[dim]No locks[/dim]")
        return

    table = Table(title="Locks")
    table.add_column("Directory", style="cyan")
    table.add_column("Type")
    table.add_column("Owner")
    table.add_column("Reason")
    table.add_column("Since")
    for lock in sorted(held, key=lambda lk: (lk.directory, lk.type != LockType.MANUAL)):
        owner = lock.locked_by if lock.type == LockType.MANUAL else lock.session_id
        table.add_row(
            lock.directory,
            "[bold]manual[/bold]" if lock.type == LockType.MANUAL else "auto",
            owner or "-",
            lock.reason or "",
            lock.locked_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@main.command()
@config_dir_option
def fuses(config_dir: str | None) -> None:
    """List armed fuses and time remaining."""
    state = StateManager.load(_config_dir(config_dir))
    armed = sorted(state.get_fuses(), key=lambda f: f.expires_at)
    if not armed:
        console.print("[dim]No fuses[/dim]")
        return

    now = utc_now()
    table = Table(title="Fuses")
    table.add_column("Directory", style="cyan")
    table.add_column("Session")
    table.add_column("Expires in")
    table.add_column("Label")
    for fuse in armed:
        remaining = int((fuse.expires_at - now).total_seconds())
        expires = "overdue" if remaining <= 0 else f"{remaining // 60}m {remaining % 60}s"
        table.add_row(fuse.directory, fuse.session_id[:12], expires, fuse.label or "")
    console.print(table)


if __name__ == "__main__":
    main()

"""fleetsched run command - Start the scheduler daemon."""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from fleet_scheduler.cli.exit_codes import ExitCode
from fleet_scheduler.config import LoggingConfig

app = typer.Typer(help="Start and control the scheduler daemon.")
console = Console()

PID_FILE_NAME = "fleetsched.pid"

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to configuration file.",
    exists=True,
    file_okay=True,
    dir_okay=False,
    resolve_path=True,
)


def _setup_logging(
    verbose: bool,
    logging_config: LoggingConfig,
    log_file: Optional[Path] = None,
) -> None:
    """Set up logging for the daemon process.

    Args:
        verbose: Enable verbose (DEBUG) logging
        logging_config: The [logging] section, for level and format
        log_file: Optional log file path
    """
    level = logging.DEBUG if verbose else logging.getLevelName(logging_config.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format=logging_config.format,
        handlers=handlers,
        force=True,
    )


@app.callback(invoke_without_command=True)
def run(
    ctx: typer.Context,
    config_file: Optional[Path] = ConfigOption,
    daemon: bool = typer.Option(
        False,
        "--daemon",
        "-d",
        help="Run in background as daemon.",
    ),
    max_workers: Optional[int] = typer.Option(
        None,
        "--max-workers",
        "-w",
        help="Size of the job worker pool (default: from config).",
        min=1,
        max=64,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose logging.",
    ),
) -> None:
    """Start the scheduler daemon.

    The daemon ticks once a minute: it loads the fleet, builds the
    schedule and dispatches every due job that no other node has taken.

    Example:
        fleetsched run
        fleetsched run --daemon --max-workers 16
    """
    if ctx.invoked_subcommand is not None:
        return

    from fleet_scheduler.config import load_config, ensure_directories
    from fleet_scheduler.daemon.pid import PIDFile
    from fleet_scheduler.daemon.service import run_daemon, daemonize

    config = load_config(config_file)
    if max_workers is not None:
        config.scheduler.max_workers = max_workers
    ensure_directories(config)

    pid_file = PIDFile(config.data_dir / PID_FILE_NAME)

    if pid_file.is_running():
        console.print("[red]Error: Daemon is already running[/red]")
        running_pid = pid_file.read()
        if running_pid:
            console.print(f"[yellow]PID: {running_pid}[/yellow]")
        raise typer.Exit(code=ExitCode.GENERAL_ERROR)

    if pid_file.read() is not None:
        pid_file.remove()

    console.print("[bold green]Starting fleetsched daemon...[/bold green]")

    if verbose:
        console.print(f"Config: {config_file or 'default'}")
        console.print(f"Mode: {config.deployment.mode} (cloud: {config.deployment.cloud})")
        console.print(f"Node: {config.scheduler.node_id}")
        console.print(f"Lock backend: {config.scheduler.lock_backend}")
        console.print(f"Workers: {config.scheduler.max_workers}")

    log_file = config.logging.file or (config.data_dir / "daemon.log" if daemon else None)
    _setup_logging(verbose, config.logging, log_file)

    if daemon:
        if sys.platform == "win32":
            console.print(
                "[yellow]Warning: Daemon mode not supported on Windows, running in foreground[/yellow]"
            )
        else:
            console.print("[dim]Forking to background...[/dim]")
            daemonize(log_file)

    try:
        pid_file.create()
    except OSError as e:
        console.print(f"[red]Error: Failed to create PID file: {e}[/red]")
        raise typer.Exit(code=ExitCode.GENERAL_ERROR)

    import atexit
    atexit.register(pid_file.remove)

    try:
        asyncio.run(run_daemon(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
    except Exception as e:
        logging.exception("Daemon error")
        console.print(f"[red]Daemon error: {e}[/red]")
        raise typer.Exit(code=ExitCode.GENERAL_ERROR)


@app.command()
def status(config_file: Optional[Path] = ConfigOption) -> None:
    """Check daemon status.

    Example:
        fleetsched run status
    """
    from fleet_scheduler.config import load_config
    from fleet_scheduler.daemon.pid import PIDFile

    config = load_config(config_file)
    pid_file = PIDFile(config.data_dir / PID_FILE_NAME)

    if pid_file.is_running():
        pid = pid_file.read()
        console.print(f"[green]● Daemon is running[/green] (PID: {pid})")
        console.print(f"  Mode: {config.deployment.mode}")
        console.print(f"  Node: {config.scheduler.node_id}")
        console.print(f"  Data directory: {config.data_dir}")
    else:
        console.print("[yellow]○ Daemon is not running[/yellow]")
        if pid_file.read() is not None and pid_file.clear_if_stale():
            console.print("[dim]  (removed stale PID file)[/dim]")


@app.command()
def stop(
    config_file: Optional[Path] = ConfigOption,
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Force kill the daemon (SIGKILL).",
    ),
) -> None:
    """Stop the daemon.

    Sends SIGTERM by default so running jobs can finish; --force sends SIGKILL.

    Example:
        fleetsched run stop
    """
    from fleet_scheduler.config import load_config
    from fleet_scheduler.daemon.pid import PIDFile

    config = load_config(config_file)
    pid_file = PIDFile(config.data_dir / PID_FILE_NAME)

    pid = pid_file.read()

    if pid is None:
        console.print("[yellow]Daemon is not running (no PID file found)[/yellow]")
        raise typer.Exit()

    if not pid_file.is_running():
        console.print("[yellow]Daemon is not running (stale PID file)[/yellow]")
        pid_file.remove()
        raise typer.Exit()

    sig = signal.SIGKILL if force else signal.SIGTERM

    try:
        os.kill(pid, sig)
        if force:
            console.print(f"[red]Force killed daemon (PID: {pid})[/red]")
            pid_file.remove()
        else:
            console.print(f"[green]Shutdown signal sent to daemon (PID: {pid})[/green]")
    except ProcessLookupError:
        console.print("[yellow]Daemon process not found (already stopped)[/yellow]")
        pid_file.remove()
    except OSError as e:
        console.print(f"[red]Error signaling daemon: {e}[/red]")
        raise typer.Exit(code=ExitCode.GENERAL_ERROR)

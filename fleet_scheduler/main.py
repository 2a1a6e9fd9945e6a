"""Main CLI entry point for fleetsched."""

import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from fleet_scheduler import __app_name__, __version__
from fleet_scheduler.cli import config, locks, run, schedule
from fleet_scheduler.cli.exit_codes import ExitCode

logger = logging.getLogger(__name__)

app = typer.Typer(
    name=__app_name__,
    help="fleetsched - distributed periodic-job scheduler for a server fleet.",
    add_completion=True,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

app.add_typer(run.app, name="run")
app.add_typer(schedule.app, name="schedule")
app.add_typer(locks.app, name="locks")
app.add_typer(config.app, name="config")

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEBUG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"{__app_name__} v{__version__}")
        raise typer.Exit(code=ExitCode.SUCCESS)


def _console_level(verbose: bool, debug: bool, quiet: bool) -> int:
    if debug:
        return logging.DEBUG
    if verbose:
        return logging.INFO
    if quiet:
        return logging.ERROR
    return logging.WARNING


def _setup_logging(level: int, log_file: Optional[Path] = None) -> None:
    """Route log records to stderr at ``level`` and to ``log_file`` at DEBUG.

    With ERROR level and no file nothing is emitted at all.
    """
    handlers: list[logging.Handler] = []

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    if level < logging.ERROR:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(level)
        handlers.append(stderr_handler)
    elif not log_file:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=logging.DEBUG if log_file else level,
        format=DEBUG_FORMAT if level == logging.DEBUG else CONSOLE_FORMAT,
        handlers=handlers,
        force=True,
    )


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-V",
        help="Enable verbose output (INFO level logging).",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug mode (DEBUG level logging).",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Suppress non-error output.",
    ),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        help="Log to file (logs DEBUG level regardless of console settings).",
    ),
) -> None:
    """fleetsched - distributed periodic-job scheduler for a server fleet.

    Every node runs the same one-minute tick; a shared lock table makes
    sure each due job runs on exactly one node.

    [bold]Commands:[/bold]

    • [cyan]run[/cyan] - Start, inspect or stop the scheduler daemon
    • [cyan]schedule[/cyan] - Show the current schedule or run one tick
    • [cyan]locks[/cyan] - Inspect and clear dispatch locks
    • [cyan]config[/cyan] - Manage configuration

    [bold]Examples:[/bold]

        fleetsched run --daemon
        fleetsched schedule list --due
        fleetsched locks list
    """
    if quiet and (verbose or debug):
        flag = "--verbose" if verbose else "--debug"
        console.print(f"[red]Error:[/red] --quiet and {flag} are mutually exclusive")
        raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

    level = _console_level(verbose, debug, quiet)
    _setup_logging(level, log_file)
    logger.debug(f"{__app_name__} v{__version__} starting (log level {logging.getLevelName(level)})")


if __name__ == "__main__":
    app()

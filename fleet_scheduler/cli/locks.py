"""fleetsched locks command - Inspect and clear dispatch locks."""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from fleet_scheduler.cli.error_handler import (
    ConfigurationError,
    NotFoundError,
    handle_errors,
)

app = typer.Typer(help="Inspect and clear single-flight dispatch locks.")
console = Console()


def _lock_store(config_file: Optional[Path]):
    from fleet_scheduler.config import load_config
    from fleet_scheduler.database.connection import create_tables, get_session_maker
    from fleet_scheduler.scheduler.locks import DatabaseLockStore

    config = load_config(config_file)
    if config.scheduler.lock_backend != "database":
        raise ConfigurationError(
            "Locks are only inspectable with the database lock backend",
            details={"lock_backend": config.scheduler.lock_backend},
        )
    create_tables(config)
    return DatabaseLockStore(get_session_maker(config))


@app.command("list")
@handle_errors
def list_locks(
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file."
    ),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List locks that are currently held.

    Example:
        fleetsched locks list
    """
    store = _lock_store(config_file)
    now = datetime.now(timezone.utc)
    locks = store.active_locks(now)

    if as_json:
        console.print_json(json.dumps([lock.to_dict() for lock in locks]))
        return

    if not locks:
        console.print("[dim]No locks held[/dim]")
        return

    table = Table(title="Held Locks")
    table.add_column("Job", style="cyan")
    table.add_column("Holder", style="magenta")
    table.add_column("Acquired")
    table.add_column("Expires in", style="yellow")

    for lock in locks:
        remaining = int((lock.expires_at - now).total_seconds())
        table.add_row(
            lock.key,
            lock.holder,
            lock.acquired_at.strftime("%Y-%m-%d %H:%M:%S"),
            f"{remaining}s",
        )

    console.print(table)


@app.command("release")
@handle_errors
def release_lock(
    key: str = typer.Argument(..., help="Job identity of the lock (e.g. docker_cleanup:4)."),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file."
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt."),
) -> None:
    """Release a lock regardless of its holder.

    The job may run again on the next tick that finds it due.

    Example:
        fleetsched locks release database_backup:7
    """
    store = _lock_store(config_file)
    holder = store.holder(key)
    if holder is None:
        raise NotFoundError(f"No lock held for {key}")

    if not force:
        if not typer.confirm(f"Release lock {key} held by {holder}?"):
            raise typer.Abort()

    store.force_release(key)
    console.print(f"[green]✓[/green] Released lock {key}")


@app.command("purge")
@handle_errors
def purge_locks(
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file."
    ),
) -> None:
    """Delete expired lock rows.

    Example:
        fleetsched locks purge
    """
    store = _lock_store(config_file)
    count = store.purge_expired()
    console.print(f"[green]✓[/green] Purged {count} expired locks")

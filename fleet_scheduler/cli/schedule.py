"""fleetsched schedule command - Inspect and run the schedule."""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from fleet_scheduler.cli.error_handler import ValidationError, handle_errors
from fleet_scheduler.cli.exit_codes import ExitCode

app = typer.Typer(help="Inspect the schedule and run ticks by hand.")
console = Console()

OUTPUT_FORMATS = ("table", "json")


def _load(config_file: Optional[Path]):
    from fleet_scheduler.config import load_config
    from fleet_scheduler.database.connection import create_tables

    config = load_config(config_file)
    create_tables(config)
    return config


def _rule_due(rule, now: datetime) -> str:
    from fleet_scheduler.scheduler.exceptions import InvalidTriggerError
    from fleet_scheduler.scheduler.guard import is_due, parse_trigger

    try:
        trigger = parse_trigger(rule.trigger, rule.timezone, rule.job_identity)
    except InvalidTriggerError:
        return "invalid"
    return "due" if is_due(trigger, now) else ""


@app.command("list")
@handle_errors
def list_rules(
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file."
    ),
    kind: Optional[str] = typer.Option(
        None,
        "--kind",
        "-k",
        help="Only show rules of this job kind (e.g. docker_cleanup).",
    ),
    due: bool = typer.Option(
        False,
        "--due",
        help="Only show rules due in the current minute.",
    ),
    output: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format (table, json).",
    ),
) -> None:
    """Build the schedule from the database and show it.

    Nothing is deleted or dispatched.

    Example:
        fleetsched schedule list
        fleetsched schedule list --kind database_backup --due
    """
    from fleet_scheduler.daemon.service import create_orchestrator
    from fleet_scheduler.scheduler.locks import MemoryLockStore

    if output not in OUTPUT_FORMATS:
        raise ValidationError(f"Unknown format: {output}", details={"allowed": ", ".join(OUTPUT_FORMATS)})

    config = _load(config_file)
    orchestrator = create_orchestrator(config, lock_store=MemoryLockStore())
    now = datetime.now(timezone.utc)
    plan = orchestrator.plan(now)

    rows = []
    for rule in plan:
        if kind and rule.payload.kind != kind:
            continue
        state = _rule_due(rule, now)
        if due and state != "due":
            continue
        rows.append((rule, state))

    if output == "json":
        data = {
            "mode": plan.mode.value,
            "rules": [
                {
                    "job_identity": rule.job_identity,
                    "trigger": rule.trigger,
                    "timezone": rule.timezone,
                    "kind": rule.payload.kind,
                    "entity_id": rule.payload.entity_id,
                    "state": state,
                }
                for rule, state in rows
            ],
            "removals": [
                {"kind": r.entity_kind, "id": r.entity_id, "reason": r.reason}
                for r in plan.removals
            ],
        }
        console.print_json(json.dumps(data))
        return

    table = Table(title=f"Schedule ({plan.mode.value})")
    table.add_column("Job", style="cyan")
    table.add_column("Trigger", style="green")
    table.add_column("Timezone")
    table.add_column("Kind", style="magenta")
    table.add_column("Now", style="bold")

    for rule, state in rows:
        state_str = {
            "due": "[green]due[/green]",
            "invalid": "[red]invalid[/red]",
        }.get(state, "")
        table.add_row(rule.job_identity, rule.trigger, rule.timezone, rule.payload.kind, state_str)

    console.print(table)

    if plan.removals:
        console.print()
        console.print(f"[yellow]{len(plan.removals)} definitions would be removed:[/yellow]")
        for removal in plan.removals:
            console.print(f"  {removal.entity_kind} {removal.entity_id}: {removal.reason}")


@app.command("tick")
@handle_errors
def run_tick(
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file."
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Show what would be dispatched without locking or deleting anything.",
    ),
) -> None:
    """Run one tick now.

    Jobs are dispatched to the default handler, which logs them. The
    command waits for dispatched jobs to finish before returning.

    Example:
        fleetsched schedule tick
        fleetsched schedule tick --dry-run
    """
    from fleet_scheduler.daemon.service import create_orchestrator
    from fleet_scheduler.scheduler.executor import JobExecutor
    from fleet_scheduler.scheduler.locks import MemoryLockStore

    config = _load(config_file)
    now = datetime.now(timezone.utc)

    if dry_run:
        orchestrator = create_orchestrator(config, lock_store=MemoryLockStore())
        plan = orchestrator.plan(now)
        due_rules = [rule for rule in plan if _rule_due(rule, now) == "due"]
        console.print(f"[bold]{len(due_rules)} of {len(plan)} rules due now[/bold]")
        for rule in due_rules:
            console.print(f"  [cyan]{rule.job_identity}[/cyan] ({rule.trigger}, {rule.timezone})")
        for removal in plan.removals:
            console.print(
                f"  [yellow]would remove[/yellow] {removal.entity_kind} "
                f"{removal.entity_id}: {removal.reason}"
            )
        return

    executor = JobExecutor(max_workers=config.scheduler.max_workers)
    orchestrator = create_orchestrator(config, executor=executor)
    try:
        report = orchestrator.run_tick(now)
    finally:
        executor.shutdown(wait=True)

    console.print(f"[green]✓[/green] Tick finished: {report.summary()}")
    for identity in report.dispatched:
        console.print(f"  [green]dispatched[/green] {identity}")
    for identity in report.skipped:
        console.print(f"  [yellow]skipped[/yellow] {identity}")
    for identity in report.failed:
        console.print(f"  [red]failed[/red] {identity}")
    for removal in report.removed:
        console.print(f"  [dim]removed {removal.entity_kind} {removal.entity_id}[/dim]")

    if report.failed:
        raise typer.Exit(code=ExitCode.SCHEDULING_ERROR)

"""fleetsched config command - Configuration management."""

import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from fleet_scheduler.cli.exit_codes import ExitCode

app = typer.Typer(help="Manage fleetsched configuration.")
console = Console()


def _config_path() -> Path:
    from fleet_scheduler.config import CONFIG_DIR, CONFIG_FILE, ENV_PREFIX

    config_dir = Path(os.environ.get(f"{ENV_PREFIX}CONFIG_DIR", CONFIG_DIR))
    return config_dir / CONFIG_FILE


@app.command("show")
def show_config(
    section: Optional[str] = typer.Argument(
        None,
        help="Configuration section to show (deployment, scheduler, instance, logging, paths).",
    ),
    format: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format (table, yaml, json).",
    ),
    unmask: bool = typer.Option(
        False,
        "--unmask",
        help="Show database credentials unmasked.",
    ),
) -> None:
    """Show current configuration.

    Example:
        fleetsched config show
        fleetsched config show scheduler
        fleetsched config show --format yaml
    """
    from fleet_scheduler.config import (
        _config_to_dict,
        export_config_json,
        export_config_yaml,
        get_config,
    )

    config = get_config()

    if format == "yaml":
        console.print(Syntax(export_config_yaml(config, mask_secrets=not unmask), "yaml", theme="monokai"))
        return
    elif format == "json":
        console.print(Syntax(export_config_json(config, mask_secrets=not unmask), "json", theme="monokai"))
        return

    data = _config_to_dict(config, mask_secrets=not unmask)
    sections = {
        "deployment": data["deployment"],
        "scheduler": data["scheduler"],
        "instance": data["instance"],
        "logging": data["logging"],
        "paths": {
            "config_dir": data["config_dir"],
            "data_dir": data["data_dir"],
            "database_url": data["database_url"],
        },
    }

    sections_to_show = [section] if section else list(sections)

    for sec in sections_to_show:
        if sec not in sections:
            console.print(f"[red]Unknown section: {sec}[/red]")
            continue

        table = Table(title=sec.capitalize())
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="green")

        for key, value in sections[sec].items():
            table.add_row(key, "" if value is None else str(value))

        console.print(table)
        console.print()


@app.command("path")
def config_path() -> None:
    """Show configuration file path.

    Example:
        fleetsched config path
    """
    path = _config_path()
    console.print(f"[bold]Config directory:[/bold] {path.parent}")
    console.print(f"[bold]Config file:[/bold] {path}")
    console.print(f"[bold]Exists:[/bold] {path.exists()}")


@app.command("init")
def init_config(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite existing configuration.",
    ),
) -> None:
    """Write a configuration file with default values.

    Example:
        fleetsched config init
    """
    from fleet_scheduler.config import FleetConfig, save_config

    path = _config_path()
    if path.exists() and not force:
        console.print(f"[yellow]Configuration already exists: {path}[/yellow]")
        console.print("[dim]Use --force to overwrite[/dim]")
        raise typer.Exit(code=ExitCode.GENERAL_ERROR)

    config = FleetConfig(config_dir=path.parent)
    # A generated node id would pin every node to the same identity
    config.scheduler.node_id = ""
    save_config(config, path)
    console.print(f"[green]✓[/green] Configuration written to {path}")


@app.command("validate")
def validate_config() -> None:
    """Validate current configuration.

    Example:
        fleetsched config validate
    """
    from fleet_scheduler.config import get_config, validate_config as do_validate

    config = get_config()
    path = _config_path()

    console.print("[bold]Validating configuration...[/bold]")
    console.print()

    if path.exists():
        console.print(f"  [green]✓[/green] Config file exists [dim]({path})[/dim]")
    else:
        console.print(f"  [yellow]![/yellow] No config file, using defaults [dim]({path})[/dim]")

    all_passed = True
    errors = do_validate(config)

    if errors:
        console.print()
        console.print("[bold yellow]Validation Results:[/bold yellow]")
        for error in errors:
            if error.severity == "error":
                status = "[red]✗[/red]"
                all_passed = False
            else:
                status = "[yellow]![/yellow]"
            console.print(f"  {status} \\[{error.severity.upper()}] {error.field}: {error.message}")

    console.print()
    if all_passed:
        console.print("[green]Configuration is valid[/green]")
    else:
        console.print("[red]Configuration has errors[/red]")
        raise typer.Exit(code=ExitCode.CONFIGURATION_ERROR)

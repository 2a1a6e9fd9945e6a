"""CLI command modules for fleetsched."""

from fleet_scheduler.cli import config, locks, run, schedule
from fleet_scheduler.cli.exit_codes import ExitCode
from fleet_scheduler.cli.error_handler import (
    FleetError,
    ConfigurationError,
    DatabaseError,
    ValidationError,
    NotFoundError,
    handle_errors,
)

__all__ = [
    # Command modules
    "config",
    "locks",
    "run",
    "schedule",
    # Exit codes
    "ExitCode",
    # Error handling
    "FleetError",
    "ConfigurationError",
    "DatabaseError",
    "ValidationError",
    "NotFoundError",
    "handle_errors",
]

"""Global exception handling for the fleetsched CLI.

Custom exception classes carry an exit code; the ``handle_errors``
decorator turns any exception raised by a command into a readable
message and that exit code.
"""

from functools import wraps
from typing import Callable, TypeVar, Any
import logging

import typer
from rich.console import Console
from sqlalchemy.exc import SQLAlchemyError

from fleet_scheduler.cli.exit_codes import ExitCode
from fleet_scheduler.scheduler.exceptions import SchedulerError

# Console for error output (stderr)
console = Console(stderr=True)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class FleetError(Exception):
    """Base exception for the fleetsched CLI.

    Attributes:
        message: Error message
        exit_code: Exit code to use when exiting
        details: Optional dictionary of additional error details
    """

    exit_code: int = ExitCode.GENERAL_ERROR

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(FleetError):
    """Invalid or unreadable configuration."""

    exit_code = ExitCode.CONFIGURATION_ERROR


class DatabaseError(FleetError):
    """Database unreachable or a query failed."""

    exit_code = ExitCode.DATABASE_ERROR


class ValidationError(FleetError):
    """User input failed validation.

    Examples:
        - Unknown output format
        - Malformed lock key
    """

    exit_code = ExitCode.INVALID_ARGUMENT


class NotFoundError(FleetError):
    """Requested resource not found (lock, rule)."""

    exit_code = ExitCode.NOT_FOUND


def _print_error(message: str, details: dict[str, Any]) -> None:
    console.print(f"[red]Error:[/red] {message}")
    for key, value in details.items():
        console.print(f"  [dim]{key}:[/dim] {value}")


def handle_errors(func: F) -> F:
    """Decorator for consistent error handling across CLI commands.

    - FleetError subclasses: message and the error's exit code
    - SchedulerError: message and SCHEDULING_ERROR
    - SQLAlchemyError: message and DATABASE_ERROR
    - KeyboardInterrupt: cancellation message and exit code 130
    - Anything else: generic message and GENERAL_ERROR

    Example:
        @app.command()
        @handle_errors
        def my_command():
            raise ConfigurationError("Invalid config")
    """
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except FleetError as e:
            logger.error(
                f"FleetError: {e.message}",
                extra={"exit_code": e.exit_code, "details": e.details},
            )
            _print_error(e.message, e.details)
            raise typer.Exit(code=e.exit_code)

        except SchedulerError as e:
            logger.error(f"Scheduling failed: {e}")
            _print_error(str(e), {})
            raise typer.Exit(code=ExitCode.SCHEDULING_ERROR)

        except SQLAlchemyError as e:
            logger.error(f"Database error: {e}")
            _print_error(f"Database error: {e}", {})
            raise typer.Exit(code=ExitCode.DATABASE_ERROR)

        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user.[/yellow]")
            logger.info("Operation cancelled by user (KeyboardInterrupt)")
            raise typer.Exit(code=ExitCode.CANCELLED)

        except (typer.Exit, typer.Abort):
            raise

        except Exception as e:
            logger.exception("Unexpected error occurred")
            console.print(f"[red]Unexpected error:[/red] {e}")
            console.print("[dim]Run with --verbose for more details[/dim]")
            raise typer.Exit(code=ExitCode.GENERAL_ERROR)

    return wrapper  # type: ignore[return-value]

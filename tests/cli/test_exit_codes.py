"""Tests for exit codes."""

from fleet_scheduler.cli.exit_codes import ExitCode


class TestExitCode:
    """Tests for ExitCode."""

    def test_conventional_values(self):
        """Success, failure and Ctrl+C follow Unix conventions."""
        assert ExitCode.SUCCESS == 0
        assert ExitCode.GENERAL_ERROR == 1
        assert ExitCode.CANCELLED == 130

    def test_codes_are_distinct(self):
        """No two names share a code."""
        codes = [
            ExitCode.SUCCESS,
            ExitCode.GENERAL_ERROR,
            ExitCode.CONFIGURATION_ERROR,
            ExitCode.DATABASE_ERROR,
            ExitCode.SCHEDULING_ERROR,
            ExitCode.INVALID_ARGUMENT,
            ExitCode.NOT_FOUND,
            ExitCode.CANCELLED,
        ]
        assert len(codes) == len(set(codes))

    def test_get_name(self):
        """Codes map back to their names."""
        assert ExitCode.get_name(ExitCode.SCHEDULING_ERROR) == "SCHEDULING_ERROR"
        assert ExitCode.get_name(99) == "UNKNOWN(99)"

    def test_get_description(self):
        """Every code has a description."""
        assert "Database" in ExitCode.get_description(ExitCode.DATABASE_ERROR)
        assert ExitCode.get_description(99) == "Unknown exit code: 99"

"""PID file management for daemon process tracking."""

import os
from pathlib import Path
from typing import Optional


class PIDFile:
    """Manage the scheduler daemon's PID file.

    Example:
        pid_file = PIDFile(config.data_dir / "fleetsched.pid")

        if pid_file.is_running():
            print("Scheduler already running")
        else:
            pid_file.create()
            try:
                ...
            finally:
                pid_file.remove()
    """

    def __init__(self, path: Path):
        """Initialize PID file manager.

        Args:
            path: Path to the PID file
        """
        self.path = path

    def create(self) -> None:
        """Write the current process ID, creating the parent directory."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(os.getpid()))

    def remove(self) -> None:
        """Remove the PID file if present."""
        self.path.unlink(missing_ok=True)

    def read(self) -> Optional[int]:
        """Read PID from file.

        Returns:
            The PID, or None if the file is missing or unreadable
        """
        if not self.path.exists():
            return None

        try:
            return int(self.path.read_text().strip())
        except (ValueError, OSError):
            return None

    @staticmethod
    def _alive(pid: int) -> bool:
        try:
            # Signal 0 only checks that the process exists
            os.kill(pid, 0)
            return True
        except (OSError, ProcessLookupError):
            return False

    def is_running(self) -> bool:
        """Check if the PID in the file belongs to a live process."""
        pid = self.read()
        return pid is not None and self._alive(pid)

    def get_pid(self) -> Optional[int]:
        """Get the running daemon's PID, or None if not running."""
        pid = self.read()
        if pid is not None and self._alive(pid):
            return pid
        return None

    def clear_if_stale(self) -> bool:
        """Remove the PID file if its process is gone.

        Returns:
            True if the file was stale and has been removed
        """
        pid = self.read()
        if pid is None or self._alive(pid):
            return False
        self.remove()
        return True

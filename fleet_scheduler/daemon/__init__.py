"""Daemon module for fleetsched.

This module provides daemon functionality for running the scheduler as
a background service that ticks once a minute.
"""

from fleet_scheduler.daemon.pid import PIDFile
from fleet_scheduler.daemon.service import (
    SchedulerDaemon,
    create_orchestrator,
    daemonize,
    run_daemon,
)

__all__ = [
    "PIDFile",
    "SchedulerDaemon",
    "create_orchestrator",
    "daemonize",
    "run_daemon",
]

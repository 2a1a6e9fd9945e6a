"""Periodic job scheduling for a server fleet.

Each tick builds the complete rule set from a fleet snapshot and submits
every due rule through the dispatch guard, which ensures a job runs on
exactly one scheduler node.
"""

from fleet_scheduler.scheduler.builder import (
    DeploymentMode,
    JobPayload,
    ScheduleBuilder,
    SchedulePlan,
    ScheduleRule,
    build_schedule,
)
from fleet_scheduler.scheduler.executor import JobExecutor
from fleet_scheduler.scheduler.frequency import resolve
from fleet_scheduler.scheduler.guard import DispatchGuard, DispatchOutcome
from fleet_scheduler.scheduler.locks import DatabaseLockStore, LockStore, MemoryLockStore
from fleet_scheduler.scheduler.tick import EntityStore, TickOrchestrator, TickReport

__all__ = [
    "DatabaseLockStore",
    "DeploymentMode",
    "DispatchGuard",
    "DispatchOutcome",
    "EntityStore",
    "JobExecutor",
    "JobPayload",
    "LockStore",
    "MemoryLockStore",
    "ScheduleBuilder",
    "SchedulePlan",
    "ScheduleRule",
    "TickOrchestrator",
    "TickReport",
    "build_schedule",
    "resolve",
]

"""Tick orchestration.

A tick is one synchronous evaluation pass: read the deployment mode,
load a snapshot, build the complete rule set, apply reconcile deletions,
then submit every rule through the dispatch guard. Job bodies run on the
executor; the tick never waits for them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol

from fleet_scheduler.scheduler.builder import DeploymentMode, SchedulePlan, build_schedule
from fleet_scheduler.scheduler.exceptions import (
    InvalidTriggerError,
    JobSubmissionError,
    SnapshotLoadError,
)
from fleet_scheduler.scheduler.guard import DispatchGuard, DispatchOutcome
from fleet_scheduler.scheduler.reconciler import Removal
from fleet_scheduler.scheduler.snapshots import FleetSnapshot

logger = logging.getLogger(__name__)


class EntityStore(Protocol):
    """Source of fleet snapshots and sink for reconcile deletions."""

    def load_snapshot(self) -> FleetSnapshot:
        ...

    def delete_backup(self, backup_id: int) -> None:
        ...

    def delete_task(self, task_id: int) -> None:
        ...


@dataclass
class TickReport:
    """Summary of one tick."""

    mode: DeploymentMode
    started_at: datetime
    finished_at: Optional[datetime] = None
    rules: int = 0
    dispatched: List[str] = field(default_factory=list)
    not_due: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    removed: List[Removal] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def summary(self) -> str:
        return (
            f"{self.rules} rules: {len(self.dispatched)} dispatched, "
            f"{len(self.skipped)} skipped, {len(self.not_due)} not due, "
            f"{len(self.failed)} failed, {len(self.removed)} removed"
        )


class TickOrchestrator:
    """Runs ticks against an entity store and a dispatch guard.

    Example:
        orchestrator = TickOrchestrator(
            store=SqlEntityStore(session_factory),
            guard=guard,
            mode_provider=lambda: DeploymentMode.PRODUCTION,
            cloud_provider=lambda: False,
        )
        report = orchestrator.run_tick()
    """

    def __init__(
        self,
        store: EntityStore,
        guard: DispatchGuard,
        mode_provider: Callable[[], DeploymentMode],
        cloud_provider: Callable[[], bool],
    ) -> None:
        self._store = store
        self._guard = guard
        self._mode_provider = mode_provider
        self._cloud_provider = cloud_provider

    @property
    def guard(self) -> DispatchGuard:
        return self._guard

    @property
    def store(self) -> EntityStore:
        return self._store

    def plan(self, now: Optional[datetime] = None) -> SchedulePlan:
        """Load a snapshot and build the plan without applying anything.

        Raises:
            SnapshotLoadError: If the snapshot cannot be loaded
        """
        mode = self._mode_provider()
        cloud = self._cloud_provider()
        snapshot = self._load_snapshot()
        return build_schedule(mode, snapshot, cloud=cloud, now=now)

    def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        """Run one tick.

        Args:
            now: Tick time (default: current time)

        Returns:
            Report of what happened to every rule

        Raises:
            SnapshotLoadError: If the snapshot cannot be loaded. Nothing is
                built or submitted in that case.
        """
        now = now or datetime.now(timezone.utc)
        mode = self._mode_provider()
        cloud = self._cloud_provider()
        report = TickReport(mode=mode, started_at=datetime.now(timezone.utc))

        snapshot = self._load_snapshot()
        plan = build_schedule(mode, snapshot, cloud=cloud, now=now)
        report.rules = len(plan)

        self._guard.renew_running(now)

        for removal in plan.removals:
            if self._apply_removal(removal):
                report.removed.append(removal)

        for rule in plan:
            try:
                outcome = self._guard.submit(rule, now)
            except InvalidTriggerError as e:
                logger.error(f"Invalid trigger for {rule.job_identity}: {e}")
                report.failed.append(rule.job_identity)
                continue
            except JobSubmissionError as e:
                logger.error(f"Failed to submit {rule.job_identity}: {e}")
                report.failed.append(rule.job_identity)
                continue
            except Exception as e:
                logger.error(f"Error dispatching {rule.job_identity}: {e}")
                report.failed.append(rule.job_identity)
                continue

            if outcome is DispatchOutcome.DISPATCHED:
                report.dispatched.append(rule.job_identity)
            elif outcome is DispatchOutcome.SKIPPED:
                report.skipped.append(rule.job_identity)
            else:
                report.not_due.append(rule.job_identity)

        report.finished_at = datetime.now(timezone.utc)
        logger.info(f"Tick ({mode.value}) finished: {report.summary()}")
        return report

    def _load_snapshot(self) -> FleetSnapshot:
        try:
            return self._store.load_snapshot()
        except Exception as e:
            raise SnapshotLoadError(f"Failed to load fleet snapshot: {e}") from e

    def _apply_removal(self, removal: Removal) -> bool:
        try:
            if removal.entity_kind == "backup":
                self._store.delete_backup(removal.entity_id)
            elif removal.entity_kind == "task":
                self._store.delete_task(removal.entity_id)
            else:
                logger.warning(f"Unknown removal kind: {removal.entity_kind}")
                return False
            return True
        except Exception as e:
            logger.warning(
                f"Failed to delete {removal.entity_kind} {removal.entity_id}: {e}"
            )
            return False

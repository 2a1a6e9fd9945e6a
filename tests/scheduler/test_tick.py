"""Tests for the tick orchestrator."""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError

from fleet_scheduler.scheduler.builder import DeploymentMode
from fleet_scheduler.scheduler.exceptions import JobSubmissionError, SnapshotLoadError
from fleet_scheduler.scheduler.guard import DispatchGuard, DispatchOutcome
from fleet_scheduler.scheduler.locks import MemoryLockStore
from fleet_scheduler.scheduler.reconciler import Removal
from fleet_scheduler.scheduler.snapshots import (
    BackupDefinition,
    FleetSnapshot,
    ServerSnapshot,
    TaskDefinition,
)
from fleet_scheduler.scheduler.tick import TickOrchestrator, TickReport

MIDNIGHT = datetime(2024, 1, 1, 0, 0, 30, tzinfo=timezone.utc)


@pytest.fixture
def executor():
    mock = Mock()
    mock.submit.return_value = Mock()
    return mock


def make_orchestrator(store, executor, mode=DeploymentMode.DEVELOPMENT, cloud=False):
    guard = DispatchGuard(MemoryLockStore(), executor, "node-a", clock=lambda: MIDNIGHT)
    return TickOrchestrator(
        store=store,
        guard=guard,
        mode_provider=lambda: mode,
        cloud_provider=lambda: cloud,
    )


def make_store(snapshot=None):
    store = Mock()
    store.load_snapshot.return_value = snapshot or FleetSnapshot(taken_at=MIDNIGHT)
    return store


class TestRunTick:
    """Tests for TickOrchestrator.run_tick()."""

    def test_dispatches_due_rules(self, executor):
        """At midnight every development static rule is due."""
        orchestrator = make_orchestrator(make_store(), executor)
        report = orchestrator.run_tick(MIDNIGHT)

        assert report.mode is DeploymentMode.DEVELOPMENT
        assert report.rules == 6
        assert len(report.dispatched) == 6
        assert report.failed == []
        assert executor.submit.call_count == 6

    def test_not_due_rules_counted(self, executor):
        """Rules outside their minute are reported as not due."""
        orchestrator = make_orchestrator(make_store(), executor)
        report = orchestrator.run_tick(datetime(2024, 1, 1, 0, 1, 30, tzinfo=timezone.utc))

        assert "cleanup_stale_connections" in report.not_due
        assert "prune_telemetry" in report.not_due
        assert "queue_snapshot" in report.dispatched
        assert "clear_uploads" in report.not_due

    def test_second_tick_same_minute_skips(self, executor):
        """A second tick in the same minute skips what the first dispatched."""
        orchestrator = make_orchestrator(make_store(), executor)
        orchestrator.run_tick(MIDNIGHT)
        report = orchestrator.run_tick(MIDNIGHT)

        assert report.dispatched == []
        assert len(report.skipped) == 6

    def test_snapshot_failure_aborts_tick(self, executor):
        """A failed snapshot load submits nothing."""
        store = Mock()
        store.load_snapshot.side_effect = RuntimeError("connection refused")
        orchestrator = make_orchestrator(store, executor)

        with pytest.raises(SnapshotLoadError, match="connection refused"):
            orchestrator.run_tick(MIDNIGHT)
        executor.submit.assert_not_called()
        store.delete_backup.assert_not_called()

    def test_bad_trigger_does_not_stop_others(self, executor, caplog):
        """An invalid backup frequency fails only that rule."""
        snapshot = FleetSnapshot(
            servers=(ServerSnapshot(id=1, ip="10.0.0.1"),),
            backups=(BackupDefinition(id=1, database_id=1, server_id=1, frequency="whenever"),),
            taken_at=MIDNIGHT,
        )
        orchestrator = make_orchestrator(make_store(snapshot), executor)

        with caplog.at_level("ERROR"):
            report = orchestrator.run_tick(MIDNIGHT)

        assert report.failed == ["database_backup:1"]
        assert "server_check:1" in report.dispatched
        assert "docker_cleanup:1" in report.dispatched
        assert "Invalid trigger for database_backup:1" in caplog.text

    def test_executor_refusal_contained(self, caplog):
        """A refused submission fails only that rule."""
        executor = Mock()
        executor.submit.side_effect = [JobSubmissionError("no handler")] + [Mock()] * 5
        orchestrator = make_orchestrator(make_store(), executor)

        report = orchestrator.run_tick(MIDNIGHT)

        assert report.failed == ["cleanup_stale_connections"]
        assert len(report.dispatched) == 5

    def test_lock_store_error_contained(self, executor, caplog):
        """A lock store failure on one rule leaves the other rules running."""

        class FailingLockStore(MemoryLockStore):
            def acquire(self, key, holder, ttl_seconds, now=None):
                if key == "cleanup_stale_connections":
                    raise OperationalError("INSERT INTO schedule_locks", {}, Exception("database is locked"))
                return super().acquire(key, holder, ttl_seconds, now)

        guard = DispatchGuard(FailingLockStore(), executor, "node-a", clock=lambda: MIDNIGHT)
        orchestrator = TickOrchestrator(make_store(), guard, lambda: DeploymentMode.PRODUCTION, lambda: False)

        with caplog.at_level("ERROR"):
            report = orchestrator.run_tick(MIDNIGHT)

        assert report.failed == ["cleanup_stale_connections"]
        assert "queue_snapshot" in report.dispatched
        assert executor.submit.call_count == len(report.dispatched)
        assert "Error dispatching cleanup_stale_connections" in caplog.text
        assert "database is locked" in caplog.text

    def test_running_jobs_renewed_each_tick(self, executor):
        """Each tick extends the locks of jobs still executing."""
        guard = Mock()
        guard.submit.return_value = DispatchOutcome.NOT_DUE
        orchestrator = TickOrchestrator(make_store(), guard, lambda: DeploymentMode.DEVELOPMENT, lambda: False)

        orchestrator.run_tick(MIDNIGHT)
        guard.renew_running.assert_called_once_with(MIDNIGHT)

    def test_removals_applied(self, executor):
        """Orphaned backups and tasks are deleted through the store."""
        snapshot = FleetSnapshot(
            backups=(BackupDefinition(id=3, database_id=None),),
            tasks=(TaskDefinition(id=4),),
            taken_at=MIDNIGHT,
        )
        store = make_store(snapshot)
        report = make_orchestrator(store, executor).run_tick(MIDNIGHT)

        store.delete_backup.assert_called_once_with(3)
        store.delete_task.assert_called_once_with(4)
        assert [(r.entity_kind, r.entity_id) for r in report.removed] == [("backup", 3), ("task", 4)]

    def test_removal_failure_logged(self, executor, caplog):
        """A failed deletion is logged and the tick carries on."""
        snapshot = FleetSnapshot(backups=(BackupDefinition(id=3),), taken_at=MIDNIGHT)
        store = make_store(snapshot)
        store.delete_backup.side_effect = RuntimeError("locked")

        with caplog.at_level("WARNING"):
            report = make_orchestrator(store, executor).run_tick(MIDNIGHT)

        assert report.removed == []
        assert len(report.dispatched) == 6
        assert "Failed to delete backup 3" in caplog.text

    def test_mode_read_per_tick(self, executor):
        """The deployment mode is read on every tick."""
        modes = iter([DeploymentMode.DEVELOPMENT, DeploymentMode.PRODUCTION])
        guard = DispatchGuard(MemoryLockStore(), executor, "node-a")
        orchestrator = TickOrchestrator(make_store(), guard, lambda: next(modes), lambda: False)

        assert orchestrator.run_tick(MIDNIGHT).mode is DeploymentMode.DEVELOPMENT
        assert orchestrator.run_tick(MIDNIGHT).mode is DeploymentMode.PRODUCTION

    def test_summary_logged(self, executor, caplog):
        """Each tick logs a one-line summary."""
        with caplog.at_level("INFO"):
            make_orchestrator(make_store(), executor).run_tick(MIDNIGHT)
        assert "6 rules: 6 dispatched" in caplog.text


class TestPlan:
    """Tests for TickOrchestrator.plan()."""

    def test_plan_has_no_side_effects(self, executor):
        """Planning neither deletes nor submits."""
        snapshot = FleetSnapshot(backups=(BackupDefinition(id=3),), taken_at=MIDNIGHT)
        store = make_store(snapshot)
        plan = make_orchestrator(store, executor).plan(MIDNIGHT)

        assert len(plan.removals) == 1
        store.delete_backup.assert_not_called()
        executor.submit.assert_not_called()


class TestTickReport:
    """Tests for TickReport."""

    def test_duration(self):
        """Duration is zero until the tick finishes."""
        report = TickReport(mode=DeploymentMode.PRODUCTION, started_at=MIDNIGHT)
        assert report.duration_seconds == 0.0
        report.finished_at = datetime(2024, 1, 1, 0, 0, 32, tzinfo=timezone.utc)
        assert report.duration_seconds == 2.0

    def test_summary(self):
        """The summary counts every outcome."""
        report = TickReport(
            mode=DeploymentMode.PRODUCTION,
            started_at=MIDNIGHT,
            rules=3,
            dispatched=["a"],
            skipped=["b"],
            failed=["c"],
            removed=[Removal("task", 1, "no application or service")],
        )
        assert report.summary() == "3 rules: 1 dispatched, 1 skipped, 0 not due, 1 failed, 1 removed"

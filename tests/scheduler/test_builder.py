"""Tests for the schedule builder."""

from datetime import datetime, timedelta, timezone

import pytest

from fleet_scheduler.scheduler.builder import (
    DeploymentMode,
    JobPayload,
    ScheduleBuilder,
    build_schedule,
)
from fleet_scheduler.scheduler.exceptions import DuplicateRuleError
from fleet_scheduler.scheduler.snapshots import (
    BackupDefinition,
    FleetSnapshot,
    InstanceSettings,
    ServerSnapshot,
    TargetSnapshot,
    TaskDefinition,
    TeamSnapshot,
)

NOW = datetime(2024, 6, 1, 12, 0, 30, tzinfo=timezone.utc)

DEV_STATIC = [
    "cleanup_stale_connections",
    "queue_snapshot",
    "cleanup_instance",
    "clear_uploads",
    "prune_telemetry",
    "check_helper_image",
]

PROD_STATIC = [
    "cleanup_stale_connections",
    "queue_snapshot",
    "cleanup_unreachable_servers",
    "pull_templates",
    "cleanup_instance",
    "cleanup_database",
    "clear_uploads",
]


def make_snapshot(**kwargs) -> FleetSnapshot:
    kwargs.setdefault("taken_at", NOW)
    return FleetSnapshot(**kwargs)


def fresh_server(server_id: int, **kwargs) -> ServerSnapshot:
    """A server whose sentinel just reported, so no health check is due."""
    kwargs.setdefault("ip", f"10.0.0.{server_id}")
    kwargs.setdefault("last_sentinel_update_at", NOW - timedelta(seconds=5))
    return ServerSnapshot(id=server_id, **kwargs)


class TestStaticRules:
    """Tests for the per-mode static rule sets."""

    def test_development_rules(self):
        """Development mode emits its static set and nothing else."""
        plan = build_schedule(DeploymentMode.DEVELOPMENT, make_snapshot())
        assert plan.identities() == DEV_STATIC
        assert plan.get("queue_snapshot").trigger == "* * * * *"
        assert plan.get("clear_uploads").trigger == "*/2 * * * *"
        assert plan.get("prune_telemetry").trigger == "0 0 * * *"
        assert plan.get("check_helper_image").trigger == "*/5 * * * *"
        assert plan.get("check_helper_image").payload.kind == "check_helper_image"

    def test_production_rules(self):
        """Production mode emits its static set followed by fleet updates."""
        plan = build_schedule(DeploymentMode.PRODUCTION, make_snapshot())
        assert plan.identities()[: len(PROD_STATIC)] == PROD_STATIC
        assert plan.get("queue_snapshot").trigger == "*/5 * * * *"
        assert plan.get("cleanup_instance").trigger == "*/2 * * * *"

    def test_pull_templates_uses_instance_settings(self):
        """Template pulls follow the update-check frequency in the instance timezone."""
        settings = InstanceSettings(
            update_check_frequency="0 */6 * * *",
            instance_timezone="Europe/Berlin",
            default_timezone="UTC",
        )
        plan = build_schedule(DeploymentMode.PRODUCTION, make_snapshot(settings=settings))
        rule = plan.get("pull_templates")
        assert rule.trigger == "0 */6 * * *"
        assert rule.timezone == "Europe/Berlin"
        assert plan.get("cleanup_database").timezone == "UTC"

    def test_static_payload(self):
        """Static rules carry their kind and no entity."""
        plan = build_schedule(DeploymentMode.DEVELOPMENT, make_snapshot())
        assert plan.get("cleanup_instance").payload == JobPayload(kind="cleanup_instance")


class TestBackupRules:
    """Tests for the backup family."""

    def test_daily_backup_in_server_timezone(self):
        """An enabled daily backup on a UTC server yields one midnight rule."""
        snapshot = make_snapshot(
            servers=(fresh_server(1, timezone="UTC"),),
            backups=(BackupDefinition(id=5, database_id=9, server_id=1, frequency="daily"),),
        )
        plan = build_schedule(DeploymentMode.DEVELOPMENT, snapshot)
        backups = [r for r in plan if r.payload.kind == "database_backup"]
        assert len(backups) == 1
        assert backups[0].job_identity == "database_backup:5"
        assert backups[0].trigger == "0 0 * * *"
        assert backups[0].timezone == "UTC"
        assert backups[0].payload.entity_id == 5

    def test_backup_without_database_is_removed(self):
        """A backup whose database is gone yields a removal, not a rule."""
        snapshot = make_snapshot(
            servers=(fresh_server(1),),
            backups=(BackupDefinition(id=5, database_id=None, server_id=1),),
        )
        plan = build_schedule(DeploymentMode.DEVELOPMENT, snapshot)
        assert plan.get("database_backup:5") is None
        assert [(r.entity_kind, r.entity_id) for r in plan.removals] == [("backup", 5)]

    def test_disabled_backup_is_skipped(self):
        """A disabled backup is neither scheduled nor removed."""
        snapshot = make_snapshot(
            servers=(fresh_server(1),),
            backups=(BackupDefinition(id=5, enabled=False, database_id=9, server_id=1),),
        )
        plan = build_schedule(DeploymentMode.DEVELOPMENT, snapshot)
        assert plan.get("database_backup:5") is None
        assert plan.removals == ()

    def test_backup_without_server_is_skipped(self):
        """A backup whose server does not resolve is skipped, not removed."""
        snapshot = make_snapshot(
            backups=(BackupDefinition(id=5, database_id=9, server_id=42),),
        )
        plan = build_schedule(DeploymentMode.DEVELOPMENT, snapshot)
        assert plan.get("database_backup:5") is None
        assert plan.removals == ()

    def test_server_without_timezone_uses_default(self):
        """Backups on servers without a timezone use the default timezone."""
        snapshot = make_snapshot(
            servers=(fresh_server(1),),
            backups=(BackupDefinition(id=5, database_id=9, server_id=1, frequency="0 3 * * *"),),
            settings=InstanceSettings(default_timezone="Asia/Tokyo"),
        )
        rule = build_schedule(DeploymentMode.DEVELOPMENT, snapshot).get("database_backup:5")
        assert rule.trigger == "0 3 * * *"
        assert rule.timezone == "Asia/Tokyo"


class TestTaskRules:
    """Tests for the task family."""

    def test_running_task_is_scheduled(self):
        """A task on a running application gets a rule in the server timezone."""
        snapshot = make_snapshot(
            servers=(fresh_server(1, timezone="America/New_York"),),
            tasks=(
                TaskDefinition(
                    id=3,
                    frequency="hourly",
                    application=TargetSnapshot(id=8, status="running:healthy"),
                    server_id=1,
                ),
            ),
        )
        rule = build_schedule(DeploymentMode.DEVELOPMENT, snapshot).get("scheduled_task:3")
        assert rule.trigger == "0 * * * *"
        assert rule.timezone == "America/New_York"

    def test_exited_task_is_skipped_not_deleted(self):
        """A task on an exited application yields no rule and no removal."""
        snapshot = make_snapshot(
            servers=(fresh_server(1),),
            tasks=(
                TaskDefinition(
                    id=3,
                    application=TargetSnapshot(id=8, status="exited"),
                    server_id=1,
                ),
            ),
        )
        plan = build_schedule(DeploymentMode.DEVELOPMENT, snapshot)
        assert [r for r in plan if r.payload.kind == "scheduled_task"] == []
        assert plan.removals == ()

    def test_orphaned_task_is_removed(self):
        """A task with neither application nor service is removed."""
        snapshot = make_snapshot(tasks=(TaskDefinition(id=3),))
        plan = build_schedule(DeploymentMode.DEVELOPMENT, snapshot)
        assert [(r.entity_kind, r.entity_id) for r in plan.removals] == [("task", 3)]


class TestResourceRules:
    """Tests for the per-server resource check family."""

    def test_default_cleanup_interval(self):
        """Without forced cleanup the default ten-minute interval is used."""
        snapshot = make_snapshot(servers=(fresh_server(1, force_cleanup=False),))
        rule = build_schedule(DeploymentMode.DEVELOPMENT, snapshot).get("docker_cleanup:1")
        assert rule.trigger == "*/10 * * * *"

    def test_forced_cleanup_frequency(self):
        """A forced cleanup uses the server's own frequency."""
        snapshot = make_snapshot(
            servers=(fresh_server(1, force_cleanup=True, cleanup_frequency="0 4 * * *"),)
        )
        rule = build_schedule(DeploymentMode.DEVELOPMENT, snapshot).get("docker_cleanup:1")
        assert rule.trigger == "0 4 * * *"

    def test_per_server_rule_order(self):
        """Per-server rules come in a fixed order."""
        server = ServerSnapshot(id=1, ip="10.0.0.1", sentinel_enabled=True)
        plan = build_schedule(DeploymentMode.DEVELOPMENT, make_snapshot(servers=(server,)))
        assert plan.identities()[len(DEV_STATIC):] == [
            "server_check:1",
            "docker_cleanup:1",
            "server_cleanup_mux:1",
            "restart_sentinel:1",
        ]

    def test_health_check_skipped_for_live_sentinel(self):
        """A server with a recent sentinel report is not health-checked."""
        plan = build_schedule(DeploymentMode.DEVELOPMENT, make_snapshot(servers=(fresh_server(1),)))
        assert plan.get("server_check:1") is None
        assert plan.get("server_cleanup_mux:1") is not None

    def test_cloud_trial_ended_team_excluded(self):
        """In cloud mode a team whose trial ended gets no resource checks."""
        snapshot = make_snapshot(
            servers=(fresh_server(1, team_id=0), fresh_server(2, team_id=7)),
            teams=(
                TeamSnapshot(id=0, server_ids=frozenset({1})),
                TeamSnapshot(id=7, has_active_subscription=True, trial_ended=True, server_ids=frozenset({2})),
            ),
        )
        plan = build_schedule(DeploymentMode.DEVELOPMENT, snapshot, cloud=True)
        assert plan.get("docker_cleanup:1") is not None
        assert plan.get("docker_cleanup:2") is None

    def test_self_hosted_checks_every_team(self):
        """Outside the cloud subscriptions do not matter."""
        snapshot = make_snapshot(
            servers=(fresh_server(2, team_id=7),),
            teams=(TeamSnapshot(id=7, trial_ended=True),),
        )
        plan = build_schedule(DeploymentMode.DEVELOPMENT, snapshot, cloud=False)
        assert plan.get("docker_cleanup:2") is not None


class TestFleetUpdateRules:
    """Tests for the fleet update family."""

    def _snapshot(self, auto_update: bool = True) -> FleetSnapshot:
        return make_snapshot(
            servers=(fresh_server(1, sentinel_enabled=True), fresh_server(2)),
            settings=InstanceSettings(
                auto_update_enabled=auto_update,
                auto_update_frequency="0 2 * * *",
                instance_timezone="Europe/Paris",
            ),
        )

    def test_production_fleet_updates(self):
        """Production emits the fleet update rules last, in order."""
        plan = build_schedule(DeploymentMode.PRODUCTION, self._snapshot())
        assert plan.identities()[-4:] == [
            "check_for_updates",
            "self_update",
            "start_sentinel:1",
            "check_helper_image",
        ]
        assert plan.get("self_update").trigger == "0 2 * * *"
        assert plan.get("self_update").timezone == "Europe/Paris"

    def test_auto_update_disabled(self):
        """Without auto-update there is no self-update rule."""
        plan = build_schedule(DeploymentMode.PRODUCTION, self._snapshot(auto_update=False))
        assert plan.get("self_update") is None
        assert plan.get("check_for_updates") is not None

    def test_development_omits_fleet_updates(self):
        """Development mode never schedules updates or sentinel image pulls."""
        plan = build_schedule(DeploymentMode.DEVELOPMENT, self._snapshot(auto_update=True))
        kinds = {rule.payload.kind for rule in plan}
        assert not kinds & {"check_for_updates", "self_update", "start_sentinel"}

    def test_development_checks_helper_image_on_fixed_cadence(self):
        """Development checks the helper image every five minutes, not on the update cadence."""
        plan = build_schedule(DeploymentMode.DEVELOPMENT, self._snapshot(auto_update=True))
        rules = [rule for rule in plan if rule.payload.kind == "check_helper_image"]
        assert [rule.trigger for rule in rules] == ["*/5 * * * *"]
        assert rules[0].timezone == "UTC"


class TestPlan:
    """Tests for plan-level properties."""

    def _snapshot(self) -> FleetSnapshot:
        return make_snapshot(
            servers=(fresh_server(1), ServerSnapshot(id=2, ip="10.0.0.2")),
            backups=(
                BackupDefinition(id=1, database_id=1, server_id=1),
                BackupDefinition(id=2, database_id=None),
            ),
            tasks=(TaskDefinition(id=1, service=TargetSnapshot(id=1, status="running"), server_id=2),),
        )

    def test_deterministic(self):
        """Identical input gives identical plans."""
        first = build_schedule(DeploymentMode.PRODUCTION, self._snapshot())
        second = build_schedule(DeploymentMode.PRODUCTION, self._snapshot())
        assert first.identities() == second.identities()
        assert [(r.trigger, r.timezone, r.payload.entity_id) for r in first] == [
            (r.trigger, r.timezone, r.payload.entity_id) for r in second
        ]
        assert first.removals == second.removals

    def test_family_order(self):
        """Backups come before tasks, tasks before resource checks."""
        ids = build_schedule(DeploymentMode.DEVELOPMENT, self._snapshot()).identities()
        assert ids.index("database_backup:1") < ids.index("scheduled_task:1") < ids.index("docker_cleanup:1")

    def test_identities_are_unique(self):
        """No identity appears twice in a plan."""
        ids = build_schedule(DeploymentMode.PRODUCTION, self._snapshot()).identities()
        assert len(ids) == len(set(ids))

    def test_plan_is_sized_and_iterable(self):
        """A plan behaves like a sequence of rules."""
        plan = build_schedule(DeploymentMode.DEVELOPMENT, make_snapshot())
        assert len(plan) == len(list(plan)) == len(DEV_STATIC)

    def test_duplicate_identity_raises(self):
        """Two servers sharing an id are a programming error."""
        snapshot = make_snapshot(servers=(fresh_server(1), fresh_server(1)))
        with pytest.raises(DuplicateRuleError):
            ScheduleBuilder(DeploymentMode.DEVELOPMENT, snapshot).build()


class TestDeploymentMode:
    """Tests for DeploymentMode.from_string()."""

    @pytest.mark.parametrize("value", ["dev", "development", "local", " DEV "])
    def test_development(self, value):
        """Development aliases are accepted."""
        assert DeploymentMode.from_string(value) is DeploymentMode.DEVELOPMENT

    @pytest.mark.parametrize("value", ["prod", "production", "Production"])
    def test_production(self, value):
        """Production aliases are accepted."""
        assert DeploymentMode.from_string(value) is DeploymentMode.PRODUCTION

    def test_unknown(self):
        """Unknown names are rejected."""
        with pytest.raises(ValueError):
            DeploymentMode.from_string("staging")

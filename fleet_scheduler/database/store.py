"""SQL-backed entity store.

Loads the whole fleet in one session and converts it to immutable
snapshots, so nothing downstream holds a live ORM object. Deletions
issued by reconciliation run in their own short sessions.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import sessionmaker

from fleet_scheduler.config import InstanceConfig
from fleet_scheduler.database.models import (
    Application,
    InstanceSettingsRow,
    ScheduledDatabaseBackup,
    ScheduledTask,
    Server,
    Service,
    Team,
)
from fleet_scheduler.database.repositories import RepositoryFactory
from fleet_scheduler.scheduler.snapshots import (
    BackupDefinition,
    FleetSnapshot,
    InstanceSettings,
    ServerSnapshot,
    TargetSnapshot,
    TaskDefinition,
    TeamSnapshot,
    ssh_check_wait,
)

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def server_snapshot(server: Server) -> ServerSnapshot:
    return ServerSnapshot(
        id=server.id,
        name=server.name,
        ip=server.ip,
        is_usable=server.is_usable,
        is_reachable=server.is_reachable,
        timezone=server.server_timezone,
        force_cleanup=server.force_docker_cleanup,
        cleanup_frequency=server.docker_cleanup_frequency,
        sentinel_enabled=server.is_sentinel_enabled,
        last_sentinel_update_at=_aware(server.sentinel_updated_at),
        ssh_check_wait_seconds=ssh_check_wait(server.sentinel_push_interval_seconds),
        team_id=server.team_id,
    )


def team_snapshot(team: Team) -> TeamSnapshot:
    return TeamSnapshot(
        id=team.id,
        has_active_subscription=any(sub.is_active for sub in team.subscriptions),
        trial_ended=any(sub.trial_already_ended for sub in team.subscriptions),
        server_ids=frozenset(server.id for server in team.servers),
    )


def backup_definition(backup: ScheduledDatabaseBackup) -> BackupDefinition:
    database = backup.database
    return BackupDefinition(
        id=backup.id,
        enabled=backup.enabled,
        database_id=database.id if database is not None else None,
        frequency=backup.frequency,
        server_id=database.server_id if database is not None else None,
    )


def _target(target: Optional[Application | Service]) -> Optional[TargetSnapshot]:
    if target is None:
        return None
    return TargetSnapshot(id=target.id, status=target.status or "")


def task_definition(task: ScheduledTask) -> TaskDefinition:
    # The application wins when both are set
    host = task.application or task.service
    return TaskDefinition(
        id=task.id,
        name=task.name,
        enabled=task.enabled,
        frequency=task.frequency,
        application=_target(task.application),
        service=_target(task.service),
        server_id=host.server_id if host is not None else None,
    )


def instance_settings(
    row: Optional[InstanceSettingsRow],
    fallback: InstanceConfig,
) -> InstanceSettings:
    """Merge the settings row over configured fallbacks."""
    if row is None:
        return InstanceSettings(
            update_check_frequency=fallback.update_check_frequency,
            instance_timezone=fallback.instance_timezone,
            auto_update_enabled=fallback.auto_update_enabled,
            auto_update_frequency=fallback.auto_update_frequency,
            default_timezone=fallback.default_timezone,
        )
    return InstanceSettings(
        update_check_frequency=row.update_check_frequency or fallback.update_check_frequency,
        instance_timezone=row.instance_timezone or fallback.instance_timezone,
        auto_update_enabled=row.is_auto_update_enabled,
        auto_update_frequency=row.auto_update_frequency or fallback.auto_update_frequency,
        default_timezone=fallback.default_timezone,
    )


class SqlEntityStore:
    """Entity store over the fleetsched database.

    Example:
        store = SqlEntityStore(get_session_maker(), config.instance)
        snapshot = store.load_snapshot()
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        instance_config: Optional[InstanceConfig] = None,
    ) -> None:
        self._session_factory = session_factory
        self._instance_config = instance_config or InstanceConfig()

    def load_snapshot(self) -> FleetSnapshot:
        """Load every entity the schedule depends on in one session."""
        session = self._session_factory()
        try:
            repos = RepositoryFactory(session)
            snapshot = FleetSnapshot(
                servers=tuple(server_snapshot(s) for s in repos.servers.get_all()),
                backups=tuple(backup_definition(b) for b in repos.backups.get_all()),
                tasks=tuple(task_definition(t) for t in repos.tasks.get_all()),
                teams=tuple(team_snapshot(t) for t in repos.teams.get_all()),
                settings=instance_settings(repos.settings.get(), self._instance_config),
                taken_at=datetime.now(timezone.utc),
            )
        finally:
            session.close()

        logger.debug(
            f"Loaded snapshot: {len(snapshot.servers)} servers, "
            f"{len(snapshot.backups)} backups, {len(snapshot.tasks)} tasks"
        )
        return snapshot

    def delete_backup(self, backup_id: int) -> None:
        """Delete a backup definition. Missing rows are ignored."""
        session = self._session_factory()
        try:
            if RepositoryFactory(session).backups.delete(backup_id):
                logger.info(f"Deleted backup definition {backup_id}")
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def delete_task(self, task_id: int) -> None:
        """Delete a task definition. Missing rows are ignored."""
        session = self._session_factory()
        try:
            if RepositoryFactory(session).tasks.delete(task_id):
                logger.info(f"Deleted scheduled task {task_id}")
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

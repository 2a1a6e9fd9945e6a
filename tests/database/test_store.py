"""Tests for the SQL entity store."""

from datetime import datetime, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from fleet_scheduler.config import InstanceConfig
from fleet_scheduler.database.connection import build_engine
from fleet_scheduler.database.models import (
    Application,
    Base,
    InstanceSettingsRow,
    ScheduledDatabaseBackup,
    ScheduledTask,
    Server,
    Service,
    StandaloneDatabase,
    Subscription,
    Team,
)
from fleet_scheduler.database.repositories import RepositoryFactory
from fleet_scheduler.database.store import SqlEntityStore, instance_settings


@pytest.fixture
def session_factory(tmp_path):
    """Session maker over a throwaway SQLite database."""
    engine = build_engine(f"sqlite:///{tmp_path / 'fleet.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def fleet(session_factory):
    """A small fleet: two teams, two servers, a backup and two tasks."""
    session = session_factory()
    session.add_all([
        Team(id=0, name="house"),
        Team(id=5, name="acme"),
    ])
    session.flush()
    session.add_all([
        Subscription(team_id=5, is_active=True, trial_already_ended=False),
        Server(
            id=1,
            name="root",
            ip="10.0.0.1",
            team_id=0,
            server_timezone="Europe/Berlin",
            is_sentinel_enabled=True,
            sentinel_push_interval_seconds=90,
            sentinel_updated_at=datetime(2024, 1, 1, 12, 0, 0),
        ),
        Server(id=2, name="worker", ip="10.0.0.2", team_id=5, force_docker_cleanup=True,
               docker_cleanup_frequency="hourly"),
    ])
    session.flush()
    session.add_all([
        StandaloneDatabase(id=10, name="pg", server_id=2),
        Application(id=20, name="web", status="running:healthy", server_id=1),
        Service(id=30, name="queue", status="exited", server_id=2),
    ])
    session.flush()
    session.add_all([
        ScheduledDatabaseBackup(id=100, frequency="daily", database_id=10),
        ScheduledTask(id=200, name="migrate", frequency="hourly", application_id=20, service_id=30),
        ScheduledTask(id=201, name="flush", frequency="*/5 * * * *", service_id=30),
    ])
    session.commit()
    session.close()
    return session_factory


class TestLoadSnapshot:
    """Tests for SqlEntityStore.load_snapshot()."""

    def test_servers(self, fleet):
        """Servers are converted with their settings."""
        snapshot = SqlEntityStore(fleet).load_snapshot()
        root = snapshot.server(1)

        assert [s.id for s in snapshot.servers] == [1, 2]
        assert root.timezone == "Europe/Berlin"
        assert root.sentinel_enabled
        assert root.ssh_check_wait_seconds == 270
        assert root.last_sentinel_update_at == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert snapshot.server(2).force_cleanup
        assert snapshot.server(2).cleanup_frequency == "hourly"

    def test_teams(self, fleet):
        """Teams carry their subscription state and servers."""
        snapshot = SqlEntityStore(fleet).load_snapshot()

        assert snapshot.team(5).has_active_subscription
        assert not snapshot.team(5).trial_ended
        assert snapshot.team(5).server_ids == frozenset({2})
        assert not snapshot.team(0).has_active_subscription

    def test_backup_resolves_server_through_database(self, fleet):
        """A backup's server is the server hosting its database."""
        backup = SqlEntityStore(fleet).load_snapshot().backups[0]
        assert backup.database_id == 10
        assert backup.server_id == 2

    def test_task_prefers_application_server(self, fleet):
        """With both targets set the application's server is used."""
        tasks = SqlEntityStore(fleet).load_snapshot().tasks
        assert tasks[0].server_id == 1
        assert tasks[0].application.status == "running:healthy"
        assert tasks[0].service.status == "exited"
        assert tasks[1].server_id == 2
        assert tasks[1].application is None

    def test_deleted_database_orphans_backup(self, fleet):
        """Deleting a database leaves a backup without one."""
        session = fleet()
        session.delete(session.get(StandaloneDatabase, 10))
        session.commit()
        session.close()

        backup = SqlEntityStore(fleet).load_snapshot().backups[0]
        assert backup.database_id is None
        assert backup.server_id is None

    def test_settings_fallback(self, fleet):
        """Without a settings row the configured fallbacks are used."""
        config = InstanceConfig(instance_timezone="Asia/Tokyo", default_timezone="Asia/Tokyo")
        settings = SqlEntityStore(fleet, config).load_snapshot().settings
        assert settings.instance_timezone == "Asia/Tokyo"
        assert settings.default_timezone == "Asia/Tokyo"

    def test_settings_row(self, fleet):
        """A settings row overrides the fallbacks it fills in."""
        session = fleet()
        session.add(InstanceSettingsRow(
            id=1,
            update_check_frequency="0 */12 * * *",
            instance_timezone=None,
            is_auto_update_enabled=True,
        ))
        session.commit()
        session.close()

        settings = SqlEntityStore(fleet).load_snapshot().settings
        assert settings.update_check_frequency == "0 */12 * * *"
        assert settings.instance_timezone == "UTC"
        assert settings.auto_update_enabled
        assert settings.auto_update_frequency == "0 0 * * *"

    def test_empty_database(self, session_factory):
        """An empty database gives an empty snapshot."""
        snapshot = SqlEntityStore(session_factory).load_snapshot()
        assert snapshot.servers == ()
        assert snapshot.backups == ()


class TestDeletes:
    """Tests for reconcile deletions."""

    def test_delete_backup(self, fleet):
        """Deleting a backup removes its row."""
        SqlEntityStore(fleet).delete_backup(100)
        session = fleet()
        assert RepositoryFactory(session).backups.get_by_id(100) is None
        session.close()

    def test_delete_task(self, fleet):
        """Deleting a task removes its row and leaves the others."""
        SqlEntityStore(fleet).delete_task(200)
        session = fleet()
        assert [t.id for t in RepositoryFactory(session).tasks.get_all()] == [201]
        session.close()

    def test_delete_is_idempotent(self, fleet):
        """Deleting a missing row is a no-op."""
        store = SqlEntityStore(fleet)
        store.delete_task(999)
        store.delete_backup(100)
        store.delete_backup(100)


class TestRepositories:
    """Tests for the repository layer."""

    def test_server_repository(self, fleet):
        """Servers can be counted and fetched by id."""
        session = fleet()
        repos = RepositoryFactory(session)
        assert repos.servers.count() == 2
        assert repos.servers.get_by_id(2).name == "worker"
        assert repos.servers.get_by_id(9) is None
        session.close()

    def test_factory_reuses_repositories(self, fleet):
        """The factory hands out one repository per kind."""
        session = fleet()
        repos = RepositoryFactory(session)
        assert repos.servers is repos.servers
        session.close()


class TestInstanceSettings:
    """Tests for instance_settings()."""

    def test_row_without_values(self):
        """Empty columns fall back to configuration."""
        row = InstanceSettingsRow(id=1, is_auto_update_enabled=False)
        settings = instance_settings(row, InstanceConfig(update_check_frequency="0 3 * * *"))
        assert settings.update_check_frequency == "0 3 * * *"
        assert not settings.auto_update_enabled

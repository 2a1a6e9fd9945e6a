"""Database repositories for fleetsched.

Provides the queries the entity store needs to assemble a fleet
snapshot, plus the deletions issued by reconciliation.
"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy.orm import Session, selectinload

from fleet_scheduler.database.models import (
    InstanceSettingsRow,
    ScheduledDatabaseBackup,
    ScheduledTask,
    Server,
    Team,
)


class ServerRepository:
    """Repository for servers."""

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session

    def get_by_id(self, server_id: int) -> Optional[Server]:
        """
        Get server by ID.

        Args:
            server_id: Server ID

        Returns:
            Server if found, None otherwise
        """
        return self.session.query(Server).filter(Server.id == server_id).first()

    def get_all(self) -> List[Server]:
        """
        Get all servers, ordered by ID.

        Returns:
            List of servers
        """
        return self.session.query(Server).order_by(Server.id).all()

    def count(self) -> int:
        """Get total server count."""
        return self.session.query(Server).count()


class TeamRepository:
    """Repository for teams and their subscriptions."""

    def __init__(self, session: Session):
        self.session = session

    def get_all(self) -> List[Team]:
        """
        Get all teams with subscriptions and servers loaded, ordered by ID.

        Returns:
            List of teams
        """
        return self.session.query(Team).options(
            selectinload(Team.subscriptions),
            selectinload(Team.servers),
        ).order_by(Team.id).all()


class BackupRepository:
    """
    Repository for scheduled database backups.

    Backups are loaded with their database so the hosting server
    resolves without extra queries.
    """

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, backup_id: int) -> Optional[ScheduledDatabaseBackup]:
        return self.session.query(ScheduledDatabaseBackup).filter(
            ScheduledDatabaseBackup.id == backup_id
        ).first()

    def get_all(self) -> List[ScheduledDatabaseBackup]:
        """
        Get all backups, ordered by ID.

        Returns:
            List of backup definitions
        """
        return self.session.query(ScheduledDatabaseBackup).options(
            selectinload(ScheduledDatabaseBackup.database),
        ).order_by(ScheduledDatabaseBackup.id).all()

    def delete(self, backup_id: int) -> bool:
        """
        Delete a backup definition.

        Args:
            backup_id: ID of the backup to delete

        Returns:
            True if deleted, False if it was already gone
        """
        backup = self.get_by_id(backup_id)
        if not backup:
            return False

        self.session.delete(backup)
        self.session.commit()
        return True


class TaskRepository:
    """Repository for scheduled tasks."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, task_id: int) -> Optional[ScheduledTask]:
        return self.session.query(ScheduledTask).filter(
            ScheduledTask.id == task_id
        ).first()

    def get_all(self) -> List[ScheduledTask]:
        """
        Get all tasks with their application and service, ordered by ID.

        Returns:
            List of task definitions
        """
        return self.session.query(ScheduledTask).options(
            selectinload(ScheduledTask.application),
            selectinload(ScheduledTask.service),
        ).order_by(ScheduledTask.id).all()

    def delete(self, task_id: int) -> bool:
        """
        Delete a task definition.

        Args:
            task_id: ID of the task to delete

        Returns:
            True if deleted, False if it was already gone
        """
        task = self.get_by_id(task_id)
        if not task:
            return False

        self.session.delete(task)
        self.session.commit()
        return True


class SettingsRepository:
    """Repository for the single instance settings row."""

    def __init__(self, session: Session):
        self.session = session

    def get(self) -> Optional[InstanceSettingsRow]:
        """
        Get the instance settings row.

        Returns:
            The first settings row, or None if the table is empty
        """
        return self.session.query(InstanceSettingsRow).order_by(
            InstanceSettingsRow.id
        ).first()


class RepositoryFactory:
    """
    Factory for creating repository instances.

    Usage:
        with get_db_session() as session:
            repos = RepositoryFactory(session)
            servers = repos.servers.get_all()
    """

    def __init__(self, session: Session):
        """
        Initialize factory with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session
        self._servers: Optional[ServerRepository] = None
        self._teams: Optional[TeamRepository] = None
        self._backups: Optional[BackupRepository] = None
        self._tasks: Optional[TaskRepository] = None
        self._settings: Optional[SettingsRepository] = None

    @property
    def servers(self) -> ServerRepository:
        if self._servers is None:
            self._servers = ServerRepository(self.session)
        return self._servers

    @property
    def teams(self) -> TeamRepository:
        if self._teams is None:
            self._teams = TeamRepository(self.session)
        return self._teams

    @property
    def backups(self) -> BackupRepository:
        if self._backups is None:
            self._backups = BackupRepository(self.session)
        return self._backups

    @property
    def tasks(self) -> TaskRepository:
        if self._tasks is None:
            self._tasks = TaskRepository(self.session)
        return self._tasks

    @property
    def settings(self) -> SettingsRepository:
        if self._settings is None:
            self._settings = SettingsRepository(self.session)
        return self._settings

"""
SQLAlchemy models for the fleetsched database.

The entity tables (teams, servers, databases, applications, services,
backups, tasks, instance settings) are read once per tick to build a
fleet snapshot. ``schedule_locks`` is written by the dispatch guard on
every node.
"""

from datetime import datetime, timezone
from typing import Optional, List, Any, Dict

from sqlalchemy import (
    Integer,
    String,
    Boolean,
    ForeignKey,
    DateTime,
    Text,
    Index,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column, declarative_base

# Create base class for all models
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Team(Base):
    """A team owning servers, optionally with a paid subscription."""

    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String, nullable=False, default="")

    servers: Mapped[List["Server"]] = relationship("Server", back_populates="team")
    subscriptions: Mapped[List["Subscription"]] = relationship(
        "Subscription",
        back_populates="team",
        cascade="all, delete-orphan",
    )


class Subscription(Base):
    """Billing subscription of a team (cloud mode only)."""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    team_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trial_already_ended: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    team: Mapped[Team] = relationship("Team", back_populates="subscriptions")


class Server(Base):
    """
    A managed server and its scheduler-relevant settings.

    Settings live inline: reachability flags, timezone, docker cleanup
    override and sentinel state.
    """

    __tablename__ = "servers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    ip: Mapped[str] = mapped_column(String, nullable=False, default="")
    team_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    is_usable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_reachable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    server_timezone: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    force_docker_cleanup: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    docker_cleanup_frequency: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    is_sentinel_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sentinel_push_interval_seconds: Mapped[int] = mapped_column(
        Integer, default=60, nullable=False
    )
    sentinel_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    team: Mapped[Optional[Team]] = relationship("Team", back_populates="servers")

    def to_dict(self) -> Dict[str, Any]:
        """Convert server to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "ip": self.ip,
            "team_id": self.team_id,
            "is_usable": self.is_usable,
            "is_reachable": self.is_reachable,
            "server_timezone": self.server_timezone,
            "force_docker_cleanup": self.force_docker_cleanup,
            "docker_cleanup_frequency": self.docker_cleanup_frequency,
            "is_sentinel_enabled": self.is_sentinel_enabled,
            "sentinel_updated_at": (
                self.sentinel_updated_at.isoformat() if self.sentinel_updated_at else None
            ),
        }


class StandaloneDatabase(Base):
    """A database running on a server; target of scheduled backups."""

    __tablename__ = "standalone_databases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    server_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("servers.id", ondelete="SET NULL"),
        nullable=True,
    )

    server: Mapped[Optional[Server]] = relationship("Server")


class Application(Base):
    """A deployed application."""

    __tablename__ = "applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    status: Mapped[str] = mapped_column(String, nullable=False, default="exited")
    server_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("servers.id", ondelete="SET NULL"),
        nullable=True,
    )

    server: Mapped[Optional[Server]] = relationship("Server")


class Service(Base):
    """A deployed multi-container service."""

    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    status: Mapped[str] = mapped_column(String, nullable=False, default="exited")
    server_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("servers.id", ondelete="SET NULL"),
        nullable=True,
    )

    server: Mapped[Optional[Server]] = relationship("Server")


class ScheduledDatabaseBackup(Base):
    """
    Backup definition for a database.

    ``database_id`` is nulled when the database is deleted; such rows are
    removed by the scheduler on the next tick.
    """

    __tablename__ = "scheduled_database_backups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    frequency: Mapped[str] = mapped_column(String, nullable=False, default="daily")
    database_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("standalone_databases.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    database: Mapped[Optional[StandaloneDatabase]] = relationship("StandaloneDatabase")


class ScheduledTask(Base):
    """
    A command run on a schedule inside an application or service.

    Both references are nulled when their target is deleted.
    """

    __tablename__ = "scheduled_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    command: Mapped[str] = mapped_column(Text, nullable=False, default="")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    frequency: Mapped[str] = mapped_column(String, nullable=False, default="daily")
    application_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("applications.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    service_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("services.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    application: Mapped[Optional[Application]] = relationship("Application")
    service: Mapped[Optional[Service]] = relationship("Service")


class InstanceSettingsRow(Base):
    """Instance-wide settings (single row)."""

    __tablename__ = "instance_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    update_check_frequency: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    instance_timezone: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_auto_update_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_update_frequency: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class ScheduleLock(Base):
    """
    Single-flight lock for a job identity.

    The primary key makes a concurrent insert for the same key fail,
    which is how contention between nodes is detected. Times are naive UTC.
    """

    __tablename__ = "schedule_locks"

    lock_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert lock to dictionary representation."""
        return {
            "lock_key": self.lock_key,
            "holder": self.holder,
            "acquired_at": self.acquired_at.isoformat() if self.acquired_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


Index("ix_schedule_locks_expires_at", ScheduleLock.expires_at)

"""Read-only views of the entities that drive the schedule.

Snapshots are taken once per tick by the entity store and passed by
parameter through the schedule builder. Nothing here talks to the
database; changes to entities are expressed as removal actions instead.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple

# Test fixture address that is never scheduled
PLACEHOLDER_IP = "1.2.3.4"

# Team owning the instance itself; its servers are always checked in cloud mode
HOUSE_TEAM_ID = 0

# Lower bound of the SSH-check backoff, in seconds
MIN_SSH_CHECK_WAIT = 120


def ssh_check_wait(push_interval_seconds: int) -> int:
    """Seconds to wait for a sentinel report before falling back to SSH."""
    return max(push_interval_seconds * 3, MIN_SSH_CHECK_WAIT)


@dataclass(frozen=True)
class ServerSnapshot:
    """A server and the settings the scheduler cares about."""

    id: int
    name: str = ""
    ip: str = ""
    is_usable: bool = True
    is_reachable: bool = True
    timezone: Optional[str] = None
    force_cleanup: bool = False
    cleanup_frequency: Optional[str] = None
    sentinel_enabled: bool = False
    last_sentinel_update_at: Optional[datetime] = None
    ssh_check_wait_seconds: int = MIN_SSH_CHECK_WAIT
    team_id: Optional[int] = None


@dataclass(frozen=True)
class TargetSnapshot:
    """An application or service a scheduled task runs against."""

    id: int
    status: str = ""


@dataclass(frozen=True)
class BackupDefinition:
    """A scheduled database backup.

    ``database_id`` is None when the database it pointed at is gone, which
    makes the definition invalid. ``server_id`` is the server hosting the
    database, if it still resolves.
    """

    id: int
    enabled: bool = True
    database_id: Optional[int] = None
    frequency: str = "daily"
    server_id: Optional[int] = None


@dataclass(frozen=True)
class TaskDefinition:
    """A scheduled command inside an application or service."""

    id: int
    name: str = ""
    enabled: bool = True
    frequency: str = "daily"
    application: Optional[TargetSnapshot] = None
    service: Optional[TargetSnapshot] = None
    server_id: Optional[int] = None

    @property
    def targets(self) -> Tuple[TargetSnapshot, ...]:
        """Resolved targets, application first."""
        return tuple(t for t in (self.application, self.service) if t is not None)


@dataclass(frozen=True)
class TeamSnapshot:
    """A team with its subscription state."""

    id: int
    has_active_subscription: bool = False
    trial_ended: bool = False
    server_ids: frozenset = frozenset()


@dataclass(frozen=True)
class InstanceSettings:
    """Instance-wide settings that shape the static rule set."""

    update_check_frequency: str = "0 * * * *"
    instance_timezone: str = "UTC"
    auto_update_enabled: bool = False
    auto_update_frequency: str = "0 0 * * *"
    default_timezone: str = "UTC"


@dataclass(frozen=True)
class FleetSnapshot:
    """Everything one tick needs, loaded in a single pass."""

    servers: Tuple[ServerSnapshot, ...] = ()
    backups: Tuple[BackupDefinition, ...] = ()
    tasks: Tuple[TaskDefinition, ...] = ()
    teams: Tuple[TeamSnapshot, ...] = ()
    settings: InstanceSettings = field(default_factory=InstanceSettings)
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def server(self, server_id: Optional[int]) -> Optional[ServerSnapshot]:
        """Look up a server by id."""
        if server_id is None:
            return None
        for server in self.servers:
            if server.id == server_id:
                return server
        return None

    def team(self, team_id: Optional[int]) -> Optional[TeamSnapshot]:
        """Look up a team by id."""
        if team_id is None:
            return None
        for team in self.teams:
            if team.id == team_id:
                return team
        return None

"""Eligibility gates.

Each gate is a pure predicate over snapshot data: no I/O, no mutation.
Gates decide whether an entity is scheduled in the current tick; they
never decide whether it should exist (see ``reconciler``).
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from fleet_scheduler.scheduler.frequency import resolve
from fleet_scheduler.scheduler.snapshots import (
    HOUSE_TEAM_ID,
    PLACEHOLDER_IP,
    BackupDefinition,
    ServerSnapshot,
    TaskDefinition,
    TeamSnapshot,
)

DEFAULT_CLEANUP_TRIGGER = "*/10 * * * *"

RUNNING_MARKER = "running"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_placeholder(server: ServerSnapshot) -> bool:
    """Check whether a server is the test fixture placeholder."""
    return server.ip == PLACEHOLDER_IP


def server_needs_health_check(server: ServerSnapshot, now: datetime) -> bool:
    """Reachability gate.

    A server is health-checked over SSH when its sentinel has been silent
    for longer than the server's own backoff window. A server whose
    sentinel never reported is checked.
    """
    if server.last_sentinel_update_at is None:
        return True
    silent_for = _as_utc(now) - _as_utc(server.last_sentinel_update_at)
    return silent_for > timedelta(seconds=server.ssh_check_wait_seconds)


def cleanup_trigger(server: ServerSnapshot) -> str:
    """Cleanup gate: always schedules, only the interval varies."""
    if server.force_cleanup and server.cleanup_frequency:
        return resolve(server.cleanup_frequency)
    return DEFAULT_CLEANUP_TRIGGER


def backup_is_eligible(backup: BackupDefinition) -> bool:
    """Backup gate: enabled and pointing at a database."""
    return backup.enabled and backup.database_id is not None


def task_is_eligible(task: TaskDefinition) -> bool:
    """Task gate: enabled, has a target, and every target is running."""
    if not task.enabled:
        return False
    targets = task.targets
    if not targets:
        return False
    return all(RUNNING_MARKER in (target.status or "") for target in targets)


def resource_check_candidates(
    servers: Iterable[ServerSnapshot],
    teams: Iterable[TeamSnapshot],
    cloud: bool,
) -> Tuple[ServerSnapshot, ...]:
    """Servers eligible for resource checks.

    Outside the cloud every server is a candidate. In the cloud only
    servers of teams with a live, post-trial subscription are, plus the
    house team's servers. The placeholder server is never a candidate.

    Args:
        servers: All servers in the snapshot, in snapshot order
        teams: All teams in the snapshot
        cloud: Whether the instance runs in cloud mode

    Returns:
        Candidate servers, deduplicated, in first-seen order
    """
    servers = list(servers)
    if not cloud:
        return tuple(s for s in servers if not is_placeholder(s))

    teams = list(teams)
    paying = {
        team.id
        for team in teams
        if team.has_active_subscription and not team.trial_ended
    }
    house = next((team for team in teams if team.id == HOUSE_TEAM_ID), None)
    if house is not None and house.server_ids:
        house_ids = set(house.server_ids)
    else:
        house_ids = {s.id for s in servers if s.team_id == HOUSE_TEAM_ID}

    selected: List[ServerSnapshot] = []
    seen = set()
    for server in [s for s in servers if s.team_id in paying] + [
        s for s in servers if s.id in house_ids
    ]:
        if server.id in seen or is_placeholder(server):
            continue
        seen.add(server.id)
        selected.append(server)
    return tuple(selected)


def image_pull_candidates(servers: Iterable[ServerSnapshot]) -> Tuple[ServerSnapshot, ...]:
    """Servers that can receive image pulls: usable, reachable, real."""
    return tuple(
        s for s in servers
        if s.is_usable and s.is_reachable and not is_placeholder(s)
    )


def server_timezone(server: Optional[ServerSnapshot], default: str) -> str:
    """Server timezone with the instance default as fallback."""
    if server is not None and server.timezone:
        return server.timezone
    return default

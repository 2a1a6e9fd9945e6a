"""Schedule builder.

Turns one fleet snapshot into the ordered list of rules for a tick:
first the static instance rules for the deployment mode, then one rule
per qualifying entity in four families (backups, tasks, resource checks,
fleet updates). The builder never touches the database; invalid entities
are reported as removals alongside the rules.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, List, Mapping, Optional, Set, Tuple

from fleet_scheduler.scheduler.exceptions import DuplicateRuleError
from fleet_scheduler.scheduler.frequency import resolve
from fleet_scheduler.scheduler.gates import (
    cleanup_trigger,
    image_pull_candidates,
    resource_check_candidates,
    server_needs_health_check,
    server_timezone,
    task_is_eligible,
)
from fleet_scheduler.scheduler.reconciler import (
    ReconcileAction,
    Removal,
    reconcile,
    removal_for,
)
from fleet_scheduler.scheduler.snapshots import FleetSnapshot, ServerSnapshot

logger = logging.getLogger(__name__)

EVERY_MINUTE = "* * * * *"
EVERY_TWO_MINUTES = "*/2 * * * *"
EVERY_FIVE_MINUTES = "*/5 * * * *"
HOURLY = "0 * * * *"
DAILY = "0 0 * * *"


class DeploymentMode(Enum):
    """Which static rule set an instance runs."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"

    @classmethod
    def from_string(cls, value: str) -> "DeploymentMode":
        """Parse a mode name, accepting ``dev`` and ``prod`` shorthands."""
        value = value.strip().lower()
        if value in ("dev", "development", "local"):
            return cls.DEVELOPMENT
        if value in ("prod", "production"):
            return cls.PRODUCTION
        raise ValueError(f"Unknown deployment mode: {value!r}")


@dataclass(frozen=True)
class JobPayload:
    """What a job handler needs to run: a kind and an entity id.

    Payloads never carry live entities; handlers look the entity up
    when the job actually runs.
    """

    kind: str
    entity_id: Optional[int] = None
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class ScheduleRule:
    """One logical job for one tick.

    Attributes:
        job_identity: Unique name within a tick, also the lock key
        trigger: Cron expression (5 or 6 fields)
        timezone: IANA timezone the trigger is evaluated in
        payload: Job kind and entity reference
    """

    job_identity: str
    trigger: str
    timezone: str
    payload: JobPayload


@dataclass(frozen=True)
class SchedulePlan:
    """Ordered rules for a tick, plus the removals found while building."""

    mode: DeploymentMode
    rules: Tuple[ScheduleRule, ...] = ()
    removals: Tuple[Removal, ...] = ()

    def __iter__(self) -> Iterator[ScheduleRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def identities(self) -> List[str]:
        """Job identities in plan order."""
        return [rule.job_identity for rule in self.rules]

    def get(self, job_identity: str) -> Optional[ScheduleRule]:
        """Find a rule by identity."""
        for rule in self.rules:
            if rule.job_identity == job_identity:
                return rule
        return None


def _identity(kind: str, entity_id: Optional[int] = None) -> str:
    if entity_id is None:
        return kind
    return f"{kind}:{entity_id}"


class ScheduleBuilder:
    """Builds a SchedulePlan from a fleet snapshot.

    Example:
        builder = ScheduleBuilder(DeploymentMode.PRODUCTION, snapshot, cloud=False)
        plan = builder.build()
        for rule in plan:
            guard.submit(rule)
    """

    def __init__(
        self,
        mode: DeploymentMode,
        snapshot: FleetSnapshot,
        cloud: bool = False,
        now: Optional[datetime] = None,
    ) -> None:
        self._mode = mode
        self._snapshot = snapshot
        self._cloud = cloud
        self._now = now or snapshot.taken_at
        self._rules: List[ScheduleRule] = []
        self._removals: List[Removal] = []
        self._identities: Set[str] = set()

    @property
    def _default_tz(self) -> str:
        return self._snapshot.settings.default_timezone

    @property
    def _instance_tz(self) -> str:
        return self._snapshot.settings.instance_timezone

    def build(self) -> SchedulePlan:
        """Build the plan. Rule order is deterministic for a given input."""
        self._rules = []
        self._removals = []
        self._identities = set()

        if self._mode is DeploymentMode.DEVELOPMENT:
            self._add_development_rules()
        else:
            self._add_production_rules()

        self._add_backup_rules()
        self._add_task_rules()
        self._add_resource_rules()
        if self._mode is DeploymentMode.PRODUCTION:
            self._add_fleet_update_rules()

        plan = SchedulePlan(
            mode=self._mode,
            rules=tuple(self._rules),
            removals=tuple(self._removals),
        )
        logger.debug(
            f"Built {len(plan.rules)} rules and {len(plan.removals)} removals "
            f"in {self._mode.value} mode"
        )
        return plan

    def _add(
        self,
        kind: str,
        trigger: str,
        timezone: Optional[str] = None,
        entity_id: Optional[int] = None,
        **params: Any,
    ) -> None:
        identity = _identity(kind, entity_id)
        if identity in self._identities:
            raise DuplicateRuleError("Duplicate job identity in plan", identity)
        self._identities.add(identity)
        self._rules.append(ScheduleRule(
            job_identity=identity,
            trigger=trigger,
            timezone=timezone or self._default_tz,
            payload=JobPayload(kind=kind, entity_id=entity_id, params=MappingProxyType(params)),
        ))

    # === Static rules ===

    def _add_development_rules(self) -> None:
        self._add("cleanup_stale_connections", HOURLY)
        self._add("queue_snapshot", EVERY_MINUTE)
        self._add("cleanup_instance", EVERY_MINUTE)
        self._add("clear_uploads", EVERY_TWO_MINUTES)
        self._add("prune_telemetry", DAILY)
        self._add("check_helper_image", EVERY_FIVE_MINUTES)

    def _add_production_rules(self) -> None:
        settings = self._snapshot.settings
        self._add("cleanup_stale_connections", HOURLY)
        self._add("queue_snapshot", EVERY_FIVE_MINUTES)
        self._add("cleanup_unreachable_servers", DAILY)
        self._add("pull_templates", settings.update_check_frequency, self._instance_tz)
        self._add("cleanup_instance", EVERY_TWO_MINUTES)
        self._add("cleanup_database", DAILY)
        self._add("clear_uploads", EVERY_TWO_MINUTES)

    # === Dynamic rules ===

    def _add_backup_rules(self) -> None:
        for backup in self._snapshot.backups:
            if reconcile(backup) is ReconcileAction.DELETE:
                self._removals.append(removal_for(backup))
                continue
            if not backup.enabled:
                continue
            server = self._snapshot.server(backup.server_id)
            if server is None:
                logger.debug(f"Backup {backup.id} has no resolvable server, skipping")
                continue
            self._add(
                "database_backup",
                resolve(backup.frequency),
                server_timezone(server, self._default_tz),
                entity_id=backup.id,
            )

    def _add_task_rules(self) -> None:
        for task in self._snapshot.tasks:
            if reconcile(task) is ReconcileAction.DELETE:
                self._removals.append(removal_for(task))
                continue
            if not task_is_eligible(task):
                continue
            server = self._snapshot.server(task.server_id)
            if server is None:
                logger.debug(f"Task {task.id} has no resolvable server, skipping")
                continue
            self._add(
                "scheduled_task",
                resolve(task.frequency),
                server_timezone(server, self._default_tz),
                entity_id=task.id,
            )

    def _add_resource_rules(self) -> None:
        candidates = resource_check_candidates(
            self._snapshot.servers, self._snapshot.teams, self._cloud
        )
        for server in candidates:
            self._add_server_rules(server)

    def _add_server_rules(self, server: ServerSnapshot) -> None:
        if server_needs_health_check(server, self._now):
            self._add("server_check", EVERY_MINUTE, entity_id=server.id)
        self._add(
            "docker_cleanup",
            cleanup_trigger(server),
            server_timezone(server, self._default_tz),
            entity_id=server.id,
        )
        self._add("server_cleanup_mux", HOURLY, entity_id=server.id)
        if server.sentinel_enabled:
            # Until the sentinel manages its own memory
            self._add("restart_sentinel", DAILY, entity_id=server.id)

    def _add_fleet_update_rules(self) -> None:
        settings = self._snapshot.settings
        self._add("check_for_updates", settings.update_check_frequency, self._instance_tz)
        if settings.auto_update_enabled:
            self._add("self_update", settings.auto_update_frequency, self._instance_tz)
        for server in image_pull_candidates(self._snapshot.servers):
            if server.sentinel_enabled:
                self._add(
                    "start_sentinel",
                    settings.update_check_frequency,
                    self._instance_tz,
                    entity_id=server.id,
                )
        self._add("check_helper_image", settings.update_check_frequency, self._instance_tz)


def build_schedule(
    mode: DeploymentMode,
    snapshot: FleetSnapshot,
    cloud: bool = False,
    now: Optional[datetime] = None,
) -> SchedulePlan:
    """Build the schedule plan for one tick.

    Args:
        mode: Deployment mode, read once for the tick
        snapshot: Entity snapshot for the tick
        cloud: Whether resource checks are restricted to paying teams
        now: Evaluation time for time-based gates (default: snapshot time)

    Returns:
        The ordered plan
    """
    return ScheduleBuilder(mode, snapshot, cloud=cloud, now=now).build()

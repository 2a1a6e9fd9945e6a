"""Reconciliation of structurally invalid definitions.

A backup whose database is gone, or a task with neither an application
nor a service, can never run again. Such definitions are deleted rather
than skipped, before any eligibility gate looks at them.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Union

from fleet_scheduler.scheduler.snapshots import BackupDefinition, TaskDefinition

logger = logging.getLogger(__name__)


class ReconcileAction(Enum):
    """Outcome of reconciling one entity."""

    KEEP = "keep"
    DELETE = "delete"


@dataclass(frozen=True)
class Removal:
    """A deletion to apply to the entity store."""

    entity_kind: str
    entity_id: int
    reason: str


Reconcilable = Union[BackupDefinition, TaskDefinition]


def reconcile(entity: Reconcilable) -> ReconcileAction:
    """Decide whether an entity should be kept or deleted.

    Args:
        entity: Backup or task definition snapshot

    Returns:
        ReconcileAction.DELETE when a required reference is missing
    """
    if isinstance(entity, BackupDefinition):
        if entity.database_id is None:
            return ReconcileAction.DELETE
        return ReconcileAction.KEEP

    if isinstance(entity, TaskDefinition):
        if entity.application is None and entity.service is None:
            return ReconcileAction.DELETE
        return ReconcileAction.KEEP

    raise TypeError(f"Cannot reconcile {type(entity).__name__}")


def removal_for(entity: Reconcilable) -> Removal:
    """Build the removal record for an entity that failed reconciliation."""
    if isinstance(entity, BackupDefinition):
        removal = Removal("backup", entity.id, "database no longer exists")
    else:
        removal = Removal("task", entity.id, "no application or service")
    logger.info(f"Removing {removal.entity_kind} {removal.entity_id}: {removal.reason}")
    return removal

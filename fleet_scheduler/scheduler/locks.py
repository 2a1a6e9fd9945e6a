"""Lock stores for the dispatch guard.

Every scheduler node shares one lock store. A lock is keyed by job
identity, owned by a node id, and expires on its own after a TTL so a
crashed holder cannot block a job forever. Acquisition is a single
test-and-set: it either succeeds immediately or reports contention.

Two stores are provided:
- MemoryLockStore: process-local, for single-node installs and tests
- DatabaseLockStore: a ``schedule_locks`` table, INSERT-or-fail on the
  primary key, for multi-node fleets
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from fleet_scheduler.database.models import ScheduleLock

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return utcnow()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _naive(value: datetime) -> datetime:
    """UTC datetime without tzinfo, as stored in the database."""
    return _as_utc(value).replace(tzinfo=None)


@dataclass(frozen=True)
class LockInfo:
    """A held lock."""

    key: str
    holder: str
    acquired_at: datetime
    expires_at: datetime

    def to_dict(self) -> Dict[str, str]:
        return {
            "key": self.key,
            "holder": self.holder,
            "acquired_at": self.acquired_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


class LockStore(Protocol):
    """Shared store of job locks."""

    def acquire(
        self,
        key: str,
        holder: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        ...

    def release(
        self,
        key: str,
        holder: str,
        hold_until: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        ...

    def extend(
        self,
        key: str,
        holder: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        ...

    def holder(self, key: str, now: Optional[datetime] = None) -> Optional[str]:
        ...

    def active_locks(self, now: Optional[datetime] = None) -> List[LockInfo]:
        ...

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        ...

    def force_release(self, key: str) -> bool:
        ...


class MemoryLockStore:
    """Process-local lock store guarded by a mutex."""

    def __init__(self) -> None:
        self._locks: Dict[str, LockInfo] = {}
        self._mutex = threading.Lock()

    def acquire(
        self,
        key: str,
        holder: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        now = _as_utc(now)
        with self._mutex:
            current = self._locks.get(key)
            if current is not None and current.expires_at > now:
                return False
            self._locks[key] = LockInfo(
                key=key,
                holder=holder,
                acquired_at=now,
                expires_at=now + timedelta(seconds=ttl_seconds),
            )
            return True

    def release(
        self,
        key: str,
        holder: str,
        hold_until: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        now = _as_utc(now)
        with self._mutex:
            current = self._locks.get(key)
            if current is None or current.holder != holder:
                return False
            if hold_until is not None and _as_utc(hold_until) > now:
                self._locks[key] = LockInfo(
                    key=key,
                    holder=holder,
                    acquired_at=current.acquired_at,
                    expires_at=min(current.expires_at, _as_utc(hold_until)),
                )
            else:
                del self._locks[key]
            return True

    def extend(
        self,
        key: str,
        holder: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        now = _as_utc(now)
        with self._mutex:
            current = self._locks.get(key)
            if current is None or current.holder != holder:
                return False
            self._locks[key] = LockInfo(
                key=key,
                holder=holder,
                acquired_at=current.acquired_at,
                expires_at=now + timedelta(seconds=ttl_seconds),
            )
            return True

    def holder(self, key: str, now: Optional[datetime] = None) -> Optional[str]:
        now = _as_utc(now)
        with self._mutex:
            current = self._locks.get(key)
            if current is None or current.expires_at <= now:
                return None
            return current.holder

    def active_locks(self, now: Optional[datetime] = None) -> List[LockInfo]:
        now = _as_utc(now)
        with self._mutex:
            locks = [lock for lock in self._locks.values() if lock.expires_at > now]
        return sorted(locks, key=lambda lock: lock.acquired_at)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = _as_utc(now)
        with self._mutex:
            expired = [key for key, lock in self._locks.items() if lock.expires_at <= now]
            for key in expired:
                del self._locks[key]
        return len(expired)

    def force_release(self, key: str) -> bool:
        with self._mutex:
            return self._locks.pop(key, None) is not None


class DatabaseLockStore:
    """Lock store backed by the ``schedule_locks`` table.

    Acquire deletes an expired row for the key, then inserts a new one;
    the primary key makes a concurrent insert fail, which is reported as
    contention.

    Example:
        store = DatabaseLockStore(get_session_maker())
        if store.acquire("docker_cleanup:4", "node-a", ttl_seconds=600):
            ...
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        """Initialize the store.

        Args:
            session_factory: SQLAlchemy session maker bound to the shared database
        """
        self._session_factory = session_factory

    def acquire(
        self,
        key: str,
        holder: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        now = _as_utc(now)
        session = self._session_factory()
        try:
            session.query(ScheduleLock).filter(
                ScheduleLock.lock_key == key,
                ScheduleLock.expires_at <= _naive(now),
            ).delete(synchronize_session=False)
            session.add(ScheduleLock(
                lock_key=key,
                holder=holder,
                acquired_at=_naive(now),
                expires_at=_naive(now + timedelta(seconds=ttl_seconds)),
            ))
            session.commit()
            logger.debug(f"Acquired lock {key} for {holder}")
            return True
        except IntegrityError:
            session.rollback()
            logger.debug(f"Lock {key} already held")
            return False
        finally:
            session.close()

    def release(
        self,
        key: str,
        holder: str,
        hold_until: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        now = _as_utc(now)
        session = self._session_factory()
        try:
            lock = session.query(ScheduleLock).filter(
                ScheduleLock.lock_key == key,
                ScheduleLock.holder == holder,
            ).first()
            if lock is None:
                return False
            if hold_until is not None and _as_utc(hold_until) > now:
                lock.expires_at = min(lock.expires_at, _naive(hold_until))
            else:
                session.delete(lock)
            session.commit()
            logger.debug(f"Released lock {key} held by {holder}")
            return True
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def extend(
        self,
        key: str,
        holder: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """Push back the expiry of a lock this holder still owns."""
        now = _as_utc(now)
        session = self._session_factory()
        try:
            count = session.query(ScheduleLock).filter(
                ScheduleLock.lock_key == key,
                ScheduleLock.holder == holder,
            ).update(
                {ScheduleLock.expires_at: _naive(now + timedelta(seconds=ttl_seconds))},
                synchronize_session=False,
            )
            session.commit()
            if count:
                logger.debug(f"Extended lock {key} for {holder}")
            return count > 0
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def holder(self, key: str, now: Optional[datetime] = None) -> Optional[str]:
        now = _as_utc(now)
        session = self._session_factory()
        try:
            lock = session.query(ScheduleLock).filter(
                ScheduleLock.lock_key == key,
                ScheduleLock.expires_at > _naive(now),
            ).first()
            return lock.holder if lock else None
        finally:
            session.close()

    def active_locks(self, now: Optional[datetime] = None) -> List[LockInfo]:
        now = _as_utc(now)
        session = self._session_factory()
        try:
            rows = session.query(ScheduleLock).filter(
                ScheduleLock.expires_at > _naive(now),
            ).order_by(ScheduleLock.acquired_at).all()
            return [
                LockInfo(
                    key=row.lock_key,
                    holder=row.holder,
                    acquired_at=_as_utc(row.acquired_at),
                    expires_at=_as_utc(row.expires_at),
                )
                for row in rows
            ]
        finally:
            session.close()

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = _as_utc(now)
        session = self._session_factory()
        try:
            count = session.query(ScheduleLock).filter(
                ScheduleLock.expires_at <= _naive(now),
            ).delete(synchronize_session=False)
            session.commit()
            if count:
                logger.info(f"Purged {count} expired locks")
            return count
        finally:
            session.close()

    def force_release(self, key: str) -> bool:
        session = self._session_factory()
        try:
            count = session.query(ScheduleLock).filter(
                ScheduleLock.lock_key == key,
            ).delete(synchronize_session=False)
            session.commit()
            if count:
                logger.warning(f"Force released lock {key}")
            return count > 0
        finally:
            session.close()

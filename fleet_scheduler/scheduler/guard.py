"""Dispatch guard: single-flight job submission across the fleet.

Every scheduler node runs the same tick and builds the same rules. The
guard makes sure a due rule reaches the executor on exactly one node:

1. The trigger is parsed in the rule's timezone. A rule that does not
   fire in the current minute is not due.
2. A lock keyed by the job identity is taken with a TTL equal to the
   trigger's shortest period. Losing the race is normal and the rule is
   skipped for this tick.
3. The job is handed to the executor. While the body runs, the guard
   remembers its future and renew_running() keeps the lock alive, so a
   long job is never started twice. When the body finishes, the lock is
   kept until the end of the trigger window and then freed, so a node
   that ticks late in the same minute cannot run the job again.
"""

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger

from fleet_scheduler.scheduler.builder import ScheduleRule
from fleet_scheduler.scheduler.exceptions import AlreadyRunning, InvalidTriggerError
from fleet_scheduler.scheduler.executor import JobExecutor
from fleet_scheduler.scheduler.locks import LockStore, utcnow

logger = logging.getLogger(__name__)

WINDOW = timedelta(minutes=1)

# Number of consecutive fire times sampled to find the shortest period
PERIOD_SAMPLES = 6


class DispatchOutcome(Enum):
    """What happened to a rule submitted to the guard."""

    DISPATCHED = "dispatched"
    NOT_DUE = "not_due"
    SKIPPED = "skipped"


@dataclass
class _RunningJob:
    future: Future
    ttl_seconds: int


def parse_trigger(
    expression: str,
    tz: str,
    job_identity: Optional[str] = None,
) -> CronTrigger:
    """Parse a cron expression into a CronTrigger.

    Supports both 5-part (minute hour day month weekday) and
    6-part (second minute hour day month weekday) cron formats.

    Args:
        expression: Cron expression
        tz: IANA timezone name the expression is evaluated in
        job_identity: Rule identity, for error reporting

    Returns:
        CronTrigger instance

    Raises:
        InvalidTriggerError: If the expression or timezone is invalid
    """
    parts = expression.split()
    try:
        if len(parts) == 6:
            second, minute, hour, day, month, weekday = parts
            return CronTrigger(
                second=second,
                minute=minute,
                hour=hour,
                day=day,
                month=month,
                day_of_week=weekday,
                timezone=tz,
            )
        if len(parts) == 5:
            minute, hour, day, month, weekday = parts
            return CronTrigger(
                minute=minute,
                hour=hour,
                day=day,
                month=month,
                day_of_week=weekday,
                timezone=tz,
            )
    except (ValueError, KeyError, TypeError) as e:
        raise InvalidTriggerError(str(e), job_identity, expression) from e

    raise InvalidTriggerError(
        "Expected 5 or 6 parts (minute hour day month weekday "
        "or second minute hour day month weekday)",
        job_identity,
        expression,
    )


def window_start(now: datetime) -> datetime:
    """Start of the minute containing ``now``, in UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).replace(second=0, microsecond=0)


def is_due(trigger: CronTrigger, now: datetime) -> bool:
    """Check whether a trigger fires within the minute containing ``now``."""
    start = window_start(now)
    fire_time = trigger.get_next_fire_time(None, start)
    return fire_time is not None and fire_time < start + WINDOW


def trigger_period(trigger: CronTrigger, start: datetime) -> Optional[timedelta]:
    """Shortest gap between consecutive fire times after ``start``.

    Returns:
        The shortest gap, or None when the trigger fires fewer than twice
    """
    gaps = []
    previous = trigger.get_next_fire_time(None, start)
    for _ in range(PERIOD_SAMPLES):
        if previous is None:
            break
        following = trigger.get_next_fire_time(previous, previous + timedelta(seconds=1))
        if following is None:
            break
        gaps.append(following - previous)
        previous = following
    return min(gaps) if gaps else None


class DispatchGuard:
    """Submits due rules to the executor at most once across all nodes.

    Example:
        guard = DispatchGuard(MemoryLockStore(), JobExecutor(), node_id="node-a")
        outcome = guard.submit(rule)
        if outcome is DispatchOutcome.SKIPPED:
            ...  # another node has it, or its last run is still going
    """

    def __init__(
        self,
        lock_store: LockStore,
        executor: JobExecutor,
        node_id: str,
        min_ttl: int = 60,
        max_ttl: int = 24 * 60 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the guard.

        Args:
            lock_store: Store shared by every scheduler node
            executor: Executor that runs job bodies
            node_id: Identity of this node, recorded as lock holder
            min_ttl: Lower bound of a lock's lifetime, in seconds
            max_ttl: Upper bound of a lock's lifetime, in seconds
            clock: Source of the current time for lock release
        """
        self._lock_store = lock_store
        self._executor = executor
        self._node_id = node_id
        self._min_ttl = min_ttl
        self._max_ttl = max_ttl
        self._clock = clock
        self._running: Dict[str, _RunningJob] = {}
        self._running_lock = threading.Lock()

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def lock_store(self) -> LockStore:
        return self._lock_store

    def is_running(self, job_identity: str) -> bool:
        """Check whether a job body dispatched by this node is still executing."""
        with self._running_lock:
            job = self._running.get(job_identity)
        return job is not None and not job.future.done()

    def running_jobs(self) -> List[str]:
        """Identities of job bodies dispatched by this node and not yet finished."""
        with self._running_lock:
            jobs = list(self._running.items())
        return [identity for identity, job in jobs if not job.future.done()]

    def renew_running(self, now: Optional[datetime] = None) -> int:
        """Push back the lock expiry of every job still executing on this node.

        Called from the tick and from the daemon heartbeat, so the TTL only
        decides when a crashed node's locks become free.

        Args:
            now: Renewal time (default: current time)

        Returns:
            Number of locks extended
        """
        now = now or self._clock()
        with self._running_lock:
            jobs = [
                (identity, job.ttl_seconds)
                for identity, job in self._running.items()
                if not job.future.done()
            ]

        renewed = 0
        for job_identity, ttl in jobs:
            try:
                if self._lock_store.extend(job_identity, self._node_id, ttl, now):
                    renewed += 1
                else:
                    logger.warning(f"Lock for running job {job_identity} is no longer held")
            except Exception as e:
                logger.error(f"Failed to renew lock for {job_identity}: {e}")
        return renewed

    def lock_ttl(self, trigger: CronTrigger, now: datetime) -> int:
        """Lock lifetime for a trigger: its shortest period, clamped."""
        period = trigger_period(trigger, window_start(now))
        if period is None:
            return self._max_ttl
        seconds = int(period.total_seconds())
        return max(self._min_ttl, min(seconds, self._max_ttl))

    def acquire(self, job_identity: str, ttl_seconds: int, now: datetime) -> None:
        """Take the lock for a job identity.

        Raises:
            AlreadyRunning: If a previous run on this node is still executing
                or another submission holds the lock
        """
        if self.is_running(job_identity):
            raise AlreadyRunning(job_identity, self._node_id)
        if not self._lock_store.acquire(job_identity, self._node_id, ttl_seconds, now):
            raise AlreadyRunning(job_identity, self._lock_store.holder(job_identity, now))

    def submit(self, rule: ScheduleRule, now: Optional[datetime] = None) -> DispatchOutcome:
        """Submit a rule for execution if it is due and nobody else runs it.

        Args:
            rule: Rule to submit
            now: Tick time (default: current time)

        Returns:
            The dispatch outcome

        Raises:
            InvalidTriggerError: If the rule's trigger cannot be parsed
            JobSubmissionError: If the executor refuses the job
        """
        now = now or self._clock()
        trigger = parse_trigger(rule.trigger, rule.timezone, rule.job_identity)

        if not is_due(trigger, now):
            return DispatchOutcome.NOT_DUE

        ttl = self.lock_ttl(trigger, now)
        try:
            self.acquire(rule.job_identity, ttl, now)
        except AlreadyRunning as e:
            logger.debug(f"Skipping {rule.job_identity}: held by {e.holder or 'another node'}")
            return DispatchOutcome.SKIPPED

        try:
            future = self._executor.submit(rule.job_identity, rule.payload)
        except Exception:
            self._lock_store.release(rule.job_identity, self._node_id)
            raise

        with self._running_lock:
            self._running[rule.job_identity] = _RunningJob(future, ttl)

        hold_until = window_start(now) + WINDOW
        future.add_done_callback(
            lambda f: self._on_done(rule.job_identity, hold_until, f)
        )
        logger.debug(f"Dispatched {rule.job_identity} (lock ttl {ttl}s)")
        return DispatchOutcome.DISPATCHED

    def _on_done(self, job_identity: str, hold_until: datetime, future: Future) -> None:
        with self._running_lock:
            job = self._running.get(job_identity)
            if job is not None and job.future is future:
                del self._running[job_identity]

        if future.cancelled():
            logger.warning(f"Job {job_identity} was cancelled")
        elif future.exception() is not None:
            logger.error(f"Job {job_identity} failed: {future.exception()}")
        else:
            logger.debug(f"Job {job_identity} completed")

        try:
            self._lock_store.release(
                job_identity, self._node_id, hold_until=hold_until, now=self._clock()
            )
        except Exception as e:
            # Lock expires on its own after the TTL
            logger.error(f"Failed to release lock for {job_identity}: {e}")

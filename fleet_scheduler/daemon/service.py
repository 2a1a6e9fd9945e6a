"""Scheduler daemon.

This module provides:
- Wiring of the entity store, lock store, executor and dispatch guard
- An APScheduler job that runs one tick per minute
- A heartbeat job that renews the locks of jobs still executing
- Signal handling for graceful shutdown
- Background daemon mode with process forking
"""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from fleet_scheduler.config import FleetConfig
from fleet_scheduler.database.connection import create_tables, get_session_maker
from fleet_scheduler.database.store import SqlEntityStore
from fleet_scheduler.scheduler.builder import DeploymentMode
from fleet_scheduler.scheduler.exceptions import SnapshotLoadError
from fleet_scheduler.scheduler.executor import JobExecutor
from fleet_scheduler.scheduler.guard import DispatchGuard, parse_trigger
from fleet_scheduler.scheduler.locks import DatabaseLockStore, LockStore, MemoryLockStore
from fleet_scheduler.scheduler.tick import TickOrchestrator, TickReport

logger = logging.getLogger(__name__)

TICK_JOB_ID = "fleetsched-tick"
HEARTBEAT_JOB_ID = "fleetsched-heartbeat"

# Shorter than the minimum lock TTL so a running job never loses its lock
HEARTBEAT_SECONDS = 20

# Daemon instance used by the module-level tick wrapper
_global_daemon: Optional["SchedulerDaemon"] = None


def create_lock_store(config: FleetConfig) -> LockStore:
    """Create the lock store selected by ``scheduler.lock_backend``."""
    if config.scheduler.lock_backend == "memory":
        return MemoryLockStore()
    return DatabaseLockStore(get_session_maker(config))


def create_orchestrator(
    config: FleetConfig,
    executor: Optional[JobExecutor] = None,
    lock_store: Optional[LockStore] = None,
) -> TickOrchestrator:
    """Wire a tick orchestrator from configuration.

    Args:
        config: Scheduler configuration
        executor: Job executor (default: a new pool sized from config)
        lock_store: Lock store (default: from ``scheduler.lock_backend``)

    Returns:
        Ready-to-run orchestrator
    """
    executor = executor or JobExecutor(max_workers=config.scheduler.max_workers)
    guard = DispatchGuard(
        lock_store=lock_store or create_lock_store(config),
        executor=executor,
        node_id=config.scheduler.node_id,
        min_ttl=config.scheduler.min_lock_ttl,
        max_ttl=config.scheduler.max_lock_ttl,
    )
    store = SqlEntityStore(get_session_maker(config), config.instance)
    return TickOrchestrator(
        store=store,
        guard=guard,
        mode_provider=lambda: DeploymentMode.from_string(config.deployment.mode),
        cloud_provider=lambda: config.deployment.cloud,
    )


def _run_tick_wrapper() -> None:
    """Module-level tick entry point for APScheduler.

    APScheduler gets a plain function instead of a bound method so the
    daemon instance is never serialized into the job store.
    """
    if _global_daemon is None:
        logger.error("Scheduler daemon not initialized, cannot run tick")
        return
    _global_daemon.tick()


def _renew_locks_wrapper() -> None:
    """Module-level heartbeat entry point for APScheduler."""
    if _global_daemon is None:
        return
    _global_daemon.renew_locks()


class SchedulerDaemon:
    """Runs the tick loop until shutdown.

    Attributes:
        _config: Scheduler configuration
        _executor: Worker pool for job bodies
        _orchestrator: Tick orchestrator, created on start
        _scheduler: APScheduler instance driving the tick cadence

    Example:
        daemon = SchedulerDaemon(config)
        await daemon.start()
        await daemon.run_until_shutdown()
        await daemon.stop()
    """

    def __init__(
        self,
        config: FleetConfig,
        executor: Optional[JobExecutor] = None,
        orchestrator: Optional[TickOrchestrator] = None,
    ):
        """Initialize the daemon.

        Args:
            config: Scheduler configuration
            executor: Job executor with handlers registered
            orchestrator: Pre-built orchestrator (default: wired from config)
        """
        self._config = config
        self._executor = executor or JobExecutor(max_workers=config.scheduler.max_workers)
        self._orchestrator = orchestrator
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._last_report: Optional[TickReport] = None
        self._tick_count = 0

    async def start(self) -> None:
        """Create tables if needed and start the tick job."""
        if self._running:
            logger.warning("Scheduler daemon already running")
            return

        logger.info(f"Starting scheduler daemon (node {self._config.scheduler.node_id})...")

        if self._orchestrator is None:
            create_tables(self._config)
            self._orchestrator = create_orchestrator(self._config, executor=self._executor)

        global _global_daemon
        _global_daemon = self

        self._scheduler = self._create_scheduler()
        self._setup_listeners()
        self._scheduler.start()

        self._scheduler.add_job(
            func=_run_tick_wrapper,
            trigger=parse_trigger(self._config.scheduler.tick_cron, "UTC", TICK_JOB_ID),
            id=TICK_JOB_ID,
            name="Fleet schedule tick",
            replace_existing=True,
        )
        self._scheduler.add_job(
            func=_renew_locks_wrapper,
            trigger=IntervalTrigger(seconds=HEARTBEAT_SECONDS),
            id=HEARTBEAT_JOB_ID,
            name="Running job lock heartbeat",
            replace_existing=True,
        )

        self._running = True
        logger.info(
            f"Scheduler daemon started in {self._config.deployment.mode} mode "
            f"(tick: {self._config.scheduler.tick_cron})"
        )

    async def stop(self) -> None:
        """Stop ticking, then let running job bodies finish."""
        if not self._running:
            return

        logger.info("Stopping scheduler daemon...")

        if self._scheduler:
            try:
                self._scheduler.shutdown(wait=True)
            except Exception as e:
                logger.warning(f"Error stopping scheduler: {e}")
            self._scheduler = None

        global _global_daemon
        if _global_daemon is self:
            _global_daemon = None

        self._executor.shutdown(wait=True)
        self._running = False
        logger.info("Scheduler daemon stopped")

    def tick(self) -> Optional[TickReport]:
        """Run one tick.

        Returns:
            The tick report, or None when scheduling is disabled or the
            snapshot could not be loaded
        """
        if not self._config.scheduler.enabled:
            logger.debug("Scheduling disabled, skipping tick")
            return None
        if self._orchestrator is None:
            logger.error("Tick requested before the daemon was started")
            return None

        try:
            self._orchestrator.guard.lock_store.purge_expired()
        except Exception as e:
            logger.warning(f"Failed to purge expired locks: {e}")

        try:
            report = self._orchestrator.run_tick()
        except SnapshotLoadError as e:
            logger.error(f"Tick aborted: {e}")
            return None

        self._tick_count += 1
        self._last_report = report
        return report

    def renew_locks(self) -> int:
        """Extend the locks of job bodies still executing on this node.

        Returns:
            Number of locks extended
        """
        if self._orchestrator is None:
            return 0
        return self._orchestrator.guard.renew_running()

    async def run_until_shutdown(self) -> None:
        """Block until request_shutdown() is called."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request daemon shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_report(self) -> Optional[TickReport]:
        return self._last_report

    def get_status(self) -> Dict[str, Any]:
        """Get daemon status.

        Returns:
            Dictionary with daemon status information
        """
        next_tick = None
        if self._scheduler:
            job = self._scheduler.get_job(TICK_JOB_ID)
            if job and job.next_run_time:
                next_tick = job.next_run_time.isoformat()

        return {
            "running": self._running,
            "node_id": self._config.scheduler.node_id,
            "mode": self._config.deployment.mode,
            "ticks": self._tick_count,
            "running_jobs": (
                len(self._orchestrator.guard.running_jobs()) if self._orchestrator else 0
            ),
            "next_tick": next_tick,
            "last_tick": self._last_report.summary() if self._last_report else None,
        }

    def _create_scheduler(self) -> AsyncIOScheduler:
        """Create and configure the APScheduler instance."""
        jobstores = {"default": MemoryJobStore()}

        executors = {"default": AsyncIOExecutor()}

        job_defaults = {
            "coalesce": True,  # Combine missed ticks
            "max_instances": 1,  # Ticks never overlap on one node
            "misfire_grace_time": 30,
        }

        return AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone="UTC",
        )

    def _setup_listeners(self) -> None:
        """Set up APScheduler event listeners."""
        if not self._scheduler:
            return

        def on_job_executed(event: Any) -> None:
            logger.debug(f"Tick job {event.job_id} finished")

        def on_job_error(event: Any) -> None:
            exception = getattr(event, "exception", "Unknown error")
            logger.error(f"Tick job {event.job_id} failed: {exception}")

        def on_job_missed(event: Any) -> None:
            logger.warning(f"Tick job {event.job_id} missed scheduled run")

        self._scheduler.add_listener(on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(on_job_missed, EVENT_JOB_MISSED)


async def run_daemon(config: FleetConfig, options: Optional[Dict[str, Any]] = None) -> None:
    """Run the scheduler daemon with signal handling.

    Args:
        config: Scheduler configuration
        options: Daemon options:
            - executor: JobExecutor with job handlers registered

    Example:
        await run_daemon(config, {"executor": executor})
    """
    options = options or {}
    daemon = SchedulerDaemon(config, executor=options.get("executor"))

    loop = asyncio.get_running_loop()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, initiating shutdown...")
        daemon.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda signum, frame: handle_signal(signal.Signals(signum)))

    try:
        await daemon.start()
        await daemon.run_until_shutdown()
    finally:
        await daemon.stop()


def daemonize(log_file: Optional[Path] = None) -> None:
    """Fork process to run as daemon.

    Forks twice and redirects the standard file descriptors.

    Args:
        log_file: Path for stdout/stderr. If None, output goes to /dev/null.

    Note:
        Unix only. On Windows this returns without doing anything.
    """
    if sys.platform == "win32":
        logger.warning("Daemon mode not supported on Windows")
        return

    pid = os.fork()
    if pid > 0:
        sys.exit(0)

    os.setsid()

    pid = os.fork()
    if pid > 0:
        sys.exit(0)

    sys.stdout.flush()
    sys.stderr.flush()

    with open('/dev/null', 'r') as devnull:
        os.dup2(devnull.fileno(), sys.stdin.fileno())

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(log_file, 'a+') as f:
            os.dup2(f.fileno(), sys.stdout.fileno())
            os.dup2(f.fileno(), sys.stderr.fileno())
    else:
        with open('/dev/null', 'a+') as devnull:
            os.dup2(devnull.fileno(), sys.stdout.fileno())
            os.dup2(devnull.fileno(), sys.stderr.fileno())

    logger.info(f"Daemon process started (PID: {os.getpid()})")

"""Job executor for dispatched rules.

The executor runs job bodies on a worker pool, away from the tick. Job
bodies themselves (backups, cleanups, health checks, updates) live
outside this package and are plugged in as handlers keyed by job kind.
The dispatch guard is the only caller of ``submit``.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from fleet_scheduler.scheduler.builder import JobPayload
from fleet_scheduler.scheduler.exceptions import JobSubmissionError

logger = logging.getLogger(__name__)

JobHandler = Callable[[str, JobPayload], Any]


def log_dispatch(job_identity: str, payload: JobPayload) -> None:
    """Default handler: record that a job was dispatched."""
    logger.info(f"Dispatched {job_identity} (kind={payload.kind}, entity={payload.entity_id})")


class JobExecutor:
    """Runs job handlers on a thread pool.

    Example:
        executor = JobExecutor(max_workers=4)
        executor.register("database_backup", run_backup)
        future = executor.submit("database_backup:7", payload)
    """

    def __init__(
        self,
        max_workers: int = 8,
        default_handler: Optional[JobHandler] = log_dispatch,
    ) -> None:
        """Initialize the executor.

        Args:
            max_workers: Size of the worker pool
            default_handler: Handler for kinds without a registered one.
                With None, unknown kinds are refused.
        """
        self._max_workers = max_workers
        self._default_handler = default_handler
        self._handlers: Dict[str, JobHandler] = {}
        self._pool: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def handlers(self) -> Dict[str, JobHandler]:
        """Registered handlers by job kind."""
        return dict(self._handlers)

    def register(self, kind: str, handler: JobHandler) -> None:
        """Register the handler for a job kind, replacing any previous one."""
        self._handlers[kind] = handler
        logger.debug(f"Registered handler for {kind}")

    def handler_for(self, kind: str) -> Optional[JobHandler]:
        """Get the handler that would run a job kind."""
        return self._handlers.get(kind, self._default_handler)

    def submit(self, job_identity: str, payload: JobPayload) -> Future:
        """Queue a job body for asynchronous execution.

        Args:
            job_identity: Identity of the rule being run
            payload: Job payload

        Returns:
            Future completing when the handler returns or raises

        Raises:
            JobSubmissionError: If no handler exists or the executor is shut down
        """
        handler = self.handler_for(payload.kind)
        if handler is None:
            raise JobSubmissionError(f"No handler for job kind {payload.kind!r}", job_identity)

        with self._lock:
            if self._closed:
                raise JobSubmissionError("Executor is shut down", job_identity)
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="fleetsched-job",
                )
            future = self._pool.submit(self._run, handler, job_identity, payload)
        return future

    @staticmethod
    def _run(handler: JobHandler, job_identity: str, payload: JobPayload) -> Any:
        try:
            return handler(job_identity, payload)
        except Exception:
            logger.exception(f"Job {job_identity} failed")
            raise

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs and optionally wait for running ones."""
        with self._lock:
            self._closed = True
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

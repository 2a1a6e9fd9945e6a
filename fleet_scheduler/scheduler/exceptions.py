"""Exceptions for schedule building and dispatch."""


class SchedulerError(Exception):
    """Base exception for scheduler errors."""

    def __init__(self, message: str, job_identity: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.job_identity = job_identity

    def __str__(self) -> str:
        if self.job_identity:
            return f"{self.message} (job: {self.job_identity})"
        return self.message


class InvalidTriggerError(SchedulerError):
    """Raised when a rule's trigger expression or timezone cannot be parsed."""

    def __init__(
        self,
        message: str,
        job_identity: str | None = None,
        trigger: str | None = None,
    ) -> None:
        super().__init__(message, job_identity)
        self.trigger = trigger

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.trigger is not None:
            parts.append(f"(trigger: {self.trigger!r})")
        return " ".join(parts)


class AlreadyRunning(SchedulerError):
    """Raised when a job identity is locked by another node or still executing here."""

    def __init__(self, job_identity: str, holder: str | None = None) -> None:
        super().__init__("Job is already running or its window has not elapsed", job_identity)
        self.holder = holder


class JobSubmissionError(SchedulerError):
    """Raised when the executor refuses a job."""
    pass


class DuplicateRuleError(SchedulerError):
    """Raised when a schedule plan contains the same job identity twice."""
    pass


class SnapshotLoadError(SchedulerError):
    """Raised when the entity store cannot produce a snapshot.

    Fatal for the tick: nothing is built and nothing is submitted.
    """
    pass

class QueueError(Exception):
    """Base class for job queue errors."""


class ValidationError(QueueError, ValueError):
    """Submission rejected before any job was created."""


class JobNotFound(QueueError, LookupError):
    pass


class BatchNotFound(QueueError, LookupError):
    pass


class ClaimConflict(QueueError):
    """Another tick won the race for the candidate job."""


class InvalidTransition(QueueError):
    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class TransientStoreError(QueueError):
    """The persistence layer could not be reached during a tick."""


class ExecutionFailure(QueueError):
    """The research pipeline could not produce a result for a job."""


class CollaboratorError(ExecutionFailure):
    """A research client or market data call failed."""

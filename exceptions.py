"""Error taxonomy for the job orchestration service."""

from typing import Optional


class JobOrchestrationError(Exception):
    """Base class for all orchestration errors."""


class JobNotFound(JobOrchestrationError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransition(JobOrchestrationError):
    """Raised when a status change is illegal or its guard was lost to another writer."""

    def __init__(self, job_id: str, current: Optional[str], target: str):
        super().__init__(f"Job {job_id}: cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class DuplicateJob(JobOrchestrationError):
    def __init__(self, existing_job_id: str, status: str):
        super().__init__(f"An active job already exists: {existing_job_id} ({status})")
        self.existing_job_id = existing_job_id
        self.status = status


class UnknownJobKind(JobOrchestrationError):
    pass


class FatalWorkloadError(JobOrchestrationError):
    """Chunk-level failure: the job moves to error and no further chunk runs."""


class ItemError(JobOrchestrationError):
    """Per-item failure; counted in the job metrics, the chunk continues."""


class SystemBusy(JobOrchestrationError):
    """Backpressure is active and new chunk dispatch is suspended."""

    def __init__(self, reason: Optional[str] = None, retry_after: int = 0):
        super().__init__(f"System busy: {reason or 'backpressure active'}")
        self.reason = reason
        self.retry_after = retry_after

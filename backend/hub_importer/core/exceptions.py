"""Error types raised by the import-job engine."""

from __future__ import annotations


class ImportJobError(Exception):
    """Base class for import engine errors."""


class ValidationError(ImportJobError, ValueError):
    """Raised when job creation parameters are missing or malformed."""

    pass


class JobNotFoundError(ImportJobError, LookupError):
    """No job with that id exists for the requesting factory."""

    def __init__(self, job_id: str):
        super().__init__(f"Import job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(ImportJobError):
    """The job's current status does not allow the requested transition."""

    def __init__(self, job_id: str, status: str, reason: str):
        super().__init__(f"Import job {job_id} is {reason} (status={status})")
        self.job_id = job_id
        self.status = status
        self.reason = reason


class SourceError(ImportJobError):
    """A source adapter could not produce rows."""


class JobTimeoutError(ImportJobError):
    """A job ran past the configured maximum runtime."""


class WorkerNotRunningError(ImportJobError, RuntimeError):
    """A submission reached a worker that is not (or no longer) running."""

"""Typed failures for the job lifecycle.

Store adapters and the processor client convert transport errors into these
at their boundary, so callers only ever handle ``JobError`` subclasses.
"""


class JobError(Exception):
    """Base class for every job lifecycle failure."""


class AuthenticationRequired(JobError):
    """No authenticated user was supplied for an operation that needs one."""

    def __init__(self, message: str = "You must be logged in to create jobs") -> None:
        super().__init__(message)


class JobValidationError(JobError):
    """Creation input was rejected before anything was written."""


class StoreError(JobError):
    """The persistent job store was unreachable or rejected a request."""


class StoreReadError(StoreError):
    pass


class StoreWriteError(StoreError):
    pass


class TriggerInvocationError(JobError):
    """The remote job processor could not be invoked."""


class MirrorConflictError(JobError):
    """A versioned mirror write lost against a newer record."""

    def __init__(self, job_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Mirror record for job {job_id} is at version {actual}, expected {expected}"
        )
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


class DriveAuthError(JobError):
    """No usable Google Drive access token is available."""


class DriveExportError(JobError):
    """A job could not be exported to Google Drive."""

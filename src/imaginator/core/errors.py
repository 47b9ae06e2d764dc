"""Exception hierarchy for the Imaginator service.

Every error raised deliberately by the core derives from
:class:`ImaginatorError` so the HTTP layer can translate failures without
catching unrelated exceptions.

Taxonomy
--------
JobValidationError
    Malformed submission.  Raised synchronously; no job is created.
JobNotFound
    Lookup of an unknown job id.  Never mutates anything.
DuplicateJobId
    A job id was reused.  Indicates an id-generation defect upstream and is
    fatal to that single submission.
InvalidTransition
    A mutation that would leave the job state machine (for example touching a
    terminal job, or completing without artifacts).
BackendUnreachable / BackendError
    Failures talking to the generation backend.  The event router always
    converts these into a ``failed`` job.
ArtifactError
    The backend returned bytes that are not a usable image.
"""

from __future__ import annotations


class ImaginatorError(Exception):
    """Base class for all Imaginator errors."""


class JobValidationError(ImaginatorError):
    """Raised when a submission is malformed."""


class JobNotFound(ImaginatorError):
    """Raised when a job id is not present in the registry."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class DuplicateJobId(ImaginatorError):
    """Raised when creating a job whose id already exists."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


class InvalidTransition(ImaginatorError):
    """Raised when an update would violate the job state machine."""


class BackendUnreachable(ImaginatorError):
    """Raised when the generation backend cannot be reached."""


class BackendError(ImaginatorError):
    """Raised when the backend answers with a non-success response.

    Attributes:
        status_code: HTTP status returned by the backend, or ``None`` when the
            failure was a malformed payload on a successful response.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ArtifactError(ImaginatorError):
    """Raised when artifact bytes cannot be decoded or stored."""

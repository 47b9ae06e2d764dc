"""In-memory job registry and lifecycle state machine.

The registry is the single owner of every :class:`Job` record.  Callers never
hold a live reference: reads return deep copies, and all mutation goes through
:meth:`JobRegistry.transition` or one of the helpers built on it.

State Machine
-------------
::

    queued ──────────> processing ──────────> completed
       │                  │  ^ (progress)
       │                  └──┘
       └──────────────────┴─────────────────> failed

``completed`` and ``failed`` are terminal.  Any update to a terminal job, or a
status change that is not an edge above, raises :class:`InvalidTransition`.

Concurrency
-----------
A single re-entrant lock serialises every read-modify-write.  It is held only
for in-memory work, so it is safe to call from asyncio coroutines as well as
from worker threads.  :meth:`JobRegistry.prune_stale` checks and deletes each
record under the same lock, so a sweep can never delete a job halfway through
a transition.

Retention
---------
Only ``completed`` jobs are pruned.  ``failed`` and in-flight jobs are kept
until the process exits.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from imaginator.core.errors import DuplicateJobId, InvalidTransition, JobNotFound

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Lifecycle status of a job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


_ALLOWED: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class Artifact(BaseModel):
    """Reference to one produced image.

    Attributes:
        filename: Name of the stored file inside the images directory.
        url: Public URL under which the stored file is served.
        backend_name: Filename the backend used for the output.
    """

    filename: str
    url: str
    backend_name: str


class Job(BaseModel):
    """One tracked generation request."""

    id: str
    prompt_raw: str
    prompt_compiled: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    backend_handle: str | None = None
    artifacts: list[Artifact] = Field(default_factory=list)
    error: str | None = None
    created_at: float
    updated_at: float


def _error_message(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


class JobRegistry:
    """Thread-safe store of job records.

    Args:
        clock: Callable returning the current time in epoch seconds.  Tests
            inject a fake clock to control ``created_at`` and pruning.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        # Insertion order doubles as the tie-breaker for equal timestamps.
        self._jobs: dict[str, Job] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    # -- Creation and transitions ------------------------------------------

    def create_job(self, job_id: str, prompt: str, options: dict[str, Any] | None = None) -> Job:
        """Insert a new ``queued`` job.

        Raises:
            DuplicateJobId: If *job_id* is already registered.
        """
        with self._lock:
            if job_id in self._jobs:
                raise DuplicateJobId(job_id)
            now = self._clock()
            job = Job(
                id=job_id,
                prompt_raw=prompt,
                options=dict(options or {}),
                created_at=now,
                updated_at=now,
            )
            self._jobs[job_id] = job
            logger.debug(f"Created job {job_id}")
            return job.model_copy(deep=True)

    def transition(self, job_id: str, **updates: Any) -> Job:
        """Merge *updates* into a job and stamp ``updated_at``.

        The merged record is validated against the state machine before it
        replaces the stored one, so a rejected update leaves the job as it was.

        Raises:
            JobNotFound: If *job_id* is not registered.
            InvalidTransition: If the job is terminal, the status change is not
                allowed, or the result would break a record invariant.
        """
        if "id" in updates or "created_at" in updates or "prompt_raw" in updates:
            raise InvalidTransition("id, prompt_raw and created_at are immutable")

        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFound(job_id)
            if current.status.is_terminal:
                raise InvalidTransition(
                    f"Job {job_id} is {current.status.value} and cannot be modified"
                )

            target = JobStatus(updates.get("status", current.status))
            if target not in _ALLOWED[current.status]:
                raise InvalidTransition(
                    f"Job {job_id} cannot move from {current.status.value} to {target.value}"
                )

            updated = current.model_copy(
                update={**updates, "status": target, "updated_at": self._clock()},
                deep=True,
            )
            self._check_invariants(updated)
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    @staticmethod
    def _check_invariants(job: Job) -> None:
        if job.status is JobStatus.COMPLETED and not job.artifacts:
            raise InvalidTransition(f"Job {job.id} cannot complete without artifacts")
        if job.status is not JobStatus.COMPLETED and job.artifacts:
            raise InvalidTransition(f"Job {job.id} has artifacts but is {job.status.value}")
        if (job.status is JobStatus.FAILED) != (job.error is not None):
            raise InvalidTransition(f"Job {job.id} error must be set exactly when failed")
        if not 0 <= job.progress <= 100:
            raise InvalidTransition(f"Job {job.id} progress {job.progress} out of range")
        if job.status is JobStatus.COMPLETED and job.progress != 100:
            raise InvalidTransition(f"Job {job.id} must be at progress 100 when completed")
        if job.status is JobStatus.PROCESSING and job.backend_handle is None:
            raise InvalidTransition(f"Job {job.id} cannot be processing without a backend handle")

    def set_compiled(self, job_id: str, prompt_compiled: str, options: dict[str, Any]) -> Job:
        """Record the compiled prompt and merged options of a queued job."""
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFound(job_id)
            if current.status is not JobStatus.QUEUED:
                raise InvalidTransition(f"Job {job_id} is already {current.status.value}")
            return self.transition(job_id, prompt_compiled=prompt_compiled, options=dict(options))

    def set_processing(self, job_id: str, backend_handle: str) -> Job:
        return self.transition(
            job_id, status=JobStatus.PROCESSING, backend_handle=backend_handle, progress=0
        )

    def update_progress(self, job_id: str, value: float) -> Job:
        """Store *value* clamped to ``[0, 100]`` on a processing job.

        A NaN value is ignored and the job is returned unchanged.
        """
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFound(job_id)
            if current.status is not JobStatus.PROCESSING:
                raise InvalidTransition(
                    f"Job {job_id} is {current.status.value}; "
                    "progress applies only while processing"
                )
            if math.isnan(value):
                logger.debug(f"Job {job_id} ignoring NaN progress")
                return current.model_copy(deep=True)
            return self.transition(job_id, progress=int(min(max(value, 0), 100)))

    def set_completed(self, job_id: str, artifacts: list[Artifact]) -> Job:
        job = self.transition(
            job_id, status=JobStatus.COMPLETED, progress=100, artifacts=list(artifacts)
        )
        logger.info(f"Job {job_id} completed with {len(artifacts)} artifact(s)")
        return job

    def set_failed(self, job_id: str, error: BaseException | str) -> Job:
        message = _error_message(error)
        job = self.transition(job_id, status=JobStatus.FAILED, error=message)
        logger.warning(f"Job {job_id} failed: {message}")
        return job

    # -- Queries ------------------------------------------------------------

    def get_job(self, job_id: str) -> Job:
        """Return a snapshot of one job.

        Raises:
            JobNotFound: If *job_id* is not registered.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return job.model_copy(deep=True)

    def list_all(self) -> list[Job]:
        """Return snapshots of every job, newest first."""
        return self._sorted(lambda job: True)

    def list_by_status(self, status: JobStatus | str) -> list[Job]:
        """Return snapshots of jobs in *status*, newest first."""
        wanted = JobStatus(status)
        return self._sorted(lambda job: job.status is wanted)

    def _sorted(self, predicate: Callable[[Job], bool]) -> list[Job]:
        with self._lock:
            # Reverse insertion order first so that equal timestamps list the
            # most recently created job first; sorted() is stable.
            selected = [
                job.model_copy(deep=True)
                for job in reversed(self._jobs.values())
                if predicate(job)
            ]
        return sorted(selected, key=lambda job: job.created_at, reverse=True)

    # -- Retention ----------------------------------------------------------

    def prune_stale(self, max_age: float, now: float | None = None) -> int:
        """Remove completed jobs whose last update is older than *max_age*.

        Args:
            max_age: Maximum age in seconds of a completed job.
            now: Reference time; defaults to the registry clock.

        Returns:
            Number of jobs removed.
        """
        cutoff = (self._clock() if now is None else now) - max_age
        removed = 0
        with self._lock:
            for job_id in list(self._jobs):
                job = self._jobs[job_id]
                if job.status is JobStatus.COMPLETED and job.updated_at < cutoff:
                    del self._jobs[job_id]
                    removed += 1
        if removed:
            logger.info(f"Pruned {removed} completed job(s)")
        return removed

"""Submission and query boundary, plus the periodic prune sweep.

:class:`GenerationService` is what the HTTP layer talks to.  Submission
validates the request, registers a ``queued`` job and hands it to the
:class:`~imaginator.core.event_router.EventRouter` in the background; the
caller gets the job id back immediately and polls for progress.

Submission never checks whether the backend is reachable.  If it is not,
the job moves from ``queued`` to ``failed`` and the error explains why.

:class:`PruneSweeper` runs :meth:`JobRegistry.prune_stale` on a fixed
interval from a single asyncio task, so two sweeps never overlap.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from imaginator.core.errors import JobValidationError
from imaginator.core.event_router import EventRouter
from imaginator.core.job_registry import Job, JobRegistry, JobStatus

logger = logging.getLogger(__name__)


class GenerationOptions(BaseModel):
    """Explicit generation options accepted at submission.

    Every field is optional; unset fields fall back to directives parsed from
    the prompt and then to the workflow builder defaults.  Unknown keys are
    rejected.
    """

    model_config = ConfigDict(extra="forbid")

    width: int | None = Field(default=None, ge=64, le=4096)
    height: int | None = Field(default=None, ge=64, le=4096)
    steps: int | None = Field(default=None, ge=1, le=150)
    cfg_scale: float | None = Field(default=None, ge=0.0, le=30.0)
    seed: int | None = Field(default=None, ge=0)
    negative_prompt: str | None = None
    sampler: str | None = None
    scheduler: str | None = None
    model: str | None = None
    denoise: float | None = Field(default=None, ge=0.0, le=1.0)
    upscale: bool | None = None


@dataclass(frozen=True)
class SubmitResult:
    """Immediate acknowledgement of a submission."""

    job_id: str
    status: JobStatus


class GenerationService:
    """Entry point for submitting and querying jobs."""

    def __init__(self, registry: JobRegistry, router: EventRouter) -> None:
        self.registry = registry
        self.router = router

    def submit(self, prompt: Any, options: dict[str, Any] | None = None) -> SubmitResult:
        """Register a job and start processing it in the background.

        Must be called from within a running event loop.

        Raises:
            JobValidationError: If the prompt is missing or blank, or the
                options do not validate.  No job is created.
        """
        if not isinstance(prompt, str) or not prompt.strip():
            raise JobValidationError("Prompt is required")
        try:
            validated = GenerationOptions.model_validate(options or {})
        except PydanticValidationError as e:
            raise JobValidationError(f"Invalid options: {e}") from e

        job_id = str(uuid.uuid4())
        job = self.registry.create_job(job_id, prompt, validated.model_dump(exclude_none=True))
        self.router.start(job_id)
        logger.info(f"Accepted job {job_id}")
        return SubmitResult(job_id=job.id, status=job.status)

    def get_job(self, job_id: str) -> Job:
        return self.registry.get_job(job_id)

    def list_jobs(self, status: JobStatus | str | None = None) -> list[Job]:
        """List jobs newest first, optionally restricted to one status.

        Raises:
            JobValidationError: If *status* is not a known status.
        """
        if status is None:
            return self.registry.list_all()
        try:
            wanted = JobStatus(status)
        except ValueError as e:
            raise JobValidationError(f"Unknown status: {status}") from e
        return self.registry.list_by_status(wanted)


class PruneSweeper:
    """Periodically remove aged-out completed jobs.

    Args:
        registry: Registry to prune.
        interval: Seconds between sweeps.
        max_age: Age in seconds after which completed jobs are removed.
    """

    def __init__(self, registry: JobRegistry, interval: float, max_age: float) -> None:
        self.registry = registry
        self.interval = interval
        self.max_age = max_age
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sweep loop.  A no-op if it is already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="prune-sweeper")
        logger.info(f"Prune sweeper started (every {self.interval:.0f}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    def sweep_once(self) -> int:
        return self.registry.prune_stale(self.max_age)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.sweep_once()
            except Exception as e:
                logger.error(f"Prune sweep failed: {e}", exc_info=True)

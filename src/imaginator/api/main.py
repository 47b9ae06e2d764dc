"""Imaginator — FastAPI Application.

This module defines the FastAPI ``app`` instance, the REST routes that expose
the submission and query boundaries, and the ``main()`` CLI function that
launches the uvicorn server.

Architecture
------------
- **Job state** lives in an in-memory :class:`~imaginator.core.job_registry.JobRegistry`
  and is lost on restart.
- **Generation** is delegated to a ComfyUI-compatible backend through
  :class:`~imaginator.core.backend_client.BackendClient`.  Each job is driven
  by :class:`~imaginator.core.event_router.EventRouter` in the background.
- **Artifacts** are written to ``images_dir`` and served from
  ``GET /api/images/{filename}``.
- **Retention**: a :class:`~imaginator.core.service.PruneSweeper` removes
  completed jobs after ``completed_job_max_age`` seconds.

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
GET       ``/api/health``               Server and backend liveness
POST      ``/api/imagine``              Submit a prompt, returns a job id
GET       ``/api/jobs``                 List jobs (``?status=`` filter)
GET       ``/api/jobs/{id}``            Single job
GET       ``/api/images/{filename}``    Stored artifact
GET       ``/api/backend/queue``        Backend queue status
POST      ``/api/backend/interrupt``    Stop the backend's current execution
========  ============================  ====================================

Usage
-----
CLI (installed entry point)::

    imaginator

Direct invocation::

    python -m imaginator.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from imaginator import __version__
from imaginator.api.models import ImagineRequest
from imaginator.core.artifact_store import ArtifactStore
from imaginator.core.backend_client import BackendClient
from imaginator.core.config import ImaginatorConfig, config
from imaginator.core.errors import ImaginatorError, JobNotFound, JobValidationError
from imaginator.core.event_router import EventRouter
from imaginator.core.job_registry import JobRegistry
from imaginator.core.service import GenerationService, PruneSweeper

logger = logging.getLogger(__name__)


def create_app(
    settings: ImaginatorConfig | None = None,
    client: BackendClient | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Configuration; the global ``config`` when omitted.
        client: Backend client.  Built from *settings* when omitted; tests
            pass a fake.

    Returns:
        The configured application.  Services are created in the lifespan
        handler and stored on ``app.state``.
    """
    settings = settings or config

    # -----------------------------------------------------------------------
    # Application lifecycle: service wiring and teardown.
    # -----------------------------------------------------------------------

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Wire services on startup; stop background work on shutdown."""
        # --- Startup -------------------------------------------------------
        backend = client or BackendClient(
            settings.backend_host,
            settings.backend_port,
            timeout=settings.backend_timeout,
        )
        registry = JobRegistry()
        store = ArtifactStore(settings.images_dir, settings.images_url_prefix)
        router = EventRouter(
            registry,
            backend,
            store,
            default_checkpoint=settings.default_checkpoint,
        )
        sweeper = PruneSweeper(
            registry,
            interval=settings.prune_interval,
            max_age=settings.completed_job_max_age,
        )

        app.state.settings = settings
        app.state.backend = backend
        app.state.store = store
        app.state.service = GenerationService(registry, router)
        app.state.sweeper = sweeper
        sweeper.start()

        health = await backend.check_health(settings.health_timeout)
        if health.healthy:
            logger.info(f"Backend reachable at {settings.backend_base_url}")
        else:
            logger.warning(
                f"Backend not reachable at {settings.backend_base_url}: {health.detail}"
            )

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        await sweeper.stop()
        await router.shutdown()
        await backend.aclose()
        logger.info("Imaginator services stopped.")

    app = FastAPI(
        title="Imaginator",
        description="Directive-aware image generation jobs on a ComfyUI backend.",
        version=__version__,
        lifespan=lifespan,
    )

    # Allow cross-origin requests so a frontend served from another port can
    # poll job status during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Routes.
    # -----------------------------------------------------------------------

    @app.get("/api/health")
    async def health(request: Request) -> dict:
        """Report server liveness and whether the backend answers.

        Returns:
            Dictionary with ``server``, ``backend``, ``detail`` and
            ``timestamp``.
        """
        status = await request.app.state.backend.check_health(
            request.app.state.settings.health_timeout
        )
        return {
            "server": "ok",
            "backend": "healthy" if status.healthy else "unhealthy",
            "detail": status.detail,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/api/imagine")
    async def imagine(req: ImagineRequest, request: Request) -> dict:
        """Create an image generation job.

        The job is processed in the background; poll ``GET /api/jobs/{id}``.

        Returns:
            Dictionary with ``jobId``, ``status`` and ``message``.

        Raises:
            HTTPException: 400 for a blank prompt or invalid options.
        """
        service: GenerationService = request.app.state.service
        try:
            result = service.submit(req.prompt, req.options)
        except JobValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {
            "jobId": result.job_id,
            "status": result.status.value,
            "message": "Job created successfully",
        }

    @app.get("/api/jobs")
    async def list_jobs(request: Request, status: str | None = None) -> list[dict]:
        """List jobs newest first, optionally filtered by ``status``.

        Raises:
            HTTPException: 400 for an unknown status.
        """
        service: GenerationService = request.app.state.service
        try:
            jobs = service.list_jobs(status)
        except JobValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return [job.model_dump(mode="json") for job in jobs]

    @app.get("/api/jobs/{job_id}")
    async def get_job(job_id: str, request: Request) -> dict:
        """Return one job.

        Raises:
            HTTPException: 404 if the job is unknown (or was pruned).
        """
        service: GenerationService = request.app.state.service
        try:
            job = service.get_job(job_id)
        except JobNotFound as e:
            raise HTTPException(status_code=404, detail="Job not found") from e
        return job.model_dump(mode="json")

    @app.get("/api/images/{filename}")
    async def get_image(filename: str, request: Request) -> FileResponse:
        """Serve a stored artifact.

        Raises:
            HTTPException: 404 if no such file is stored.
        """
        store: ArtifactStore = request.app.state.store
        path = store.path_for(filename)
        if path is None:
            raise HTTPException(status_code=404, detail="Image not found")
        return FileResponse(path)

    @app.get("/api/backend/queue")
    async def backend_queue(request: Request) -> dict:
        """Return the backend's running and pending queue.

        Raises:
            HTTPException: 502 if the backend fails.
        """
        try:
            return await request.app.state.backend.get_queue()
        except ImaginatorError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e

    @app.post("/api/backend/interrupt")
    async def backend_interrupt(request: Request) -> dict:
        """Interrupt whatever the backend is executing right now.

        This is not a per-job cancel: it stops the backend's current
        execution, whichever job that belongs to.

        Raises:
            HTTPException: 502 if the backend fails.
        """
        try:
            await request.app.state.backend.interrupt_current()
        except ImaginatorError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        return {"success": True}

    return app


# ---------------------------------------------------------------------------
# FastAPI application instance.
# ---------------------------------------------------------------------------
app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~imaginator.core.config.config`
    (``IMAGINATOR_SERVER_HOST``, ``IMAGINATOR_SERVER_PORT``,
    ``IMAGINATOR_LOG_LEVEL``).

    This function is registered as the ``imaginator`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "imaginator.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()

"""Core functionality for directive-aware image generation jobs.

- **prompt_compiler**: strips ``--name value`` directives from a prompt and
  turns them into generation options
- **workflow_builder**: builds the backend graph from those options
- **backend_client**: REST and WebSocket client for the generation backend
- **job_registry**: in-memory job records and their state machine
- **artifact_store**: stores fetched images on disk
- **event_router**: drives each job through the backend and reconciles its
  events into the registry
- **service**: submission/query boundary and the periodic prune sweep
- **config**: ``ImaginatorConfig`` loaded from ``IMAGINATOR_*`` variables

Architecture Overview
---------------------
The pure layers (``prompt_compiler``, ``workflow_builder``) have no
dependencies.  ``job_registry`` holds state; ``backend_client`` does I/O.
``event_router`` is the only module that combines them, and ``service`` is
the only module the HTTP layer needs.

Usage Example
-------------
::

    registry = JobRegistry()
    client = BackendClient("127.0.0.1", 8188)
    store = ArtifactStore(config.images_dir)
    service = GenerationService(registry, EventRouter(registry, client, store))

    result = service.submit("a lighthouse at dusk --ar 16:9 --seed 7")
    service.get_job(result.job_id).status  # JobStatus.QUEUED
"""

from imaginator.core.config import ImaginatorConfig, config
from imaginator.core.errors import (
    ArtifactError,
    BackendError,
    BackendUnreachable,
    DuplicateJobId,
    ImaginatorError,
    InvalidTransition,
    JobNotFound,
    JobValidationError,
)
from imaginator.core.job_registry import Artifact, Job, JobRegistry, JobStatus

__all__ = [
    "ImaginatorConfig",
    "config",
    "Artifact",
    "Job",
    "JobRegistry",
    "JobStatus",
    "ArtifactError",
    "BackendError",
    "BackendUnreachable",
    "DuplicateJobId",
    "ImaginatorError",
    "InvalidTransition",
    "JobNotFound",
    "JobValidationError",
]

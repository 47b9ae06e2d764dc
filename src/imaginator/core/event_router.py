"""Per-job driver that turns backend events into registry transitions.

For every submitted job the router runs one coroutine that:

1. compiles the prompt and merges the directive options with the explicit
   submission options (submission wins)
2. builds the backend graph
3. opens a dedicated event session, submits the graph and records the
   backend handle (``queued`` -> ``processing``)
4. waits while the session delivers events, until the job is terminal
5. closes the session

Event Handling
--------------
=========================  ===================================================
Event                      Reaction
=========================  ===================================================
``ProgressEvent``          ``update_progress(round(100 * value / max))``
``ExecutingEvent(None)``   fetch history, store every output image, complete
                           (or fail with "No outputs found ...")
``ExecutingEvent(node)``   nothing
``ExecutionErrorEvent``    fail with the backend's message, verbatim
=========================  ===================================================

Events that arrive before the backend handle is recorded are held until it
is, so a fast backend cannot complete a job that is still ``queued``.  Events
tagged with another execution's ``prompt_id`` are ignored.

Session Ownership
-----------------
The router owns every session it opens.  ``_sessions`` maps job id to the
open session for as long as the job is in flight; the entry is removed and
the session closed on every exit path, including exceptions and task
cancellation.  Nothing is retried: any failure marks the job ``failed``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from imaginator.core.artifact_store import ArtifactStore
from imaginator.core.backend_client import (
    BackendClient,
    BackendEvent,
    EventSession,
    ExecutingEvent,
    ExecutionErrorEvent,
    ProgressEvent,
)
from imaginator.core.errors import InvalidTransition, JobNotFound
from imaginator.core.job_registry import Artifact, JobRegistry
from imaginator.core.prompt_compiler import compile_prompt
from imaginator.core.workflow_builder import (
    DEFAULT_CHECKPOINT,
    build_text_to_image,
    build_text_to_image_upscaled,
    node_dependencies,
)

logger = logging.getLogger(__name__)

NO_OUTPUTS_ERROR = "No outputs found in backend history"


@dataclass
class _JobContext:
    """Router-side state of one in-flight job."""

    job_id: str
    handle: str | None = None
    # Set once the handle is recorded and the job is ``processing``.
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    # Set once the job is terminal.
    done: asyncio.Event = field(default_factory=asyncio.Event)


class EventRouter:
    """Drive jobs through the backend and reconcile its events.

    Args:
        registry: Job registry; the only place job state is written.
        client: Backend protocol client.
        store: Artifact store for fetched images.
        default_checkpoint: Checkpoint used when a job does not set ``model``.
    """

    def __init__(
        self,
        registry: JobRegistry,
        client: BackendClient,
        store: ArtifactStore,
        *,
        default_checkpoint: str = DEFAULT_CHECKPOINT,
    ) -> None:
        self._registry = registry
        self._client = client
        self._store = store
        self._default_checkpoint = default_checkpoint
        self._sessions: dict[str, EventSession] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_jobs(self) -> list[str]:
        """Ids of jobs that currently hold an open session."""
        return list(self._sessions)

    # -- Lifecycle ----------------------------------------------------------

    def start(self, job_id: str) -> asyncio.Task:
        """Process *job_id* in the background and return the task.

        Must be called from within a running event loop.
        """
        task = asyncio.create_task(self.process_job(job_id), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def shutdown(self) -> None:
        """Cancel every in-flight job task and wait for its session to close."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def process_job(self, job_id: str) -> None:
        """Run one job from ``queued`` to a terminal status."""
        context = _JobContext(job_id)
        try:
            job = self._registry.get_job(job_id)
            compiled = compile_prompt(job.prompt_raw)
            options = {**compiled.options, **job.options}
            self._registry.set_compiled(job_id, compiled.cleaned_prompt, options)
            graph = self._build_graph(compiled.cleaned_prompt, options)

            logger.info(f"Processing job {job_id}: {compiled.cleaned_prompt!r}")
            async with self._session(context):
                context.handle = await self._client.submit(graph)
                self._registry.set_processing(job_id, context.handle)
                logger.info(f"Job {job_id} queued on backend as {context.handle}")
                context.ready.set()
                await context.done.wait()
        except Exception as e:
            logger.error(f"Error processing job {job_id}: {e}", exc_info=True)
            self._fail(job_id, e)

    def _build_graph(self, prompt: str, options: dict[str, Any]) -> dict:
        graph_options = {"model": self._default_checkpoint, **options}
        if graph_options.get("upscale"):
            graph = build_text_to_image_upscaled(prompt, graph_options)
        else:
            graph = build_text_to_image(prompt, graph_options)
        # Raises ValueError on a dangling link, failing the job before submission.
        node_dependencies(graph)
        return graph

    @contextlib.asynccontextmanager
    async def _session(self, context: _JobContext) -> AsyncIterator[EventSession]:
        async def on_event(event: BackendEvent) -> None:
            await self._on_event(context, event)

        async def on_error(error: BaseException) -> None:
            await self._on_error(context, error)

        session = await self._client.open_event_stream(on_event, on_error)
        self._sessions[context.job_id] = session
        try:
            yield session
        finally:
            self._sessions.pop(context.job_id, None)
            await session.close()

    # -- Event dispatch -----------------------------------------------------

    async def _on_event(self, context: _JobContext, event: BackendEvent) -> None:
        await context.ready.wait()
        if context.done.is_set():
            return
        if event.prompt_id is not None and event.prompt_id != context.handle:
            logger.debug(f"Job {context.job_id} ignoring event for {event.prompt_id}")
            return

        try:
            finished = await self._dispatch(context, event)
        except Exception as e:
            logger.error(f"Error handling event for job {context.job_id}: {e}", exc_info=True)
            self._fail(context.job_id, e)
            finished = True

        if finished:
            context.done.set()

    async def _dispatch(self, context: _JobContext, event: BackendEvent) -> bool:
        """React to one event.  Returns ``True`` once the job is terminal."""
        if isinstance(event, ProgressEvent):
            if not (math.isfinite(event.value) and math.isfinite(event.max)) or event.max <= 0:
                return False
            progress = int(math.floor(100 * event.value / event.max + 0.5))
            self._registry.update_progress(context.job_id, progress)
            return False

        if isinstance(event, ExecutingEvent):
            if event.node is not None:
                return False
            logger.info(f"Job {context.job_id} execution finished, fetching outputs")
            await self._collect_outputs(context)
            return True

        if isinstance(event, ExecutionErrorEvent):
            logger.error(f"Job {context.job_id} execution error: {event.message}")
            self._registry.set_failed(context.job_id, event.message)
            return True

        raise TypeError(f"Unhandled backend event: {event!r}")

    async def _collect_outputs(self, context: _JobContext) -> None:
        outputs = await self._client.fetch_history(context.handle)

        artifacts: list[Artifact] = []
        for node_output in (outputs or {}).values():
            for image in node_output.get("images", []):
                data = await self._client.fetch_artifact(
                    image["filename"],
                    image.get("subfolder", ""),
                    image.get("type", "output"),
                )
                artifacts.append(
                    self._store.save(
                        context.job_id, data, image["filename"], index=len(artifacts)
                    )
                )

        if artifacts:
            self._registry.set_completed(context.job_id, artifacts)
        else:
            self._registry.set_failed(context.job_id, NO_OUTPUTS_ERROR)

    async def _on_error(self, context: _JobContext, error: BaseException) -> None:
        if context.done.is_set():
            return
        self._fail(context.job_id, f"Event stream error: {error}")
        context.done.set()

    def _fail(self, job_id: str, error: BaseException | str) -> None:
        try:
            self._registry.set_failed(job_id, error)
        except (InvalidTransition, JobNotFound) as e:
            logger.warning(f"Could not mark job {job_id} failed: {e}")

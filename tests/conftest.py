"""Shared pytest fixtures for Imaginator tests."""

from __future__ import annotations

import asyncio
import io
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest
from PIL import Image

from imaginator.core.artifact_store import ArtifactStore
from imaginator.core.backend_client import HealthStatus
from imaginator.core.config import ImaginatorConfig
from imaginator.core.event_router import EventRouter
from imaginator.core.job_registry import JobRegistry
from imaginator.core.service import GenerationService


class FakeClock:
    """Manually advanced clock for deterministic timestamps."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSession:
    """Stand-in for :class:`EventSession` that tests feed events into."""

    def __init__(self, on_event, on_error) -> None:
        self.on_event = on_event
        self.on_error = on_error
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakeBackendClient:
    """In-memory backend double with the same interface as BackendClient.

    Args:
        history: Outputs manifest returned by ``fetch_history``.
        artifacts: Mapping of backend filename to raw bytes.
        prompt_id: Handle returned by ``submit``.
        submit_error: Exception raised by ``submit``.
        stream_error: Exception raised by ``open_event_stream``.
    """

    def __init__(
        self,
        history: dict | None = None,
        artifacts: dict[str, bytes] | None = None,
        prompt_id: str = "prompt-1",
        submit_error: Exception | None = None,
        stream_error: Exception | None = None,
    ) -> None:
        self.history = history
        self.artifacts = artifacts or {}
        self.prompt_id = prompt_id
        self.submit_error = submit_error
        self.stream_error = stream_error
        self.health = HealthStatus(healthy=True, detail={"system": {"os": "posix"}})
        self.queue = {"queue_running": [], "queue_pending": []}
        self.submitted: list[dict] = []
        self.sessions: list[FakeSession] = []
        self.history_requests: list[str] = []
        self.interrupts = 0
        self.closed = False

    async def open_event_stream(self, on_event, on_error) -> FakeSession:
        if self.stream_error is not None:
            raise self.stream_error
        session = FakeSession(on_event, on_error)
        self.sessions.append(session)
        return session

    async def submit(self, graph: dict) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(graph)
        return self.prompt_id

    async def fetch_history(self, backend_handle: str) -> dict | None:
        self.history_requests.append(backend_handle)
        return self.history

    async def fetch_artifact(self, name: str, subfolder: str = "", kind: str = "output") -> bytes:
        return self.artifacts[name]

    async def get_queue(self) -> dict:
        return self.queue

    async def interrupt_current(self) -> None:
        self.interrupts += 1

    async def check_health(self, timeout: float = 5.0) -> HealthStatus:
        return self.health

    async def aclose(self) -> None:
        self.closed = True


async def wait_for(predicate, attempts: int = 200) -> None:
    """Yield to the event loop until *predicate* is true."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def make_png(width: int = 8, height: int = 8, color=(200, 30, 30)) -> bytes:
    """Encode a small solid-colour PNG."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> ImaginatorConfig:
    """Create a configuration that writes into a temporary directory."""
    return ImaginatorConfig(
        images_dir=temp_dir / "images",
        backend_host="backend.test",
        backend_port=8188,
        _env_file=None,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock: FakeClock) -> JobRegistry:
    return JobRegistry(clock=clock)


@pytest.fixture
def store(temp_dir: Path) -> ArtifactStore:
    return ArtifactStore(temp_dir / "images")


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def fake_backend(png_bytes: bytes) -> FakeBackendClient:
    """Backend double whose history holds one saved image."""
    return FakeBackendClient(
        history={
            "9": {
                "images": [
                    {"filename": "ComfyUI_00001_.png", "subfolder": "", "type": "output"},
                ]
            }
        },
        artifacts={"ComfyUI_00001_.png": png_bytes},
    )


@pytest.fixture
def router(
    registry: JobRegistry, fake_backend: FakeBackendClient, store: ArtifactStore
) -> EventRouter:
    return EventRouter(registry, fake_backend, store)


@pytest.fixture
def service(registry: JobRegistry, router: EventRouter) -> GenerationService:
    return GenerationService(registry, router)

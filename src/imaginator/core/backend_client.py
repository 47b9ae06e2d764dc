"""Client for the ComfyUI-compatible generation backend.

The backend exposes two channels:

- a REST API used to submit graphs, look up execution history, download
  output images, inspect the queue and interrupt execution
- a WebSocket at ``/ws?clientId=<id>`` over which it pushes execution events
  for every graph submitted with that client id

:class:`BackendClient` wraps both.  REST calls go through a shared
``httpx.AsyncClient``; each call to :meth:`BackendClient.open_event_stream`
opens a dedicated WebSocket and returns an :class:`EventSession` that reads
it in a background task.

Event Types
-----------
Incoming JSON messages are parsed into a closed set of event types:

=====================  ====================================================
Backend message        Event
=====================  ====================================================
``progress``           :class:`ProgressEvent` (``value`` of ``max`` steps)
``executing``          :class:`ExecutingEvent` (``node is None`` = finished)
``execution_error``    :class:`ExecutionErrorEvent` (backend message)
``execution_interrupted``  :class:`ExecutionErrorEvent` ("Execution interrupted")
=====================  ====================================================

Everything else (``status``, ``execution_start``, ``executed``, binary
preview frames, ...) is dropped by the session.

Errors
------
Connection failures raise :class:`~imaginator.core.errors.BackendUnreachable`;
non-success responses and malformed payloads raise
:class:`~imaginator.core.errors.BackendError`.  :meth:`BackendClient.check_health`
never raises.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosedOK, InvalidStatus, WebSocketException

from imaginator.core.errors import BackendError, BackendUnreachable, ImaginatorError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Typed events.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProgressEvent:
    """Sampler progress: *value* of *max* steps done."""

    value: float
    max: float
    prompt_id: str | None = None


@dataclass(frozen=True)
class ExecutingEvent:
    """The backend started a stage, or finished the graph when *node* is None."""

    node: str | None
    prompt_id: str | None = None


@dataclass(frozen=True)
class ExecutionErrorEvent:
    """Execution failed (or was interrupted) on the backend."""

    message: str
    prompt_id: str | None = None
    node_id: str | None = None


BackendEvent = ProgressEvent | ExecutingEvent | ExecutionErrorEvent

EventHandler = Callable[[BackendEvent], Awaitable[None]]
ErrorHandler = Callable[[BaseException], Awaitable[None]]


def parse_event(message: Any) -> BackendEvent | None:
    """Convert a decoded backend message into a typed event.

    Returns ``None`` for message types the service does not react to and for
    payloads that do not have the expected shape.
    """
    if not isinstance(message, dict):
        return None
    kind = message.get("type")
    data = message.get("data")
    if not isinstance(data, dict):
        return None

    if kind == "progress":
        if "value" not in data or "max" not in data:
            return None
        return ProgressEvent(value=data["value"], max=data["max"], prompt_id=data.get("prompt_id"))
    if kind == "executing":
        node = data.get("node")
        return ExecutingEvent(
            node=None if node is None else str(node),
            prompt_id=data.get("prompt_id"),
        )
    if kind == "execution_error":
        return ExecutionErrorEvent(
            message=data.get("exception_message") or "Execution error",
            prompt_id=data.get("prompt_id"),
            node_id=data.get("node_id"),
        )
    if kind == "execution_interrupted":
        return ExecutionErrorEvent(
            message="Execution interrupted",
            prompt_id=data.get("prompt_id"),
            node_id=data.get("node_id"),
        )
    return None


@dataclass(frozen=True)
class HealthStatus:
    """Outcome of a backend liveness probe."""

    healthy: bool
    detail: Any = None


# ---------------------------------------------------------------------------
# Event session.
# ---------------------------------------------------------------------------


class EventSession:
    """One open event stream.

    A background task reads frames, parses them with :func:`parse_event` and
    awaits *on_event* for each recognised event, one at a time and in arrival
    order.  If the stream fails or the backend closes it, *on_error* is
    awaited once.  Neither callback fires after :meth:`close`.

    Sessions are async context managers; leaving the ``async with`` block
    closes the stream.
    """

    def __init__(self, connection, on_event: EventHandler, on_error: ErrorHandler) -> None:
        self._connection = connection
        self._on_event = on_event
        self._on_error = on_error
        self._closed = False
        self._reader = asyncio.create_task(self._read_loop())

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> EventSession:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _read_loop(self) -> None:
        try:
            async for frame in self._connection:
                if isinstance(frame, bytes):
                    continue
                try:
                    message = json.loads(frame)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring undecodable backend message: {frame[:200]!r}")
                    continue
                event = parse_event(message)
                if event is not None and not self._closed:
                    await self._on_event(event)
        except asyncio.CancelledError:
            raise
        except ConnectionClosedOK:
            await self._report(BackendUnreachable("Event stream closed by backend"))
        except Exception as e:
            await self._report(e)
        else:
            await self._report(BackendUnreachable("Event stream closed by backend"))

    async def _report(self, error: BaseException) -> None:
        if self._closed:
            return
        logger.warning(f"Event stream error: {error}")
        await self._on_error(error)

    async def close(self) -> None:
        """Stop reading and close the WebSocket.  Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        if self._reader is not asyncio.current_task():
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
        await self._connection.close()


# ---------------------------------------------------------------------------
# Backend client.
# ---------------------------------------------------------------------------


class BackendClient:
    """Protocol client for one generation backend.

    Args:
        host: Backend hostname.
        port: Backend port.
        timeout: Timeout in seconds for REST calls and WebSocket handshakes.
        client_id: Identity used to route events to this client.  A random
            UUID by default; fixed for the lifetime of the instance.
        transport: Optional ``httpx`` transport (tests pass a
            ``MockTransport``).
        connector: Coroutine function opening a WebSocket.  Defaults to
            ``websockets.asyncio.client.connect``.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 8188,
        *,
        timeout: float = 30.0,
        client_id: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        connector=connect,
    ) -> None:
        self.host = host
        self.port = port
        self.base_url = f"http://{host}:{port}"
        self.ws_url = f"ws://{host}:{port}/ws"
        self.client_id = client_id or str(uuid.uuid4())
        self._timeout = timeout
        self._connector = connector
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- REST helpers -------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            body = e.response.text[:500]
            raise BackendError(
                f"Backend returned {e.response.status_code} for {method} {path}: {body}",
                status_code=e.response.status_code,
            ) from e
        except httpx.TransportError as e:
            raise BackendUnreachable(f"Backend unreachable at {self.base_url}: {e}") from e
        except httpx.HTTPError as e:
            raise BackendError(f"Backend request {method} {path} failed: {e}") from e
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(
                f"Backend returned invalid JSON for {response.request.url.path}",
                status_code=response.status_code,
            ) from e

    # -- Operations ---------------------------------------------------------

    async def submit(self, graph: dict) -> str:
        """Queue *graph* for execution and return the backend handle."""
        response = await self._request(
            "POST", "/prompt", json={"prompt": graph, "client_id": self.client_id}
        )
        data = self._json(response)
        prompt_id = data.get("prompt_id") if isinstance(data, dict) else None
        if not prompt_id:
            raise BackendError("Backend accepted the graph but returned no prompt_id")
        logger.info(f"Submitted graph to backend, prompt_id={prompt_id}")
        return str(prompt_id)

    async def open_event_stream(
        self, on_event: EventHandler, on_error: ErrorHandler
    ) -> EventSession:
        """Open a WebSocket for this client id and start reading events."""
        url = f"{self.ws_url}?clientId={self.client_id}"
        try:
            connection = await self._connector(url, open_timeout=self._timeout, max_size=None)
        except InvalidStatus as e:
            raise BackendError(
                f"Backend refused event stream: {e}",
                status_code=e.response.status_code,
            ) from e
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise BackendUnreachable(f"Cannot open event stream at {self.ws_url}: {e}") from e
        logger.debug(f"Opened event stream {url}")
        return EventSession(connection, on_event, on_error)

    async def fetch_history(self, backend_handle: str) -> dict | None:
        """Return the outputs manifest of an execution.

        Returns ``None`` when the backend has no history entry (or no outputs
        key) for *backend_handle*.
        """
        response = await self._request("GET", f"/history/{backend_handle}")
        data = self._json(response)
        if not isinstance(data, dict):
            raise BackendError("Backend history response is not an object")
        entry = data.get(backend_handle)
        if not isinstance(entry, dict):
            return None
        return entry.get("outputs")

    async def fetch_artifact(self, name: str, subfolder: str = "", kind: str = "output") -> bytes:
        """Download the raw bytes of one output image."""
        response = await self._request(
            "GET", "/view", params={"filename": name, "subfolder": subfolder, "type": kind}
        )
        return response.content

    async def get_queue(self) -> dict:
        return self._json(await self._request("GET", "/queue"))

    async def get_object_info(self) -> dict:
        """Return the backend's node catalogue (models, samplers, ...)."""
        return self._json(await self._request("GET", "/object_info"))

    async def interrupt_current(self) -> None:
        """Stop whatever graph the backend is executing right now.

        This is backend-wide; the backend offers no way to target one job.
        """
        await self._request("POST", "/interrupt")
        logger.info("Sent interrupt to backend")

    async def check_health(self, timeout: float = 5.0) -> HealthStatus:
        """Probe ``/system_stats``.  Never raises."""
        try:
            response = await self._request("GET", "/system_stats", timeout=timeout)
            return HealthStatus(healthy=True, detail=self._json(response))
        except ImaginatorError as e:
            return HealthStatus(healthy=False, detail=str(e))

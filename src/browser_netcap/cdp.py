"""Chrome DevTools Protocol transport.

One ``CDPConnection`` owns the browser-level websocket. Command replies are
matched to their futures by the reader task; every event the daemon cares about
is turned into a typed ``ProtocolEvent`` and pushed onto a single ordered queue,
which the daemon drains one event at a time.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websockets

from browser_netcap.config import BrowserEndpointConfig
from browser_netcap.errors import BrowserUnavailableError, CDPConnectionClosed, CDPError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Typed events
# ---------------------------------------------------------------------------


class EventKind(str, Enum):
    REQUEST_WILL_BE_SENT = "Network.requestWillBeSent"
    RESPONSE_RECEIVED = "Network.responseReceived"
    LOADING_FINISHED = "Network.loadingFinished"
    LOADING_FAILED = "Network.loadingFailed"
    TARGET_CREATED = "Target.targetCreated"
    TARGET_INFO_CHANGED = "Target.targetInfoChanged"
    TARGET_DESTROYED = "Target.targetDestroyed"
    ATTACHED_TO_TARGET = "Target.attachedToTarget"
    DETACHED_FROM_TARGET = "Target.detachedFromTarget"

    @property
    def is_network(self) -> bool:
        return self.value.startswith("Network.")


@dataclass(frozen=True)
class ProtocolEvent:
    kind: EventKind
    params: dict[str, Any]
    session_id: str | None = None

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> ProtocolEvent | None:
        """Build an event from a raw CDP message; ``None`` for methods we ignore."""
        try:
            kind = EventKind(message.get("method", ""))
        except ValueError:
            return None
        return cls(kind, message.get("params") or {}, message.get("sessionId"))


# ---------------------------------------------------------------------------
# HTTP discovery endpoints
# ---------------------------------------------------------------------------


def fetch_json(endpoint: BrowserEndpointConfig, path: str) -> Any:
    """GET ``http://host:port{path}`` and decode the JSON body (blocking)."""
    url = f"{endpoint.http_url}{path}"
    try:
        with urllib.request.urlopen(url, timeout=endpoint.probe_timeout) as resp:
            return json.loads(resp.read())
    except (OSError, ValueError) as e:
        raise BrowserUnavailableError(
            f"Cannot reach browser at {endpoint.http_url}: {e}"
        ) from e


def get_browser_ws_url(endpoint: BrowserEndpointConfig) -> str:
    """Return the browser-level ``webSocketDebuggerUrl``."""
    version = fetch_json(endpoint, "/json/version")
    ws_url = version.get("webSocketDebuggerUrl") if isinstance(version, dict) else None
    if not ws_url:
        raise BrowserUnavailableError(
            f"{endpoint.http_url}/json/version did not return a webSocketDebuggerUrl"
        )
    return ws_url


def list_page_targets(endpoint: BrowserEndpointConfig) -> list[dict[str, Any]]:
    """Return the ``page`` targets listed by ``/json/list``."""
    targets = fetch_json(endpoint, "/json/list")
    return [t for t in targets if t.get("type") == "page"]


async def probe_endpoint(endpoint: BrowserEndpointConfig) -> bool:
    """Return ``True`` if the debugging endpoint answers ``/json/version``."""
    try:
        await asyncio.to_thread(fetch_json, endpoint, "/json/version")
    except BrowserUnavailableError as e:
        logger.debug("Browser probe failed: %s", e)
        return False
    return True


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


class CDPConnection:
    """Browser-level CDP websocket with flattened child sessions.

    Usage::

        cdp = CDPConnection(ws_url)
        await cdp.connect()
        result = await cdp.send("Target.getTargets")
        event = await cdp.events.get()
        ...
        await cdp.close()
    """

    def __init__(self, ws_url: str) -> None:
        self.ws_url = ws_url
        self.events: asyncio.Queue[ProtocolEvent] = asyncio.Queue()
        self.closed = asyncio.Event()
        self._ws: Any = None
        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[str, asyncio.Future[dict[str, Any]]]] = {}
        self._reader_task: asyncio.Task[None] | None = None

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self.closed.is_set()

    async def connect(self) -> None:
        """Open the websocket and start the reader task."""
        try:
            self._ws = await websockets.connect(
                self.ws_url, max_size=None, ping_interval=None
            )
        except (
            OSError,
            websockets.exceptions.InvalidURI,
            websockets.exceptions.InvalidHandshake,
        ) as e:
            raise BrowserUnavailableError(
                f"Cannot open CDP websocket {self.ws_url}: {e}"
            ) from e
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info("Connected to %s", self.ws_url)

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        """Send a command and wait for its result.

        Raises ``CDPError`` when the browser answers with an error and
        ``CDPConnectionClosed`` when the socket goes away first.
        """
        if not self.is_connected:
            raise CDPConnectionClosed(f"{method}: connection is closed")

        msg_id = next(self._ids)
        message: dict[str, Any] = {"id": msg_id, "method": method, "params": params or {}}
        if session_id:
            message["sessionId"] = session_id

        future: asyncio.Future[dict[str, Any]] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[msg_id] = (method, future)
        try:
            await self._ws.send(json.dumps(message))
            return await future
        except websockets.exceptions.ConnectionClosed as e:
            raise CDPConnectionClosed(f"{method}: {e}") from e
        finally:
            self._pending.pop(msg_id, None)

    async def close(self) -> None:
        """Close the websocket and fail every command still waiting."""
        if self._ws is not None:
            try:
                await self._ws.close()
            except websockets.exceptions.WebSocketException as e:
                logger.debug("Error closing CDP websocket: %s", e)
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        self._mark_closed()

    # -- internals -----------------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Discarding non-JSON CDP frame")
                    continue
                self._dispatch(message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning("CDP connection closed: %s", e)
        finally:
            self._mark_closed()

    def _dispatch(self, message: dict[str, Any]) -> None:
        if "id" in message:
            entry = self._pending.get(message["id"])
            if entry is None:
                return
            method, future = entry
            if future.done():
                return
            if "error" in message:
                error = message["error"] or {}
                future.set_exception(
                    CDPError(method, error.get("message", "unknown error"), error.get("code"))
                )
            else:
                future.set_result(message.get("result") or {})
            return

        event = ProtocolEvent.from_message(message)
        if event is not None:
            self.events.put_nowait(event)

    def _mark_closed(self) -> None:
        self.closed.set()
        for method, future in list(self._pending.values()):
            if not future.done():
                future.set_exception(CDPConnectionClosed(f"{method}: connection closed"))
        self._pending.clear()

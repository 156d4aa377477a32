"""Request correlation.

Turns the ``Network.*`` event stream of every attached tab into
``NetworkRequest`` records. A request becomes visible in the store once its
response arrives (or once it fails without one); the protocol request id is
tracked in a ``PendingEntry`` until the request finishes, fails, or is
superseded by a redirect that reuses the same id.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from browser_netcap.cdp import EventKind, ProtocolEvent
from browser_netcap.config import CaptureConfig
from browser_netcap.errors import CDPConnectionClosed, CDPError
from browser_netcap.models import NetworkRequest, ResourceType, normalize_headers
from browser_netcap.registry import SessionRegistry
from browser_netcap.store import RequestStore

logger = logging.getLogger(__name__)

NAVIGATION_ABORT_ERROR = "net::ERR_ABORTED"


class RequestPhase(str, Enum):
    SENT = "sent"
    RESPONDED = "responded"
    FINISHED = "finished"
    FAILED = "failed"


_TRANSITIONS: dict[RequestPhase, frozenset[RequestPhase]] = {
    RequestPhase.SENT: frozenset(
        {RequestPhase.RESPONDED, RequestPhase.FINISHED, RequestPhase.FAILED}
    ),
    RequestPhase.RESPONDED: frozenset({RequestPhase.FINISHED, RequestPhase.FAILED}),
    RequestPhase.FINISHED: frozenset(),
    RequestPhase.FAILED: frozenset(),
}


@dataclass
class PendingEntry:
    id: int
    tab_id: str
    request_id: str
    session_id: str | None
    url: str
    method: str
    resource_type: ResourceType
    start_time: float
    request_headers: dict[str, str] = field(default_factory=dict)
    post_data: str | None = None
    phase: RequestPhase = RequestPhase.SENT

    def advance(self, phase: RequestPhase) -> bool:
        """Move to *phase*; ``False`` if that transition is not allowed."""
        if phase not in _TRANSITIONS[self.phase]:
            return False
        self.phase = phase
        return True

    def to_record(self, **fields: Any) -> NetworkRequest:
        return NetworkRequest(
            id=self.id,
            tab_id=self.tab_id,
            url=self.url,
            method=self.method,
            resource_type=self.resource_type,
            start_time=self.start_time,
            request_headers=dict(self.request_headers),
            request_body=self.post_data,
            **fields,
        )


def _to_ms(timestamp: float | None) -> float:
    # CDP timestamps are seconds on the browser's monotonic clock.
    if timestamp is None:
        return time.monotonic() * 1000.0
    return float(timestamp) * 1000.0


class RequestCorrelator:
    """Builds ``NetworkRequest`` records from ``Network.*`` events.

    ``handle()`` is called by the daemon's event pump, one event at a time, and
    holds the correlator lock for the whole handler. Response bodies are fetched
    in background tasks so a slow ``Network.getResponseBody`` never holds up
    the pump.
    """

    def __init__(
        self,
        store: RequestStore,
        registry: SessionRegistry,
        cdp: Any,
        capture: CaptureConfig | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._cdp = cdp
        self._capture = capture or CaptureConfig()
        self._pending: dict[tuple[str, str], PendingEntry] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self._body_tasks: set[asyncio.Task[None]] = set()
        self._handlers: dict[EventKind, Callable[[str, ProtocolEvent], Awaitable[None]]] = {
            EventKind.REQUEST_WILL_BE_SENT: self._on_request_will_be_sent,
            EventKind.RESPONSE_RECEIVED: self._on_response_received,
            EventKind.LOADING_FINISHED: self._on_loading_finished,
            EventKind.LOADING_FAILED: self._on_loading_failed,
        }

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def handle(self, event: ProtocolEvent) -> None:
        handler = self._handlers.get(event.kind)
        if handler is None:
            return
        tab_id = self._registry.resolve(event.session_id)
        if tab_id is None:
            logger.debug(f"Dropping {event.kind.value} for unknown session {event.session_id}")
            return
        async with self._lock:
            await handler(tab_id, event)

    def discard_pending(self, tab_id: str) -> int:
        """Forget every in-flight request of *tab_id* (its session is gone)."""
        stale = [key for key in self._pending if key[0] == tab_id]
        for key in stale:
            del self._pending[key]
        if stale:
            logger.debug(f"Discarded {len(stale)} pending request(s) for tab {tab_id}")
        return len(stale)

    async def close(self) -> None:
        """Cancel outstanding body fetches."""
        tasks = list(self._body_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._body_tasks.clear()

    # -- handlers ------------------------------------------------------------

    async def _on_request_will_be_sent(self, tab_id: str, event: ProtocolEvent) -> None:
        params = event.params
        request_id = params.get("requestId")
        if not request_id:
            return
        key = (tab_id, request_id)

        previous = self._pending.pop(key, None)
        if previous is not None:
            redirect = params.get("redirectResponse")
            if redirect is not None:
                await self._finalize_redirect(previous, redirect, params.get("timestamp"))
            else:
                logger.debug(f"Request {request_id} superseded without a redirect response")

        request = params.get("request") or {}
        entry = PendingEntry(
            id=next(self._ids),
            tab_id=tab_id,
            request_id=request_id,
            session_id=event.session_id,
            url=request.get("url", ""),
            method=request.get("method", "GET"),
            resource_type=ResourceType.from_cdp(params.get("type")),
            start_time=_to_ms(params.get("timestamp")),
            request_headers=normalize_headers(request.get("headers")),
            post_data=request.get("postData"),
        )
        self._pending[key] = entry

    async def _finalize_redirect(
        self, entry: PendingEntry, redirect: dict[str, Any], timestamp: float | None
    ) -> None:
        end_time = _to_ms(timestamp)
        had_response = entry.phase is RequestPhase.RESPONDED
        if not entry.advance(RequestPhase.FINISHED):
            return
        if had_response:
            await self._store.update(entry.tab_id, entry.id, end_time=end_time)
            return
        await self._store.append(
            entry.to_record(
                status=redirect.get("status"),
                status_text=redirect.get("statusText"),
                mime_type=redirect.get("mimeType"),
                response_headers=normalize_headers(redirect.get("headers")),
                end_time=end_time,
            )
        )

    async def _on_response_received(self, tab_id: str, event: ProtocolEvent) -> None:
        params = event.params
        entry = self._pending.get((tab_id, params.get("requestId")))
        if entry is None or not entry.advance(RequestPhase.RESPONDED):
            return
        response = params.get("response") or {}
        await self._store.append(
            entry.to_record(
                status=response.get("status"),
                status_text=response.get("statusText"),
                mime_type=response.get("mimeType"),
                response_headers=normalize_headers(response.get("headers")),
            )
        )

    async def _on_loading_finished(self, tab_id: str, event: ProtocolEvent) -> None:
        params = event.params
        entry = self._pending.pop((tab_id, params.get("requestId")), None)
        if entry is None:
            return
        had_response = entry.phase is RequestPhase.RESPONDED
        if not entry.advance(RequestPhase.FINISHED) or not had_response:
            return
        updated = await self._store.update(
            tab_id, entry.id, end_time=_to_ms(params.get("timestamp"))
        )
        if updated:
            self._spawn_body_fetch(entry, params.get("encodedDataLength"))

    async def _on_loading_failed(self, tab_id: str, event: ProtocolEvent) -> None:
        params = event.params
        entry = self._pending.pop((tab_id, params.get("requestId")), None)
        if entry is None:
            return
        had_response = entry.phase is RequestPhase.RESPONDED
        if not entry.advance(RequestPhase.FAILED):
            return

        error_text = params.get("errorText") or "Unknown error"
        end_time = _to_ms(params.get("timestamp"))
        if had_response:
            changes: dict[str, Any] = {"end_time": end_time}
            # A navigation that replaces an already-answered request is not a failure.
            if error_text != NAVIGATION_ABORT_ERROR:
                changes.update(failed=True, error=error_text)
            await self._store.update(tab_id, entry.id, **changes)
        else:
            await self._store.append(
                entry.to_record(end_time=end_time, error=error_text, failed=True)
            )

    # -- response bodies -----------------------------------------------------

    def _spawn_body_fetch(self, entry: PendingEntry, encoded_length: float | None) -> None:
        task = asyncio.create_task(self._fetch_body(entry, encoded_length))
        self._body_tasks.add(task)
        task.add_done_callback(self._body_tasks.discard)

    async def _fetch_body(self, entry: PendingEntry, encoded_length: float | None) -> None:
        try:
            result = await asyncio.wait_for(
                self._cdp.send(
                    "Network.getResponseBody",
                    {"requestId": entry.request_id},
                    session_id=entry.session_id,
                ),
                timeout=self._capture.body_fetch_timeout,
            )
        except (asyncio.TimeoutError, CDPError, CDPConnectionClosed) as e:
            body = self._oversize_marker(encoded_length)
            if body is None:
                logger.debug(f"No body for request #{entry.id}: {e!r}")
                return
        else:
            body = self._render_body(result)

        await self._store.update(entry.tab_id, entry.id, response_body=body)

    def _oversize_marker(self, encoded_length: float | None) -> str | None:
        limit = self._capture.max_resource_buffer_size
        if encoded_length and encoded_length > limit:
            return f"[truncated: {int(encoded_length)} bytes exceeds resource buffer of {limit} bytes]"
        return None

    def _render_body(self, result: dict[str, Any]) -> str:
        body = result.get("body") or ""
        if result.get("base64Encoded"):
            return f"[base64] {body[: self._capture.binary_preview_chars]}..."
        limit = self._capture.max_resource_buffer_size
        if len(body) > limit:
            return f"{body[:limit]}\n[truncated: {len(body)} chars total]"
        return body

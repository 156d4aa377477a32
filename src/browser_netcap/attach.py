"""Tab attachment.

Keeps one flattened CDP session per page target with ``Network`` enabled,
covering tabs that exist at startup and tabs opened later (through
``Target.setAutoAttach`` and ``Target.targetCreated``). Targets the browser
pauses on start are resumed only after network tracking is on, so their first
requests are captured.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from browser_netcap.cdp import EventKind, ProtocolEvent
from browser_netcap.config import CaptureConfig
from browser_netcap.errors import CDPConnectionClosed, CDPError
from browser_netcap.registry import SessionRegistry

logger = logging.getLogger(__name__)

PAGE_TARGET = "page"


class TabAttachmentManager:
    def __init__(
        self,
        cdp: Any,
        registry: SessionRegistry,
        capture: CaptureConfig | None = None,
        on_detach: Callable[[str], Any] | None = None,
    ) -> None:
        self._cdp = cdp
        self._registry = registry
        self._capture = capture or CaptureConfig()
        self._on_detach = on_detach
        self._attaching: set[str] = set()
        self._setup_tasks: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()

    async def start(self) -> None:
        """Subscribe to target lifecycle events and auto-attach."""
        await self._cdp.send("Target.setDiscoverTargets", {"discover": True})
        await self._cdp.send(
            "Target.setAutoAttach",
            {
                "autoAttach": True,
                "waitForDebuggerOnStart": self._capture.wait_for_debugger_on_start,
                "flatten": True,
            },
        )
        logger.info("Target discovery and auto-attach enabled")

    async def discover_and_attach_all(self) -> int:
        """Attach to every page target that has no binding yet.

        Returns the number of tabs newly attached.
        """
        result = await self._cdp.send("Target.getTargets")
        attached = 0
        for info in result.get("targetInfos", []):
            if info.get("type") != PAGE_TARGET:
                continue
            if await self.attach(info):
                attached += 1
        if attached:
            logger.info(f"Discovery sweep attached {attached} new tab(s)")
        return attached

    async def attach(self, target_info: dict[str, Any]) -> bool:
        """Attach to one page target and enable network tracking on it.

        Returns ``True`` once the tab is bound to the session this call created.
        Failures are logged; the next discovery sweep retries.
        """
        tab_id = target_info.get("targetId")
        if not tab_id or self._registry.has_tab(tab_id) or tab_id in self._attaching:
            return False

        self._attaching.add(tab_id)
        try:
            result = await self._cdp.send(
                "Target.attachToTarget", {"targetId": tab_id, "flatten": True}
            )
        except (CDPError, CDPConnectionClosed) as e:
            logger.warning(f"Failed to attach to tab {tab_id}: {e}")
            return False
        finally:
            self._attaching.discard(tab_id)

        session_id = result.get("sessionId")
        if not session_id:
            return False
        task = self._adopt_session(session_id, target_info, waiting=False)
        if task is not None:
            await asyncio.wait({task})
        return self._registry.session_for_tab(tab_id) == session_id

    async def handle(self, event: ProtocolEvent) -> None:
        """React to one ``Target.*`` event from the pump."""
        params = event.params
        if event.kind is EventKind.ATTACHED_TO_TARGET:
            self._on_attached(params)
        elif event.kind is EventKind.TARGET_CREATED:
            info = params.get("targetInfo") or {}
            if info.get("type") == PAGE_TARGET and not self._registry.has_tab(
                info.get("targetId", "")
            ):
                self._spawn(self.attach(info))
        elif event.kind is EventKind.DETACHED_FROM_TARGET:
            binding = self._registry.unbind_session(params.get("sessionId", ""))
            self._cancel_setup(params.get("sessionId", ""))
            if binding is not None:
                logger.info(f"Detached from tab {binding.tab_id}")
                self._notify_detached(binding.tab_id)
        elif event.kind is EventKind.TARGET_DESTROYED:
            binding = self._registry.unbind_tab(params.get("targetId", ""))
            if binding is not None:
                self._cancel_setup(binding.session_id)
                logger.info(f"Tab {binding.tab_id} closed")
                self._notify_detached(binding.tab_id)
        elif event.kind is EventKind.TARGET_INFO_CHANGED:
            info = params.get("targetInfo") or {}
            self._registry.update_target_info(
                info.get("targetId", ""), url=info.get("url"), title=info.get("title")
            )

    async def close(self) -> None:
        """Cancel in-flight enable/resume and attach tasks."""
        tasks = list(self._setup_tasks.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._setup_tasks.clear()
        self._background.clear()

    # -- internals -----------------------------------------------------------

    def _on_attached(self, params: dict[str, Any]) -> None:
        info = params.get("targetInfo") or {}
        session_id = params.get("sessionId")
        waiting = bool(params.get("waitingForDebugger"))
        if not session_id:
            return
        if info.get("type") != PAGE_TARGET:
            # Workers and other auto-attached targets: let them run, then let go.
            logger.debug(f"Releasing non-page target {info.get('type')} ({session_id})")
            self._spawn(self._release(session_id, waiting))
            return
        self._adopt_session(session_id, info, waiting)

    def _adopt_session(
        self, session_id: str, info: dict[str, Any], waiting: bool
    ) -> asyncio.Task[None] | None:
        """Bind a new page session and schedule its enable/resume.

        Returns the setup task for the binding, or ``None`` when the session
        was released because the tab is already bound to another one.
        """
        tab_id = info.get("targetId", "")
        bound = self._registry.session_for_tab(tab_id)
        if bound == session_id:
            return self._setup_tasks.get(session_id)
        if bound is not None:
            logger.debug(f"Tab {tab_id} already bound to {bound}; releasing {session_id}")
            self._spawn(self._release(session_id, waiting))
            return None

        self._registry.bind(session_id, tab_id, url=info.get("url", ""), title=info.get("title", ""))
        logger.info(f"Attached to tab {tab_id}: {info.get('url', '')[:80]}")
        task = asyncio.create_task(self._enable_network(session_id, waiting))
        self._setup_tasks[session_id] = task
        task.add_done_callback(lambda _: self._setup_tasks.pop(session_id, None))
        return task

    async def _enable_network(self, session_id: str, waiting: bool) -> None:
        try:
            await self._cdp.send(
                "Network.enable",
                {
                    "maxTotalBufferSize": self._capture.max_total_buffer_size,
                    "maxResourceBufferSize": self._capture.max_resource_buffer_size,
                },
                session_id=session_id,
            )
        except (CDPError, CDPConnectionClosed) as e:
            logger.warning(f"Network.enable failed for session {session_id}: {e}")
            binding = self._registry.unbind_session(session_id)
            if binding is not None:
                self._notify_detached(binding.tab_id)
            await self._release(session_id, waiting)
            return

        if waiting and self._registry.resolve(session_id) is not None:
            await self._resume(session_id)

    async def _resume(self, session_id: str) -> None:
        try:
            await self._cdp.send("Runtime.runIfWaitingForDebugger", session_id=session_id)
        except (CDPError, CDPConnectionClosed) as e:
            logger.debug(f"Resume failed for session {session_id}: {e}")

    async def _release(self, session_id: str, waiting: bool) -> None:
        if waiting:
            await self._resume(session_id)
        try:
            await self._cdp.send("Target.detachFromTarget", {"sessionId": session_id})
        except (CDPError, CDPConnectionClosed) as e:
            logger.debug(f"Detach failed for session {session_id}: {e}")

    def _cancel_setup(self, session_id: str) -> None:
        task = self._setup_tasks.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()

    def _notify_detached(self, tab_id: str) -> None:
        if self._on_detach is not None:
            self._on_detach(tab_id)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

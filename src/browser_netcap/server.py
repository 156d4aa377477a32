"""Asyncio daemon server for browser-netcap.

Owns the browser-level CDP connection, the session registry, the request store
and the correlator, and answers ``list`` / ``get`` / ``clear`` queries on a Unix
domain socket. A health loop probes the debugging endpoint and shuts the daemon
down when the browser goes away.

The daemon is started as a detached process by ``start_daemon`` (called from
``client.py``). Communication is line-delimited JSON over the socket: one
request per connection, one response line, then the connection is closed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from browser_netcap.attach import TabAttachmentManager
from browser_netcap.cdp import CDPConnection, get_browser_ws_url, probe_endpoint
from browser_netcap.config import NetcapConfig
from browser_netcap.correlator import RequestCorrelator
from browser_netcap.errors import BrowserUnavailableError, CDPConnectionClosed, CDPError
from browser_netcap.models import IPCRequest, IPCResponse
from browser_netcap.registry import SessionRegistry
from browser_netcap.session import (
    cleanup_runtime_files,
    get_log_path,
    get_socket_path,
    write_state,
)
from browser_netcap.store import RequestStore

logger = logging.getLogger("browser_netcap.server")

EXIT_OK = 0
EXIT_BROWSER_UNAVAILABLE = 3


class NetcapDaemon:
    """The network capture daemon.

    Usage::

        daemon = NetcapDaemon(config)
        exit_code = await daemon.run()   # returns after SIGTERM or browser loss
    """

    def __init__(self, config: NetcapConfig, socket_path: Path | None = None) -> None:
        self.config = config
        self.socket_path = socket_path or get_socket_path()
        self.registry = SessionRegistry()
        self.store = RequestStore()
        self.cdp: CDPConnection | None = None
        self.correlator: RequestCorrelator | None = None
        self.attachments: TabAttachmentManager | None = None
        self._server: asyncio.AbstractServer | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._stop = asyncio.Event()
        self._shut_down = False

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Connect to the browser, start serving, and attach to every tab.

        Raises ``BrowserUnavailableError`` before anything is written to disk
        if the debugging endpoint cannot be reached.
        """
        endpoint = self.config.browser
        ws_url = await asyncio.to_thread(get_browser_ws_url, endpoint)

        self.cdp = CDPConnection(ws_url)
        await self.cdp.connect()
        self.correlator = RequestCorrelator(
            self.store, self.registry, self.cdp, self.config.capture
        )
        self.attachments = TabAttachmentManager(
            self.cdp,
            self.registry,
            self.config.capture,
            on_detach=self.correlator.discard_pending,
        )
        self._tasks.append(asyncio.create_task(self._pump_events()))

        # Remove stale socket
        if self.socket_path.exists():
            self.socket_path.unlink()
        self._server = await asyncio.start_unix_server(
            self._handle_client, path=str(self.socket_path)
        )
        write_state(os.getpid(), self.socket_path)
        logger.info(f"Server listening on {self.socket_path}")

        await self.attachments.start()
        attached = await self.attachments.discover_and_attach_all()
        logger.info(f"Attached to {attached} tab(s) at startup")

        self._tasks.append(asyncio.create_task(self._health_loop()))
        self._tasks.append(asyncio.create_task(self._watch_connection()))

    async def run(self) -> int:
        """Start, serve until asked to stop, then shut down. Returns an exit code."""
        try:
            await self.start()
        except (BrowserUnavailableError, CDPConnectionClosed) as e:
            logger.error(f"Browser unavailable: {e}")
            await self.shutdown()
            return EXIT_BROWSER_UNAVAILABLE
        except BaseException:
            await self.shutdown()
            raise

        loop = asyncio.get_running_loop()
        signals = (signal.SIGINT, signal.SIGTERM)
        for sig in signals:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for {sig.name}")

        try:
            await self._stop.wait()
        finally:
            for sig in signals:
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError):
                    pass
            await self.shutdown()
        return EXIT_OK

    def request_shutdown(self, reason: str = "requested") -> None:
        if not self._stop.is_set():
            logger.info(f"Shutdown requested ({reason})")
            self._stop.set()

    async def shutdown(self) -> None:
        """Tear everything down. Safe to call more than once."""
        if self._shut_down:
            return
        self._shut_down = True
        self._stop.set()
        logger.info("Shutting down")

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.attachments is not None:
            await self.attachments.close()
        if self.correlator is not None:
            await self.correlator.close()
        if self.cdp is not None:
            await self.cdp.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            # Only a daemon that got as far as serving owns the runtime files.
            cleanup_runtime_files(self.socket_path)
        logger.info("Daemon stopped")

    # -- background loops ----------------------------------------------------

    async def _pump_events(self) -> None:
        assert self.cdp is not None
        while True:
            event = await self.cdp.events.get()
            try:
                if event.kind.is_network:
                    await self.correlator.handle(event)
                else:
                    await self.attachments.handle(event)
            except Exception:
                logger.exception(f"Error handling {event.kind.value}")

    async def _health_loop(self) -> None:
        interval = self.config.daemon.health_check_interval
        while True:
            await asyncio.sleep(interval)
            if not await probe_endpoint(self.config.browser):
                logger.warning("Browser endpoint unreachable, shutting down")
                self.request_shutdown("browser unreachable")
                return
            await self._refresh_tabs()

    async def _watch_connection(self) -> None:
        assert self.cdp is not None
        await self.cdp.closed.wait()
        logger.warning("CDP connection lost")
        self.request_shutdown("connection lost")

    async def _refresh_tabs(self) -> None:
        if self.attachments is None:
            return
        try:
            await asyncio.wait_for(
                self.attachments.discover_and_attach_all(),
                timeout=self.config.capture.discovery_timeout,
            )
        except (asyncio.TimeoutError, CDPError, CDPConnectionClosed) as e:
            logger.debug(f"Discovery sweep failed: {e!r}")

    # -- IPC -----------------------------------------------------------------

    async def handle_ipc_request(self, request: IPCRequest) -> IPCResponse:
        """Answer one parsed IPC request."""
        if request.type not in ("list", "get", "clear"):
            return IPCResponse.fail(f"Unknown request type: {request.type}")

        await self._refresh_tabs()

        if request.type == "list":
            records = await self.store.list(request.tab_id)
            return IPCResponse.ok([r.to_wire() for r in records])

        if request.type == "get":
            if request.tab_id is None or request.request_id is None:
                return IPCResponse.fail("tabId and requestId required")
            record = await self.store.get(request.tab_id, request.request_id)
            if record is None:
                return IPCResponse.fail("Request not found")
            return IPCResponse.ok(record.to_wire())

        await self.store.clear(request.tab_id)
        return IPCResponse.ok()

    async def handle_raw(self, data: bytes) -> IPCResponse:
        """Parse one request line and answer it."""
        try:
            request = IPCRequest.model_validate_json(data)
        except ValidationError as e:
            return IPCResponse.fail(f"Invalid request: {e.errors()[0]['msg']}")
        logger.debug(f"Received request: {request.type} tab={request.tab_id} id={request.request_id}")
        return await self.handle_ipc_request(request)

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            try:
                data = await reader.readline()
            except ValueError:
                # readline() re-raises LimitOverrunError as ValueError
                response = IPCResponse.fail("Request too large")
            else:
                response = await self._answer(data)
            if not response.success:
                logger.warning(f"Request failed: {response.error}")
            writer.write(json.dumps(response.to_wire()).encode() + b"\n")
            await writer.drain()
        except Exception:
            logger.exception("Unhandled error in handle_client")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _answer(self, data: bytes) -> IPCResponse:
        if not data.strip():
            return IPCResponse.fail("Empty request")
        try:
            return await self.handle_raw(data)
        except Exception as e:
            logger.exception("Request raised an exception")
            return IPCResponse.fail(str(e))


# ---------------------------------------------------------------------------
# Daemon entry point
# ---------------------------------------------------------------------------


async def run_daemon(config: NetcapConfig, socket_path: Path | None = None) -> int:
    daemon = NetcapDaemon(config, socket_path)
    return await daemon.run()


def _setup_logging(level: str = "DEBUG") -> None:
    """Configure logging for the daemon process.

    Writes to ``~/.browser-netcap/daemon.log``. Also redirects *stdout*/*stderr*
    so that stray ``print()`` calls or unhandled tracebacks land in the same file.
    """
    log_path = get_log_path()
    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)
    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(logging.INFO)

    sys.stdout = open(log_path, "a", encoding="utf-8")  # noqa: SIM115
    sys.stderr = sys.stdout


def start_daemon(config_dict: dict[str, Any] | str) -> None:
    """Entry point for the daemon subprocess. Called by client.py."""
    parsed: dict[str, Any] = (
        json.loads(config_dict) if isinstance(config_dict, str) else config_dict
    )
    config = NetcapConfig(**parsed)
    _setup_logging(config.daemon.log_level)
    logger.info(f"Daemon starting (pid={os.getpid()}, browser={config.browser.http_url})")
    try:
        exit_code = asyncio.run(run_daemon(config))
    except Exception:
        logger.exception("Daemon crashed")
        raise
    logger.info(f"Daemon exiting with status {exit_code}")
    sys.exit(exit_code)

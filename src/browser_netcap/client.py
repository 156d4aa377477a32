"""Synchronous client for browser-netcap.

Connects to the daemon's Unix domain socket to run ``list`` / ``get`` /
``clear`` queries, and starts the daemon as a detached process when no live
one is found.
"""

from __future__ import annotations

import json
import os
import signal
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError

from browser_netcap.cdp import list_page_targets
from browser_netcap.config import BrowserEndpointConfig, NetcapConfig
from browser_netcap.errors import DaemonUnreachableError, NetcapError
from browser_netcap.models import DaemonState, IPCRequest, IPCResponse, NetworkRequest
from browser_netcap.session import (
    cleanup_runtime_files,
    get_log_path,
    get_socket_path,
    is_daemon_alive,
    is_pid_alive,
    read_state,
)


def _receive_all(sock: socket.socket, buffer_size: int = 65536) -> bytes:
    """Read from *sock* until a full line has arrived or the peer closes."""
    data = b""
    while True:
        chunk = sock.recv(buffer_size)
        if not chunk:
            break
        data += chunk
        if b"\n" in data:
            break
    return data.strip()


def _daemon_socket_path() -> Path:
    state = read_state()
    if state is not None:
        return Path(state.socket_path)
    return get_socket_path()


def send_request(
    request: IPCRequest,
    socket_path: Path | None = None,
    timeout: float = 5.0,
) -> IPCResponse:
    """Send one request to the daemon and return its response.

    Raises ``DaemonUnreachableError`` if the socket is missing, refuses the
    connection, times out, or answers with something that is not a response.
    """
    sock_path = socket_path or _daemon_socket_path()
    if not sock_path.exists():
        raise DaemonUnreachableError("Network daemon is not running")

    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s.settimeout(timeout)
        s.connect(str(sock_path))
        s.sendall(json.dumps(request.to_wire()).encode() + b"\n")
        data = _receive_all(s)
    except ConnectionRefusedError as e:
        raise DaemonUnreachableError("Network daemon is not responding (stale socket)") from e
    except socket.timeout as e:
        raise DaemonUnreachableError(f"Network daemon timed out after {timeout}s") from e
    except OSError as e:
        raise DaemonUnreachableError(f"Connection error: {e}") from e
    finally:
        s.close()

    if not data:
        raise DaemonUnreachableError("Network daemon closed the connection without answering")
    try:
        return IPCResponse.model_validate_json(data)
    except ValidationError as e:
        raise DaemonUnreachableError(f"Malformed reply from daemon: {e}") from e


# ---------------------------------------------------------------------------
# Daemon lifecycle
# ---------------------------------------------------------------------------


def start_daemon(config: NetcapConfig) -> bool:
    """Start the daemon as a detached subprocess unless one is already running.

    The daemon is launched by running::

        python -c "from browser_netcap.server import start_daemon; ..."

    and polled until its identity file and socket exist.

    Returns ``True`` if the daemon started (or was already running),
    ``False`` otherwise.
    """
    if is_daemon_alive() and _daemon_socket_path().exists():
        return True

    # Clean up stale files from a previous run.
    cleanup_runtime_files()

    config_json = config.model_dump_json()
    proc = subprocess.Popen(
        [
            sys.executable,
            "-c",
            (
                "from browser_netcap.server import start_daemon; "
                f"start_daemon({config_json!r})"
            ),
        ],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )

    for _ in range(config.client.spawn_poll_attempts):
        time.sleep(config.client.spawn_poll_interval)
        if is_daemon_alive() and _daemon_socket_path().exists():
            return True
        if proc.poll() is not None:
            return False
    return False


def ensure_daemon(config: NetcapConfig) -> DaemonState:
    """Return the identity of a live daemon, starting one if needed."""
    if not start_daemon(config):
        raise DaemonUnreachableError(
            "Failed to start network daemon. Is the browser running with "
            f"--remote-debugging-port={config.browser.port}? See {get_log_path()}"
        )
    state = read_state()
    if state is None:
        raise DaemonUnreachableError("Network daemon started but wrote no identity file")
    return state


def stop_daemon(timeout: float = 2.0) -> bool:
    """Send ``SIGTERM`` to the daemon and wait for it to exit.

    Returns ``True`` if a live daemon was signalled. Runtime files are removed
    either way.
    """
    state = read_state()
    signalled = False
    if state is not None and is_pid_alive(state.pid):
        try:
            os.kill(state.pid, signal.SIGTERM)
            signalled = True
        except ProcessLookupError:
            pass
        deadline = time.monotonic() + timeout
        while signalled and time.monotonic() < deadline and is_pid_alive(state.pid):
            time.sleep(0.05)
    cleanup_runtime_files(Path(state.socket_path) if state else None)
    return signalled


def _query(config: NetcapConfig, request: IPCRequest) -> IPCResponse:
    """Send *request* to a live daemon, restarting it once if it is unreachable."""
    ensure_daemon(config)
    timeout = config.client.request_timeout
    try:
        return send_request(request, timeout=timeout)
    except DaemonUnreachableError:
        stop_daemon()
        ensure_daemon(config)
        return send_request(request, timeout=timeout)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def filter_requests(
    requests: Iterable[NetworkRequest],
    pattern: str | None = None,
    types: Iterable[str] | None = None,
    failed_only: bool = False,
) -> list[NetworkRequest]:
    """Filter by URL substring, resource types (case-insensitive), and failure."""
    needle = pattern.lower() if pattern else None
    wanted = {t.strip().lower() for t in types if t.strip()} if types else None

    result = []
    for req in requests:
        if needle and needle not in req.url.lower():
            continue
        if wanted and req.resource_type.value not in wanted:
            continue
        if failed_only and not req.failed:
            continue
        result.append(req)
    return result


def list_requests(
    config: NetcapConfig,
    tab_id: str | None = None,
    pattern: str | None = None,
    types: Iterable[str] | None = None,
    failed_only: bool = False,
) -> list[NetworkRequest]:
    response = _query(config, IPCRequest(type="list", tab_id=tab_id))
    if not response.success:
        raise NetcapError(response.error or "list failed")
    requests = [NetworkRequest.model_validate(r) for r in response.data or []]
    return filter_requests(requests, pattern, types, failed_only)


def get_request(config: NetcapConfig, tab_id: str, request_id: int) -> NetworkRequest | None:
    """Fetch one request; ``None`` if the daemon does not know it."""
    response = _query(config, IPCRequest(type="get", tab_id=tab_id, request_id=request_id))
    if not response.success:
        return None
    return NetworkRequest.model_validate(response.data)


def find_request(config: NetcapConfig, request_id: int) -> NetworkRequest | None:
    """Look a request up by id across every tab."""
    for req in list_requests(config):
        if req.id == request_id:
            return req
    return None


def clear_requests(config: NetcapConfig, tab_id: str | None = None) -> bool:
    """Clear captured requests. Returns ``False`` if no daemon is running."""
    if not is_daemon_alive():
        return False
    response = send_request(
        IPCRequest(type="clear", tab_id=tab_id), timeout=config.client.request_timeout
    )
    if not response.success:
        raise NetcapError(response.error or "clear failed")
    return True


# ---------------------------------------------------------------------------
# Tabs
# ---------------------------------------------------------------------------


def resolve_tab_id(endpoint: BrowserEndpointConfig, value: str) -> str:
    """Expand a tab id prefix to a full page target id.

    An exact id, or a prefix matching nothing (e.g. a tab closed since), is
    returned unchanged. Raises ``NetcapError`` on an ambiguous prefix.
    """
    ids = [t.get("id", "") for t in list_page_targets(endpoint)]
    if value in ids:
        return value
    matches = [i for i in ids if i.lower().startswith(value.lower())]
    if len(matches) > 1:
        raise NetcapError(f"Tab id prefix {value!r} is ambiguous ({len(matches)} matches)")
    if matches:
        return matches[0]
    return value

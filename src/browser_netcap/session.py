"""Runtime file management for browser-netcap.

The daemon publishes its identity under ~/.browser-netcap/ so that short-lived
client processes can find it, check that it is alive, and restart it:

    ~/.browser-netcap/
      daemon.sock       # Unix domain socket (IPC queries)
      daemon.json       # {"pid": ..., "socketPath": ...}
      daemon.log        # Daemon log output
      config.json       # Optional user configuration
"""

from __future__ import annotations

import json
import os
from pathlib import Path

from pydantic import ValidationError

from browser_netcap.models import DaemonState

# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

_BASE_DIR_NAME = ".browser-netcap"
_SOCKET_FILENAME = "daemon.sock"
_STATE_FILENAME = "daemon.json"
_LOG_FILENAME = "daemon.log"
_CONFIG_FILENAME = "config.json"


def get_base_dir() -> Path:
    """Return ``~/.browser-netcap/``, creating it if it does not exist."""
    base_dir = Path.home() / _BASE_DIR_NAME
    base_dir.mkdir(parents=True, exist_ok=True)
    return base_dir


def get_socket_path() -> Path:
    """Return the Unix domain socket path the daemon listens on."""
    return get_base_dir() / _SOCKET_FILENAME


def get_state_path() -> Path:
    """Return the daemon identity file path."""
    return get_base_dir() / _STATE_FILENAME


def get_log_path() -> Path:
    """Return the daemon log file path."""
    return get_base_dir() / _LOG_FILENAME


def get_config_path() -> Path:
    """Return the default user configuration path."""
    return get_base_dir() / _CONFIG_FILENAME


# ---------------------------------------------------------------------------
# Daemon identity
# ---------------------------------------------------------------------------


def write_state(pid: int, socket_path: Path) -> DaemonState:
    """Persist ``{pid, socketPath}`` so clients can locate the daemon."""
    state = DaemonState(pid=pid, socket_path=str(socket_path))
    get_state_path().write_text(state.model_dump_json(by_alias=True), encoding="utf-8")
    return state


def read_state() -> DaemonState | None:
    """Read the identity file.

    Returns ``None`` if the file is missing, empty, or does not hold a valid
    record.
    """
    try:
        text = get_state_path().read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    if not text:
        return None
    try:
        return DaemonState.model_validate_json(text)
    except ValidationError:
        return None


def is_pid_alive(pid: int) -> bool:
    """Return ``True`` if a process with *pid* exists.

    Uses ``os.kill(pid, 0)`` which checks for process existence without
    sending a signal.
    """
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Process exists but we lack permission to signal it; still alive.
        return True
    return True


def is_daemon_alive() -> bool:
    """Return ``True`` if the identity file names a running process."""
    state = read_state()
    if state is None:
        return False
    return is_pid_alive(state.pid)


def cleanup_runtime_files(socket_path: Path | None = None) -> None:
    """Remove the socket and identity files.

    Safe to call repeatedly; missing files are ignored.
    """
    paths = [socket_path or get_socket_path(), get_state_path()]
    for path in paths:
        try:
            path.unlink()
        except FileNotFoundError:
            pass


def read_user_config() -> dict | None:
    """Read ``config.json``, returning None if it is absent or unparsable."""
    try:
        return json.loads(get_config_path().read_text(encoding="utf-8"))
    except (FileNotFoundError, json.JSONDecodeError):
        return None

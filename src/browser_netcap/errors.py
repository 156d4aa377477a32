"""Exceptions raised by browser-netcap.

PUBLIC API:
  - NetcapError: Base exception for all browser-netcap failures
  - BrowserUnavailableError: Debugging endpoint cannot be reached
  - CDPError: Browser answered a protocol command with an error
  - CDPConnectionClosed: Protocol websocket went away
  - DaemonUnreachableError: Client could not talk to the capture daemon
"""

from __future__ import annotations


class NetcapError(Exception):
    """Base exception for all browser-netcap failures."""

    pass


class BrowserUnavailableError(NetcapError):
    """Raised when the browser's debugging endpoint cannot be reached."""

    pass


class CDPError(NetcapError):
    """Raised when the browser replies to a command with an error object."""

    def __init__(self, method: str, message: str, code: int | None = None) -> None:
        super().__init__(f"{method}: {message}")
        self.method = method
        self.message = message
        self.code = code


class CDPConnectionClosed(NetcapError):
    """Raised when a command is sent on, or pending on, a closed connection."""

    pass


class DaemonUnreachableError(NetcapError):
    """Raised by the client when the daemon socket is missing, refuses or times out."""

    pass

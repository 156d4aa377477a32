"""Captured request records and the IPC wire format.

All models serialize with camelCase keys (``tabId``, ``startTime``, ...), which
is what IPC clients read and write.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel


class ResourceType(str, Enum):
    DOCUMENT = "document"
    SCRIPT = "script"
    XHR = "xhr"
    FETCH = "fetch"
    STYLESHEET = "stylesheet"
    IMAGE = "image"
    FONT = "font"
    WEBSOCKET = "websocket"
    OTHER = "other"

    @classmethod
    def from_cdp(cls, value: str | None) -> ResourceType:
        """Map a CDP ``Network.ResourceType`` (``"XHR"``, ``"Media"``, ...) onto our set."""
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.OTHER


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class NetworkRequest(_WireModel):
    id: int
    tab_id: str
    url: str
    method: str
    resource_type: ResourceType = ResourceType.OTHER
    start_time: float
    end_time: float | None = None
    request_headers: dict[str, str] = Field(default_factory=dict)
    status: int | None = None
    status_text: str | None = None
    mime_type: str | None = None
    response_headers: dict[str, str] | None = None
    request_body: str | None = None
    response_body: str | None = None
    error: str | None = None
    failed: bool = False

    @computed_field
    @property
    def duration(self) -> float | None:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time


class IPCRequest(_WireModel):
    type: str
    tab_id: str | None = None
    request_id: int | None = None


class IPCResponse(_WireModel):
    success: bool
    data: Any = None
    error: str | None = None

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            wire["data"] = self.data
        if self.error is not None:
            wire["error"] = self.error
        return wire

    @classmethod
    def ok(cls, data: Any = None) -> IPCResponse:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> IPCResponse:
        return cls(success=False, error=error)


class DaemonState(_WireModel):
    pid: int
    socket_path: str


def normalize_headers(headers: dict[str, Any] | None) -> dict[str, str]:
    """Copy CDP headers into a plain ``str -> str`` dict (later duplicates win)."""
    result: dict[str, str] = {}
    for key, value in (headers or {}).items():
        result[str(key)] = str(value)
    return result

"""Per-tab request store.

Records are kept per tab in insertion order. Every read or mutation holds the
store lock; readers get deep copies so nothing outside the store can observe a
record half-way through an update.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from browser_netcap.models import NetworkRequest

logger = logging.getLogger(__name__)


class RequestStore:
    def __init__(self) -> None:
        self._tabs: dict[str, list[NetworkRequest]] = {}
        self._index: dict[tuple[str, int], NetworkRequest] = {}
        self._lock = asyncio.Lock()

    async def append(self, request: NetworkRequest) -> None:
        async with self._lock:
            self._tabs.setdefault(request.tab_id, []).append(request)
            self._index[(request.tab_id, request.id)] = request

    async def update(self, tab_id: str, request_id: int, **changes: Any) -> bool:
        """Set attributes on a stored record.

        Returns ``False`` when the record no longer exists (never stored, or
        dropped by ``clear``).
        """
        async with self._lock:
            record = self._index.get((tab_id, request_id))
            if record is None:
                return False
            for name, value in changes.items():
                setattr(record, name, value)
            return True

    async def list(self, tab_id: str | None = None) -> list[NetworkRequest]:
        """Return one tab's records, or every tab's records concatenated."""
        async with self._lock:
            if tab_id is not None:
                records = list(self._tabs.get(tab_id, []))
            else:
                records = [r for tab in self._tabs.values() for r in tab]
            return [r.model_copy(deep=True) for r in records]

    async def get(self, tab_id: str, request_id: int) -> NetworkRequest | None:
        async with self._lock:
            record = self._index.get((tab_id, request_id))
            return record.model_copy(deep=True) if record else None

    async def clear(self, tab_id: str | None = None) -> int:
        """Drop one tab's records, or everything. Returns how many were dropped."""
        async with self._lock:
            if tab_id is None:
                dropped = len(self._index)
                self._tabs.clear()
                self._index.clear()
            else:
                records = self._tabs.pop(tab_id, [])
                dropped = len(records)
                for record in records:
                    self._index.pop((tab_id, record.id), None)
        if dropped:
            logger.debug(f"Cleared {dropped} request(s) (tab={tab_id or 'all'})")
        return dropped

    async def tab_ids(self) -> list[str]:
        async with self._lock:
            return list(self._tabs)

    async def count(self) -> int:
        async with self._lock:
            return len(self._index)

"""Protocol session registry: which CDP session belongs to which tab."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class SessionBinding:
    session_id: str
    tab_id: str
    url: str = ""
    title: str = ""
    attached_at: float = field(default_factory=time.time)


class SessionRegistry:
    """Bidirectional session <-> tab map.

    A tab has at most one live binding. Every method is synchronous and runs on
    the daemon's event loop, so a lookup followed by a bind can never interleave
    with another handler.
    """

    def __init__(self) -> None:
        self._by_session: dict[str, SessionBinding] = {}
        self._by_tab: dict[str, SessionBinding] = {}

    def bind(
        self, session_id: str, tab_id: str, url: str = "", title: str = ""
    ) -> SessionBinding | None:
        """Bind *session_id* to *tab_id*.

        Returns the new binding, or ``None`` if the tab is already bound (to
        this or another session) or the session is already in use.
        """
        if tab_id in self._by_tab or session_id in self._by_session:
            return None
        binding = SessionBinding(session_id=session_id, tab_id=tab_id, url=url, title=title)
        self._by_session[session_id] = binding
        self._by_tab[tab_id] = binding
        return binding

    def unbind_session(self, session_id: str) -> SessionBinding | None:
        binding = self._by_session.pop(session_id, None)
        if binding is not None:
            self._by_tab.pop(binding.tab_id, None)
        return binding

    def unbind_tab(self, tab_id: str) -> SessionBinding | None:
        binding = self._by_tab.pop(tab_id, None)
        if binding is not None:
            self._by_session.pop(binding.session_id, None)
        return binding

    def resolve(self, session_id: str | None) -> str | None:
        """Return the tab id for a session, or ``None`` if it is unknown."""
        if session_id is None:
            return None
        binding = self._by_session.get(session_id)
        return binding.tab_id if binding else None

    def session_for_tab(self, tab_id: str) -> str | None:
        binding = self._by_tab.get(tab_id)
        return binding.session_id if binding else None

    def has_tab(self, tab_id: str) -> bool:
        return tab_id in self._by_tab

    def update_target_info(self, tab_id: str, url: str | None = None, title: str | None = None) -> None:
        binding = self._by_tab.get(tab_id)
        if binding is None:
            return
        if url is not None:
            binding.url = url
        if title is not None:
            binding.title = title

    def bindings(self) -> list[SessionBinding]:
        return list(self._by_tab.values())

    def __len__(self) -> int:
        return len(self._by_tab)

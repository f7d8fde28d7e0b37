"""In-memory map of live streaming sessions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .streaming import StreamingSession


class SessionRegistry:
    """Session id to session lookup.

    All access happens on the event loop thread, so no locking is needed.
    """

    def __init__(self):
        self._sessions: dict[str, "StreamingSession"] = {}

    def register(self, session_id: str, session: "StreamingSession") -> None:
        self._sessions[session_id] = session

    def lookup(self, session_id: str) -> Optional["StreamingSession"]:
        return self._sessions.get(session_id)

    def unregister(self, session_id: str) -> Optional["StreamingSession"]:
        return self._sessions.pop(session_id, None)

    def ids(self) -> list[str]:
        return list(self._sessions)

    def sessions(self) -> list["StreamingSession"]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

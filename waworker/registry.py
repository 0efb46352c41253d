from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Protocol

from .states import SessionState
from .transport import SocketHandle


class _KnownIds(Protocol):
    def list_ids(self) -> list[str]:
        ...


@dataclass(slots=True)
class SessionRecord:
    session_id: str
    state: SessionState = SessionState.INITIALIZING
    socket: Optional[SocketHandle] = None
    previous_socket: Optional[SocketHandle] = None
    pending_qr: Optional[str] = None
    reconnect_timer: Optional[asyncio.TimerHandle] = None
    reconnect_attempts: int = 0
    event_task: Optional[asyncio.Task[Any]] = None
    unsaved_credentials: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    last_seen: Optional[float] = None

    def owns(self, socket: SocketHandle) -> bool:
        """True when events from ``socket`` still belong to this record."""
        if self.socket is not None:
            return self.socket is socket
        return self.state is SessionState.RECONNECTING and self.previous_socket is socket

    def cancel_reconnect(self) -> bool:
        timer = self.reconnect_timer
        self.reconnect_timer = None
        if timer is None or timer.cancelled():
            return False
        timer.cancel()
        return True


class SessionRegistry:
    """In-memory map of session id to :class:`SessionRecord`.

    All mutation happens on the event loop thread, so plain dict operations
    keep entries of different sessions independent without locking.
    """

    def __init__(self, store: _KnownIds) -> None:
        self._store = store
        self._records: Dict[str, SessionRecord] = {}

    def upsert(self, record: SessionRecord) -> SessionRecord:
        self._records[record.session_id] = record
        return record

    def get(self, session_id: str) -> Optional[SessionRecord]:
        return self._records.get(session_id)

    def remove(self, session_id: str) -> Optional[SessionRecord]:
        return self._records.pop(session_id, None)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def records(self) -> Iterator[SessionRecord]:
        return iter(list(self._records.values()))

    def list_known_ids(self) -> list[str]:
        known = list(self._store.list_ids())
        seen = set(known)
        for session_id in self._records:
            if session_id not in seen:
                seen.add(session_id)
                known.append(session_id)
        return known

    def stats_snapshot(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in SessionState if state is not SessionState.ABSENT}
        for record in self._records.values():
            if record.state.value in counts:
                counts[record.state.value] += 1
        return counts


__all__ = ["SessionRecord", "SessionRegistry"]

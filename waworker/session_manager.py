from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .credentials import is_valid_session_id
from .manager import CredentialStore, SessionNotActiveError, WhatsAppSessionManager
from .registry import SessionRecord
from .states import STATUS_NONE, STATUS_OFFLINE
from .transport import SocketFactory


@dataclass(slots=True)
class SessionSnapshot:
    """Lightweight snapshot of one session's status."""

    session_id: str
    status: str
    last_error: Optional[str] = None
    reconnect_attempts: int = 0

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionSnapshot":
        return cls(
            session_id=record.session_id,
            status=record.state.value,
            last_error=record.last_error,
            reconnect_attempts=record.reconnect_attempts,
        )

    def to_payload(self) -> dict[str, Any]:
        return {"id": self.session_id, "status": self.status}


@dataclass(slots=True)
class QRSnapshot:
    session_id: str
    status: str
    qr: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {"qr": self.qr, "status": self.status}

    def png_bytes(self) -> Optional[bytes]:
        if not self.qr or "," not in self.qr:
            return None
        header, encoded = self.qr.split(",", 1)
        if not header.startswith("data:image/png;base64"):
            return None
        try:
            return base64.b64decode(encoded)
        except ValueError:
            return None


class SessionManager:
    """Read-only query surface plus request entry points over the lifecycle manager."""

    def __init__(
        self,
        store: CredentialStore,
        socket_factory: SocketFactory,
        *,
        reconnect_delay: float,
        max_reconnect_attempts: int = 0,
        manager: Optional[WhatsAppSessionManager] = None,
    ) -> None:
        self._store = store
        self._manager = manager or WhatsAppSessionManager(
            store,
            socket_factory,
            reconnect_delay=reconnect_delay,
            max_reconnect_attempts=max_reconnect_attempts,
        )

    @property
    def lifecycle(self) -> WhatsAppSessionManager:
        return self._manager

    async def start(self) -> None:
        await self._manager.start()

    async def shutdown(self) -> None:
        await self._manager.shutdown()

    def stats_snapshot(self) -> dict[str, int]:
        return self._manager.stats_snapshot()

    def status_of(self, session_id: str) -> SessionSnapshot:
        record = self._manager.registry.get(session_id)
        if record is not None:
            return SessionSnapshot.from_record(record)
        if is_valid_session_id(session_id) and self._store.exists(session_id):
            return SessionSnapshot(session_id=session_id, status=STATUS_OFFLINE)
        return SessionSnapshot(session_id=session_id, status=STATUS_NONE)

    def list_all_statuses(self) -> list[SessionSnapshot]:
        registry = self._manager.registry
        result = []
        for session_id in registry.list_known_ids():
            record = registry.get(session_id)
            if record is not None:
                result.append(SessionSnapshot.from_record(record))
            else:
                result.append(SessionSnapshot(session_id=session_id, status=STATUS_OFFLINE))
        return result

    def current_qr(self, session_id: str) -> QRSnapshot:
        record = self._manager.registry.get(session_id)
        if record is None:
            return QRSnapshot(session_id=session_id, status=STATUS_NONE)
        return QRSnapshot(
            session_id=session_id, status=record.state.value, qr=record.pending_qr
        )

    def request_start(self, session_id: str) -> None:
        self._manager.request_start(session_id)

    async def request_logout(self, session_id: str) -> bool:
        return await self._manager.logout(session_id)

    async def send_message(self, session_id: str, message: Mapping[str, Any]) -> Any:
        return await self._manager.send_message(session_id, message)


__all__ = [
    "QRSnapshot",
    "SessionManager",
    "SessionNotActiveError",
    "SessionSnapshot",
]

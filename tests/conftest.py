from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, Mapping

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(ROOT_DIR))

import waworker.api as wa_api
from waworker.session_manager import QRSnapshot, SessionNotActiveError, SessionSnapshot
from waworker.transport import SocketError

API_KEY = "test-key"


class StubSessionManager:
    def __init__(self) -> None:
        self.statuses: Dict[str, str] = {}
        self.qr: Dict[str, str] = {}
        self.started: list[str] = []
        self.logged_out: list[str] = []
        self.sent: list[tuple[str, Mapping[str, Any]]] = []
        self.send_error: Exception | None = None
        self.stats: Dict[str, int] = {}

    async def start(self) -> None:  # pragma: no cover - wiring
        return None

    async def shutdown(self) -> None:  # pragma: no cover - wiring
        return None

    def stats_snapshot(self) -> Dict[str, int]:
        return dict(self.stats)

    def status_of(self, session_id: str) -> SessionSnapshot:
        return SessionSnapshot(session_id=session_id, status=self.statuses.get(session_id, "none"))

    def list_all_statuses(self) -> list[SessionSnapshot]:
        return [
            SessionSnapshot(session_id=session_id, status=status)
            for session_id, status in self.statuses.items()
        ]

    def current_qr(self, session_id: str) -> QRSnapshot:
        status = self.statuses.get(session_id, "none")
        return QRSnapshot(session_id=session_id, status=status, qr=self.qr.get(session_id))

    def request_start(self, session_id: str) -> None:
        self.started.append(session_id)
        self.statuses.setdefault(session_id, "initializing")

    async def request_logout(self, session_id: str) -> bool:
        self.logged_out.append(session_id)
        return self.statuses.pop(session_id, None) is not None

    async def send_message(self, session_id: str, message: Mapping[str, Any]) -> Any:
        if self.statuses.get(session_id) != "connected":
            raise SessionNotActiveError(session_id)
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((session_id, message))
        return {"message_id": "m-1"}


@pytest.fixture
def stub_manager() -> StubSessionManager:
    return StubSessionManager()


@pytest.fixture
def wa_client(monkeypatch, tmp_path, stub_manager):
    monkeypatch.setenv("WA_SESSIONS_DIR", str(tmp_path / "sessions"))
    monkeypatch.setenv("WA_API_KEY", API_KEY)
    monkeypatch.setattr(wa_api, "SessionManager", lambda *args, **kwargs: stub_manager)
    app = wa_api.create_app()
    with TestClient(app) as client:
        yield client, stub_manager


@pytest.fixture
def send_failure() -> SocketError:
    return SocketError("bridge down")

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(PROJECT_ROOT))

from waworker.credentials import CredentialStoreError
from waworker.manager import WhatsAppSessionManager
from waworker.transport import ConnectionClosed, DisconnectReason, SocketError


class FakeSocket:
    def __init__(self, session_id: str, credentials: Optional[Mapping[str, Any]]) -> None:
        self.session_id = session_id
        self.credentials = credentials
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[Mapping[str, Any]] = []
        self.deauthorize_calls = 0
        self.closed = False
        self.fail_send = False
        self.fail_deauthorize = False
        self.close_on_deauthorize = True

    def emit(self, *events: Any) -> None:
        for event in events:
            self.queue.put_nowait(event)

    def finish(self) -> None:
        self.queue.put_nowait(None)

    async def events(self):
        while True:
            event = await self.queue.get()
            if event is None:
                return
            if isinstance(event, Exception):
                raise event
            yield event

    async def send(self, message: Mapping[str, Any]) -> dict[str, Any]:
        if self.fail_send:
            raise SocketError("send failed")
        self.sent.append(message)
        return {"message_id": len(self.sent)}

    async def deauthorize(self) -> None:
        self.deauthorize_calls += 1
        if self.fail_deauthorize:
            raise SocketError("logout failed")
        if self.close_on_deauthorize:
            self.emit(ConnectionClosed(DisconnectReason.LOGGED_OUT))

    async def close(self) -> None:
        self.closed = True


class FakeSocketFactory:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.sockets: Dict[str, list[FakeSocket]] = {}
        self.fail_for: set[str] = set()
        self.delay = 0.0

    async def create_socket(self, session_id: str, credentials: Optional[Mapping[str, Any]]):
        self.calls.append(session_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if session_id in self.fail_for:
            raise SocketError(f"cannot open {session_id}")
        socket = FakeSocket(session_id, credentials)
        self.sockets.setdefault(session_id, []).append(socket)
        return socket, socket.events()

    def count(self, session_id: str) -> int:
        return self.calls.count(session_id)

    def last(self, session_id: str) -> FakeSocket:
        return self.sockets[session_id][-1]


class MemoryCredentialStore:
    def __init__(self, data: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.data: Dict[str, Dict[str, Any]] = dict(data or {})
        self.corrupt: set[str] = set()
        self.save_delays: list[float] = []
        self.failing_saves = 0
        self.saves: list[tuple[str, Dict[str, Any]]] = []
        self.deleted: list[str] = []

    async def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        if session_id in self.corrupt:
            raise CredentialStoreError(f"corrupted session_id={session_id}")
        stored = self.data.get(session_id)
        return dict(stored) if stored is not None else None

    async def save(self, session_id: str, credentials: Mapping[str, Any]) -> bool:
        delay = self.save_delays.pop(0) if self.save_delays else 0.0
        await asyncio.sleep(delay)
        if self.failing_saves:
            self.failing_saves -= 1
            raise CredentialStoreError("disk full")
        self.data[session_id] = dict(credentials)
        self.saves.append((session_id, dict(credentials)))
        return True

    async def delete(self, session_id: str) -> bool:
        await asyncio.sleep(0)
        self.deleted.append(session_id)
        return self.data.pop(session_id, None) is not None

    def exists(self, session_id: str) -> bool:
        return session_id in self.data

    def list_ids(self) -> list[str]:
        return sorted(self.data)


def _fake_qr(token: str) -> str:
    return f"data:image/png;base64,{token}"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def socket_factory() -> FakeSocketFactory:
    return FakeSocketFactory()


@pytest.fixture
def memory_store() -> MemoryCredentialStore:
    return MemoryCredentialStore()


@pytest.fixture
def make_manager(socket_factory: FakeSocketFactory, memory_store: MemoryCredentialStore):
    def _factory(**kwargs: Any) -> WhatsAppSessionManager:
        kwargs.setdefault("reconnect_delay", 0.05)
        kwargs.setdefault("qr_renderer", _fake_qr)
        return WhatsAppSessionManager(memory_store, socket_factory, **kwargs)

    return _factory


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition was not reached in time")
            await asyncio.sleep(0.01)

    return _wait

"""Contract between the session manager and the protocol socket layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, AsyncIterator, Mapping, Optional, Protocol, Union


class SocketError(Exception):
    """Raised when the socket layer fails to open, send or log out."""


class DisconnectReason(IntEnum):
    LOGGED_OUT = 401
    FORBIDDEN = 403
    CONNECTION_LOST = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


def is_terminal(reason: Optional[int]) -> bool:
    """True when the remote side will never accept the current credentials."""
    return reason == DisconnectReason.LOGGED_OUT


def reason_label(reason: Optional[int]) -> str:
    if reason is None:
        return "unknown"
    try:
        return DisconnectReason(reason).name.lower()
    except ValueError:
        return str(reason)


@dataclass(frozen=True, slots=True)
class CredentialsRotated:
    credentials: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PairingTokenIssued:
    token: str


@dataclass(frozen=True, slots=True)
class ConnectionOpened:
    pass


@dataclass(frozen=True, slots=True)
class ConnectionClosed:
    reason: Optional[int] = None


SocketEvent = Union[CredentialsRotated, PairingTokenIssued, ConnectionOpened, ConnectionClosed]


class SocketHandle(Protocol):
    async def send(self, message: Mapping[str, Any]) -> Any:
        ...

    async def deauthorize(self) -> None:
        ...

    async def close(self) -> None:
        ...


class SocketFactory(Protocol):
    async def create_socket(
        self,
        session_id: str,
        credentials: Optional[Mapping[str, Any]],
    ) -> tuple[SocketHandle, AsyncIterator[SocketEvent]]:
        ...


__all__ = [
    "ConnectionClosed",
    "ConnectionOpened",
    "CredentialsRotated",
    "DisconnectReason",
    "PairingTokenIssued",
    "SocketError",
    "SocketEvent",
    "SocketFactory",
    "SocketHandle",
    "is_terminal",
    "reason_label",
]

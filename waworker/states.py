"""Session lifecycle states and the transition table between them."""

from __future__ import annotations

from enum import Enum


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    QR_READY = "qr_ready"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ABSENT = "absent"

    @property
    def is_live(self) -> bool:
        """True while the session owns an open socket."""
        return self in LIVE_STATES


class SessionEvent(str, Enum):
    START = "start"
    SOCKET_FAILED = "socket_failed"
    PAIRING_TOKEN = "pairing_token"
    OPENED = "opened"
    CLOSED_TRANSIENT = "closed_transient"
    CLOSED_TERMINAL = "closed_terminal"
    RETRIES_EXHAUSTED = "retries_exhausted"
    LOGOUT = "logout"
    CREDENTIALS_ROTATED = "credentials_rotated"


LIVE_STATES = frozenset(
    {SessionState.INITIALIZING, SessionState.QR_READY, SessionState.CONNECTED}
)

# Status strings reported for ids without an in-memory record.
STATUS_OFFLINE = "offline"
STATUS_NONE = "none"


_TRANSITIONS: dict[tuple[SessionState, SessionEvent], SessionState] = {
    (SessionState.ABSENT, SessionEvent.START): SessionState.INITIALIZING,
    (SessionState.RECONNECTING, SessionEvent.START): SessionState.INITIALIZING,
    (SessionState.INITIALIZING, SessionEvent.SOCKET_FAILED): SessionState.ABSENT,
    (SessionState.RECONNECTING, SessionEvent.SOCKET_FAILED): SessionState.ABSENT,
    (SessionState.INITIALIZING, SessionEvent.PAIRING_TOKEN): SessionState.QR_READY,
    (SessionState.QR_READY, SessionEvent.PAIRING_TOKEN): SessionState.QR_READY,
    (SessionState.INITIALIZING, SessionEvent.OPENED): SessionState.CONNECTED,
    (SessionState.QR_READY, SessionEvent.OPENED): SessionState.CONNECTED,
    (SessionState.RECONNECTING, SessionEvent.OPENED): SessionState.CONNECTED,
}

for _state in LIVE_STATES:
    _TRANSITIONS[(_state, SessionEvent.CLOSED_TRANSIENT)] = SessionState.RECONNECTING
    _TRANSITIONS[(_state, SessionEvent.RETRIES_EXHAUSTED)] = SessionState.ABSENT
for _state in (*LIVE_STATES, SessionState.RECONNECTING):
    _TRANSITIONS[(_state, SessionEvent.CLOSED_TERMINAL)] = SessionState.ABSENT
    _TRANSITIONS[(_state, SessionEvent.LOGOUT)] = SessionState.ABSENT
_TRANSITIONS[(SessionState.RECONNECTING, SessionEvent.RETRIES_EXHAUSTED)] = SessionState.ABSENT
del _state


def transition(state: SessionState, event: SessionEvent) -> SessionState:
    """Return the state reached from ``state`` when ``event`` happens.

    The table is total: pairs that are not listed leave the state unchanged
    (for example a credential rotation, or a pairing token arriving on an
    already connected session).
    """

    return _TRANSITIONS.get((state, event), state)


__all__ = [
    "LIVE_STATES",
    "STATUS_NONE",
    "STATUS_OFFLINE",
    "SessionEvent",
    "SessionState",
    "transition",
]

from __future__ import annotations

import asyncio
import base64
import contextlib
import io
import logging
import time
from typing import Any, AsyncIterator, Callable, Coroutine, Dict, Mapping, Optional, Protocol

import qrcode
from prometheus_client import Counter, Gauge

from .credentials import CredentialStoreError, InvalidSessionIdError
from .registry import SessionRecord, SessionRegistry
from .states import LIVE_STATES, SessionEvent, SessionState, transition
from .transport import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsRotated,
    DisconnectReason,
    PairingTokenIssued,
    SocketError,
    SocketEvent,
    SocketFactory,
    SocketHandle,
    is_terminal,
    reason_label,
)


LOGGER = logging.getLogger("waworker")


DEFAULT_RECONNECT_DELAY = 3.0


SESSIONS_CONNECTED = Gauge(
    "waworker_sessions_connected",
    "Number of WhatsApp sessions with an open connection",
)
SESSIONS_QR_READY = Gauge(
    "waworker_sessions_qr_ready",
    "Number of WhatsApp sessions waiting for a QR scan",
)
SESSIONS_RECONNECTING = Gauge(
    "waworker_sessions_reconnecting",
    "Number of WhatsApp sessions waiting for a scheduled reconnect",
)
EVENT_ERRORS = Counter(
    "waworker_events_errors_total",
    "WhatsApp session errors grouped by category",
    labelnames=("type",),
)
RECONNECTS_SCHEDULED = Counter(
    "waworker_reconnect_scheduled_total",
    "Reconnect attempts scheduled after a transient disconnect",
    labelnames=("reason",),
)
TERMINAL_LOGOUTS = Counter(
    "waworker_terminal_logout_total",
    "Sessions purged because the remote side logged them out",
)


class CredentialStore(Protocol):
    async def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def save(self, session_id: str, credentials: Mapping[str, Any]) -> Any:
        ...

    async def delete(self, session_id: str) -> Any:
        ...

    def exists(self, session_id: str) -> bool:
        ...

    def list_ids(self) -> list[str]:
        ...


class SessionStartError(Exception):
    """Raised when a session socket could not be brought up."""

    def __init__(self, session_id: str, error: str) -> None:
        super().__init__(f"session_start_failed session_id={session_id}: {error}")
        self.session_id = session_id
        self.error = error


class SessionNotActiveError(Exception):
    """Raised when an operation needs a connected session and there is none."""

    def __init__(self, session_id: str) -> None:
        super().__init__("session_not_active")
        self.session_id = session_id


def build_qr_png(token: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(token)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def render_qr_data_url(token: str) -> str:
    encoded = base64.b64encode(build_qr_png(token)).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def _error_type(exc: BaseException) -> str:
    if isinstance(exc, SocketError):
        return "socket"
    if isinstance(exc, (CredentialStoreError, InvalidSessionIdError)):
        return "storage"
    return "exception"


class WhatsAppSessionManager:
    """Drive WhatsApp sessions through their lifecycle and own their sockets."""

    def __init__(
        self,
        store: CredentialStore,
        socket_factory: SocketFactory,
        *,
        registry: Optional[SessionRegistry] = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        max_reconnect_attempts: int = 0,
        qr_renderer: Callable[[str], str] = render_qr_data_url,
    ) -> None:
        self._store = store
        self._factory = socket_factory
        self._registry = registry or SessionRegistry(store)
        self._reconnect_delay = max(0.0, float(reconnect_delay))
        self._max_reconnect_attempts = max(0, int(max_reconnect_attempts))
        self._qr_renderer = qr_renderer
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._started = False
        self._closing = False

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def store(self) -> CredentialStore:
        return self._store

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._closing = False
        await self.bootstrap()

    async def bootstrap(self) -> Dict[str, Optional[BaseException]]:
        """Start every session that has stored credentials.

        Sessions come up concurrently and independently; the result maps each
        session id to the error that stopped it, or ``None``.
        """

        session_ids = self._store.list_ids()
        if not session_ids:
            LOGGER.info("stage=bootstrap sessions=0")
            return {}
        results = await asyncio.gather(
            *(self.start_session(session_id) for session_id in session_ids),
            return_exceptions=True,
        )
        outcome: Dict[str, Optional[BaseException]] = {}
        for session_id, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                outcome[session_id] = result
                LOGGER.error(
                    "stage=bootstrap_failed session_id=%s error=%s", session_id, result
                )
            else:
                outcome[session_id] = None
                LOGGER.info("stage=bootstrap session_id=%s event=reactivated", session_id)
        self._update_metrics()
        return outcome

    async def shutdown(self) -> None:
        self._closing = True
        tasks: list[asyncio.Task[Any]] = []
        sockets: list[SocketHandle] = []
        for record in self._registry.records():
            record.cancel_reconnect()
            if record.event_task is not None and not record.event_task.done():
                record.event_task.cancel()
                tasks.append(record.event_task)
            record.event_task = None
            socket = record.socket or record.previous_socket
            if socket is not None:
                sockets.append(socket)
        for task in list(self._background):
            if not task.done():
                task.cancel()
                tasks.append(task)
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        for socket in sockets:
            with contextlib.suppress(Exception):
                await socket.close()
        aclose = getattr(self._factory, "aclose", None)
        if aclose is not None:
            with contextlib.suppress(Exception):
                await aclose()
        self._started = False
        self._update_metrics()

    @contextlib.asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[session_id] - 1
            if remaining:
                self._lock_users[session_id] = remaining
            else:
                del self._lock_users[session_id]
                self._locks.pop(session_id, None)

    async def _cancel_task(self, task: Optional[asyncio.Task[Any]]) -> None:
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task

    async def _close_quietly(self, session_id: str, socket: Optional[SocketHandle]) -> None:
        if socket is None:
            return
        try:
            await socket.close()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("stage=socket_close_failed session_id=%s error=%s", session_id, exc)

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _set_state(
        self,
        record: SessionRecord,
        event: SessionEvent,
        *,
        reason: str | None = None,
    ) -> SessionState:
        previous = record.state
        state = transition(previous, event)
        if previous != state:
            LOGGER.info(
                "stage=state_transition session_id=%s from=%s to=%s event=%s reason=%s",
                record.session_id,
                previous.value,
                state.value,
                event.value,
                reason or event.value,
            )
        record.state = state
        if state is not SessionState.QR_READY:
            record.pending_qr = None
        if state is SessionState.CONNECTED:
            record.cancel_reconnect()
        if state in LIVE_STATES:
            record.previous_socket = None
        else:
            record.previous_socket = record.socket if state is SessionState.RECONNECTING else None
            record.socket = None
        return state

    def _can_retry(self, record: SessionRecord) -> bool:
        if not self._max_reconnect_attempts:
            return True
        return record.reconnect_attempts < self._max_reconnect_attempts

    async def start_session(self, session_id: str) -> SocketHandle:
        """Open a socket for ``session_id`` or return the one already live.

        Does not wait for pairing; progress is reported through the registry.
        """

        async with self._session_lock(session_id):
            record = self._registry.get(session_id)
            if record is not None and record.state in LIVE_STATES and record.socket is not None:
                LOGGER.debug(
                    "stage=start_skip session_id=%s status=%s", session_id, record.state.value
                )
                return record.socket
            stale_socket: Optional[SocketHandle] = None
            if record is not None:
                record.cancel_reconnect()
                stale_socket = record.previous_socket
                stale_task = record.event_task
                record.event_task = None
                await self._cancel_task(stale_task)

            try:
                credentials = await self._store.load(session_id)
                socket, events = await self._factory.create_socket(session_id, credentials)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                EVENT_ERRORS.labels(_error_type(exc)).inc()
                LOGGER.error("stage=start_failed session_id=%s error=%s", session_id, exc)
                await self._handle_start_failure(session_id, record, exc)
                raise SessionStartError(session_id, str(exc) or exc.__class__.__name__) from exc

            if record is None:
                record = SessionRecord(session_id=session_id, state=SessionState.ABSENT)
            await self._close_quietly(session_id, stale_socket)
            record.socket = socket
            record.last_error = None
            record.last_seen = time.time()
            self._set_state(record, SessionEvent.START, reason="resume" if credentials else "new")
            self._registry.upsert(record)
            record.event_task = self._spawn(
                self._consume_events(session_id, socket, events),
                name=f"waworker-events-{session_id}",
            )
            LOGGER.info(
                "stage=socket_created session_id=%s resumed=%s",
                session_id,
                "true" if credentials else "false",
            )
            self._update_metrics()
            return socket

    async def _handle_start_failure(
        self, session_id: str, record: Optional[SessionRecord], exc: Exception
    ) -> None:
        if record is None:
            return
        if (
            record.state is SessionState.RECONNECTING
            and isinstance(exc, SocketError)
            and not self._closing
            and self._can_retry(record)
        ):
            record.last_error = str(exc) or "socket_error"
            self._schedule_reconnect(record, reason="socket_failed")
            return
        stale_socket = record.socket or record.previous_socket
        self._set_state(record, SessionEvent.SOCKET_FAILED, reason="start_failed")
        if self._registry.get(session_id) is record:
            self._registry.remove(session_id)
        await self._close_quietly(session_id, stale_socket)
        self._update_metrics()

    def request_start(self, session_id: str) -> asyncio.Task[Any]:
        """Fire-and-forget variant of :meth:`start_session`."""
        return self._spawn(self._start_quietly(session_id), name=f"waworker-start-{session_id}")

    async def _start_quietly(self, session_id: str) -> None:
        try:
            await self.start_session(session_id)
        except SessionStartError as exc:
            LOGGER.debug("stage=request_start_failed session_id=%s error=%s", session_id, exc.error)

    async def _consume_events(
        self,
        session_id: str,
        socket: SocketHandle,
        events: AsyncIterator[SocketEvent],
    ) -> None:
        closed = False
        try:
            async for event in events:
                await self._handle_event(session_id, socket, event)
                closed = isinstance(event, ConnectionClosed)
                if closed and is_terminal(event.reason):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            EVENT_ERRORS.labels("event_stream").inc()
            LOGGER.warning("stage=event_stream_failed session_id=%s error=%s", session_id, exc)

        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            with contextlib.suppress(Exception):
                await aclose()
        if not closed:
            await self._handle_event(
                session_id, socket, ConnectionClosed(DisconnectReason.CONNECTION_LOST)
            )

    async def _handle_event(
        self, session_id: str, socket: SocketHandle, event: SocketEvent
    ) -> None:
        record = self._registry.get(session_id)
        if record is None or not record.owns(socket):
            LOGGER.debug(
                "stage=stale_event session_id=%s event=%s", session_id, type(event).__name__
            )
            return
        record.last_seen = time.time()
        try:
            if isinstance(event, CredentialsRotated):
                await self._persist_credentials(session_id, dict(event.credentials))
            elif isinstance(event, PairingTokenIssued):
                self._on_pairing_token(record, event.token)
            elif isinstance(event, ConnectionOpened):
                await self._on_opened(record, socket)
            elif isinstance(event, ConnectionClosed):
                await self._on_closed(record, socket, event.reason)
            else:
                LOGGER.warning(
                    "stage=unknown_event session_id=%s event=%r", session_id, event
                )
        except asyncio.CancelledError:
            raise
        except Exception:
            EVENT_ERRORS.labels("event_handler").inc()
            LOGGER.exception(
                "stage=event_handler_error session_id=%s event=%s",
                session_id,
                type(event).__name__,
            )
        finally:
            self._update_metrics()

    async def _persist_credentials(self, session_id: str, credentials: Dict[str, Any]) -> bool:
        try:
            await self._store.save(session_id, credentials)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            EVENT_ERRORS.labels("creds_save").inc()
            LOGGER.error("stage=creds_save_failed session_id=%s error=%s", session_id, exc)
            record = self._registry.get(session_id)
            if record is not None:
                record.unsaved_credentials = credentials
                record.last_error = "creds_save_failed"
            return False
        record = self._registry.get(session_id)
        if record is not None:
            record.unsaved_credentials = None
        LOGGER.debug("stage=creds_saved session_id=%s", session_id)
        return True

    def _on_pairing_token(self, record: SessionRecord, token: str) -> None:
        try:
            image = self._qr_renderer(token)
        except Exception:
            EVENT_ERRORS.labels("qr_render").inc()
            LOGGER.exception("stage=qr_render_failed session_id=%s", record.session_id)
            return
        state = self._set_state(record, SessionEvent.PAIRING_TOKEN, reason="qr")
        if state is SessionState.QR_READY:
            record.pending_qr = image
            LOGGER.info("stage=qr_ready session_id=%s", record.session_id)
        else:
            LOGGER.warning(
                "stage=qr_ignored session_id=%s status=%s", record.session_id, state.value
            )

    async def _on_opened(self, record: SessionRecord, socket: SocketHandle) -> None:
        if record.cancel_reconnect():
            LOGGER.info("stage=reconnect_cancelled session_id=%s", record.session_id)
        record.reconnect_attempts = 0
        record.last_error = None
        if record.socket is None:
            record.socket = socket
        self._set_state(record, SessionEvent.OPENED, reason="connection_open")
        LOGGER.info("stage=connected session_id=%s", record.session_id)
        if record.unsaved_credentials is not None:
            await self._persist_credentials(record.session_id, record.unsaved_credentials)

    async def _on_closed(
        self, record: SessionRecord, socket: SocketHandle, reason: Optional[int]
    ) -> None:
        session_id = record.session_id
        label = reason_label(reason)
        if is_terminal(reason):
            TERMINAL_LOGOUTS.inc()
            LOGGER.warning("stage=logged_out session_id=%s reason=%s", session_id, label)
            async with self._session_lock(session_id):
                current = self._registry.get(session_id)
                if current is record and current.owns(socket):
                    await self._purge(session_id, event=SessionEvent.CLOSED_TERMINAL, reason=label)
            return

        record.last_error = label
        if record.state is SessionState.RECONNECTING:
            LOGGER.debug("stage=close_ignored session_id=%s reason=%s", session_id, label)
            return
        if self._closing:
            self._set_state(record, SessionEvent.RETRIES_EXHAUSTED, reason="shutdown")
            self._registry.remove(session_id)
            await self._close_quietly(session_id, socket)
            return
        if not self._can_retry(record):
            EVENT_ERRORS.labels("reconnect_exhausted").inc()
            LOGGER.warning(
                "stage=reconnect_exhausted session_id=%s attempts=%s",
                session_id,
                record.reconnect_attempts,
            )
            self._set_state(record, SessionEvent.RETRIES_EXHAUSTED, reason=label)
            self._registry.remove(session_id)
            await self._close_quietly(session_id, socket)
            return
        self._set_state(record, SessionEvent.CLOSED_TRANSIENT, reason=label)
        self._schedule_reconnect(record, reason=label)

    def _schedule_reconnect(self, record: SessionRecord, *, reason: str) -> None:
        record.cancel_reconnect()
        record.reconnect_attempts += 1
        loop = asyncio.get_running_loop()
        record.reconnect_timer = loop.call_later(
            self._reconnect_delay, self._fire_reconnect, record
        )
        RECONNECTS_SCHEDULED.labels(reason).inc()
        LOGGER.info(
            "stage=reconnect_scheduled session_id=%s delay=%.1fs attempt=%s reason=%s",
            record.session_id,
            self._reconnect_delay,
            record.reconnect_attempts,
            reason,
        )

    def _fire_reconnect(self, record: SessionRecord) -> None:
        record.reconnect_timer = None
        if self._closing:
            return
        if self._registry.get(record.session_id) is not record:
            return
        if record.state is not SessionState.RECONNECTING:
            return
        LOGGER.info(
            "stage=reconnect session_id=%s attempt=%s",
            record.session_id,
            record.reconnect_attempts,
        )
        self._spawn(
            self._start_quietly(record.session_id),
            name=f"waworker-reconnect-{record.session_id}",
        )

    async def _purge(self, session_id: str, *, event: SessionEvent, reason: str) -> bool:
        """Drop the record, stop its consumer and sockets, then delete storage.

        The consumer is awaited before the delete so a credential write it
        had in flight cannot recreate the directory afterwards.
        """

        record = self._registry.remove(session_id)
        if record is not None:
            record.cancel_reconnect()
            socket = record.socket or record.previous_socket
            self._set_state(record, event, reason=reason)
            task = record.event_task
            record.event_task = None
            await self._cancel_task(task)
            await self._close_quietly(session_id, socket)
        removed = await self._delete_storage(session_id)
        self._update_metrics()
        return removed

    async def _delete_storage(self, session_id: str) -> bool:
        try:
            removed = bool(await self._store.delete(session_id))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            EVENT_ERRORS.labels("creds_delete").inc()
            LOGGER.error("stage=creds_delete_failed session_id=%s error=%s", session_id, exc)
            return False
        LOGGER.info("stage=creds_deleted session_id=%s removed=%s", session_id, removed)
        return removed

    async def logout(self, session_id: str) -> bool:
        """Deauthorize and purge ``session_id``; returns whether storage was removed."""

        async with self._session_lock(session_id):
            record = self._registry.get(session_id)
            if record is None:
                removed = await self._delete_storage(session_id)
                LOGGER.info(
                    "stage=logout session_id=%s live=false removed_storage=%s",
                    session_id,
                    removed,
                )
                return removed

            record.cancel_reconnect()
            socket = record.socket or record.previous_socket
            if socket is not None:
                try:
                    await socket.deauthorize()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    EVENT_ERRORS.labels("deauthorize").inc()
                    LOGGER.warning(
                        "stage=deauthorize_failed session_id=%s error=%s", session_id, exc
                    )
            removed = await self._purge(
                session_id, event=SessionEvent.LOGOUT, reason="manual_logout"
            )
            LOGGER.info(
                "stage=logout session_id=%s live=true removed_storage=%s", session_id, removed
            )
            return removed

    async def send_message(self, session_id: str, message: Mapping[str, Any]) -> Any:
        record = self._registry.get(session_id)
        if record is None or record.state is not SessionState.CONNECTED or record.socket is None:
            raise SessionNotActiveError(session_id)
        try:
            result = await record.socket.send(message)
        except SocketError as exc:
            EVENT_ERRORS.labels("send").inc()
            LOGGER.error("stage=send_fail session_id=%s error=%s", session_id, exc)
            raise
        LOGGER.info("stage=send_ok session_id=%s", session_id)
        return result

    def stats_snapshot(self) -> Dict[str, int]:
        return self._registry.stats_snapshot()

    def _update_metrics(self) -> None:
        snapshot = self.stats_snapshot()
        SESSIONS_CONNECTED.set(snapshot.get(SessionState.CONNECTED.value, 0))
        SESSIONS_QR_READY.set(snapshot.get(SessionState.QR_READY.value, 0))
        SESSIONS_RECONNECTING.set(snapshot.get(SessionState.RECONNECTING.value, 0))


__all__ = [
    "CredentialStore",
    "SessionNotActiveError",
    "SessionStartError",
    "WhatsAppSessionManager",
    "build_qr_png",
    "render_qr_data_url",
]

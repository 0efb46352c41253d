from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Mapping, Optional
from urllib.parse import quote

import httpx

from .transport import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsRotated,
    PairingTokenIssued,
    SocketError,
    SocketEvent,
)


LOGGER = logging.getLogger("waworker.bridge")


def parse_bridge_event(payload: Mapping[str, Any]) -> Optional[SocketEvent]:
    """Map one JSON line of the bridge event stream to a socket event."""

    kind = str(payload.get("type") or "").strip().lower()
    if kind == "creds.update":
        creds = payload.get("creds")
        if not isinstance(creds, Mapping):
            return None
        return CredentialsRotated(dict(creds))
    if kind == "qr":
        token = payload.get("qr")
        if not token:
            return None
        return PairingTokenIssued(str(token))
    if kind == "open":
        return ConnectionOpened()
    if kind == "close":
        code = payload.get("status_code")
        try:
            reason = int(code) if code is not None else None
        except (TypeError, ValueError):
            reason = None
        return ConnectionClosed(reason)
    return None


class BridgeSocket:
    """Handle for one session socket hosted by the protocol bridge."""

    def __init__(self, http: httpx.AsyncClient, session_id: str) -> None:
        self._http = http
        self.session_id = session_id
        self._path = f"/sessions/{quote(session_id, safe='')}"

    async def _post(self, suffix: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.post(f"{self._path}{suffix}", **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise SocketError(f"bridge_request_failed path={self._path}{suffix}: {exc}") from exc
        return response

    async def send(self, message: Mapping[str, Any]) -> Any:
        response = await self._post("/messages", json=dict(message))
        try:
            return response.json()
        except ValueError:
            return None

    async def deauthorize(self) -> None:
        await self._post("/logout")

    async def close(self) -> None:
        try:
            await self._http.delete(self._path)
        except httpx.HTTPError as exc:
            LOGGER.warning(
                "stage=bridge_close_failed session_id=%s error=%s", self.session_id, exc
            )

    async def events(self) -> AsyncIterator[SocketEvent]:
        try:
            async with self._http.stream(
                "GET", f"{self._path}/events", timeout=httpx.Timeout(None, connect=10.0)
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        payload = json.loads(line)
                    except ValueError:
                        LOGGER.warning(
                            "stage=bridge_bad_event session_id=%s line=%.120s",
                            self.session_id,
                            line,
                        )
                        continue
                    if not isinstance(payload, dict):
                        continue
                    event = parse_bridge_event(payload)
                    if event is None:
                        LOGGER.debug(
                            "stage=bridge_event_skipped session_id=%s type=%s",
                            self.session_id,
                            payload.get("type"),
                        )
                        continue
                    yield event
        except httpx.HTTPError as exc:
            raise SocketError(f"bridge_stream_failed session_id={self.session_id}: {exc}") from exc


class BridgeSocketFactory:
    """Open sockets on an HTTP protocol bridge sidecar.

    ``POST /sessions/{id}`` opens the socket with the stored credentials and
    ``GET /sessions/{id}/events`` streams newline-delimited JSON events.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._http = http or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def create_socket(
        self,
        session_id: str,
        credentials: Optional[Mapping[str, Any]],
    ) -> tuple[BridgeSocket, AsyncIterator[SocketEvent]]:
        socket = BridgeSocket(self._http, session_id)
        await socket._post(
            "",
            json={"credentials": dict(credentials) if credentials is not None else None},
        )
        LOGGER.info(
            "stage=bridge_socket_open session_id=%s resumed=%s",
            session_id,
            "true" if credentials is not None else "false",
        )
        return socket, socket.events()

    async def aclose(self) -> None:
        await self._http.aclose()


__all__ = ["BridgeSocket", "BridgeSocketFactory", "parse_bridge_event"]

from __future__ import annotations

import logging
import secrets
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from fastapi.templating import Jinja2Templates
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from config import whatsapp_config

from .bridge import BridgeSocketFactory
from .credentials import FileCredentialStore, is_valid_session_id
from .metrics import (
    WA_CONNECT_REQUEST_TOTAL,
    WA_LOGOUT_REQUEST_TOTAL,
    WA_QR_SERVED_TOTAL,
    WA_REQUEST_REJECTED_TOTAL,
    WA_SEND_TOTAL,
)
from .session_manager import SessionManager, SessionNotActiveError
from .transport import SocketError


logger = logging.getLogger("waworker.api")

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class SendRequest(BaseModel):
    session: str = Field(..., min_length=1, max_length=64)
    message: dict[str, Any] = Field(default_factory=dict)


def create_app() -> FastAPI:
    cfg = whatsapp_config()
    store = FileCredentialStore(cfg.sessions_dir)
    factory = BridgeSocketFactory(cfg.bridge_url, timeout=cfg.bridge_timeout)
    manager = SessionManager(
        store,
        factory,
        reconnect_delay=cfg.reconnect_delay,
        max_reconnect_attempts=cfg.max_reconnect_attempts,
    )
    logger.info(
        "stage=config_resolved sessions_dir=%s bridge_url=%s api_key_present=%s",
        cfg.sessions_dir,
        cfg.bridge_url,
        "true" if cfg.api_key else "false",
    )

    app = FastAPI(title="waworker")
    app.state.session_manager = manager

    def _unauthorized_response(route: str) -> JSONResponse:
        logger.warning("event=api_key_invalid route=%s", route)
        WA_REQUEST_REJECTED_TOTAL.labels("not_authorized").inc()
        return JSONResponse(
            {"error": "not_authorized"},
            status_code=401,
            headers=dict(NO_STORE_HEADERS),
        )

    def _enforce_key(request: Request, route: str) -> JSONResponse | None:
        if not cfg.api_key:
            return None
        supplied = (
            request.query_params.get("key") or request.headers.get("X-Api-Key") or ""
        ).strip()
        if not supplied or not secrets.compare_digest(supplied, cfg.api_key):
            return _unauthorized_response(route)
        return None

    def _invalid_session(session: str, route: str) -> JSONResponse | None:
        if is_valid_session_id(session):
            return None
        logger.warning("event=invalid_session route=%s session=%.64r", route, session)
        WA_REQUEST_REJECTED_TOTAL.labels("invalid_session").inc()
        return JSONResponse(
            {"error": "invalid_session"},
            status_code=400,
            headers=dict(NO_STORE_HEADERS),
        )

    def _guard(request: Request, route: str, session: Optional[str] = None) -> JSONResponse | None:
        rejected = _enforce_key(request, route)
        if rejected is None and session is not None:
            rejected = _invalid_session(session, route)
        return rejected

    def _safe_stats_snapshot() -> dict[str, int]:
        try:
            snapshot = manager.stats_snapshot()
            if isinstance(snapshot, dict):
                return snapshot
        except Exception:
            logger.warning("event=stats_snapshot_failed", exc_info=True)
        return {}

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        await manager.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    @app.get("/", response_class=HTMLResponse)
    async def dashboard(request: Request):
        rejected = _guard(request, "/")
        if rejected is not None:
            return rejected
        return templates.TemplateResponse(
            request,
            "dashboard.html",
            {
                "api_key": request.query_params.get("key") or "",
                "base_url": cfg.public_base_url,
            },
            headers=dict(NO_STORE_HEADERS),
        )

    @app.get("/status-all")
    async def status_all(request: Request):
        rejected = _guard(request, "/status-all")
        if rejected is not None:
            return rejected
        body = [snapshot.to_payload() for snapshot in manager.list_all_statuses()]
        return JSONResponse(body, headers=dict(NO_STORE_HEADERS))

    @app.get("/status")
    async def status(request: Request, session: str = Query(..., min_length=1)):
        rejected = _guard(request, "/status", session)
        if rejected is not None:
            return rejected
        snapshot = manager.status_of(session)
        body = snapshot.to_payload()
        body["last_error"] = snapshot.last_error
        body["reconnect_attempts"] = snapshot.reconnect_attempts
        return JSONResponse(body, headers=dict(NO_STORE_HEADERS))

    @app.get("/connect")
    async def connect(request: Request, session: str = Query(..., min_length=1)):
        rejected = _guard(request, "/connect", session)
        if rejected is not None:
            return rejected
        manager.request_start(session)
        WA_CONNECT_REQUEST_TOTAL.inc()
        logger.info("event=connect_requested session_id=%s", session)
        return JSONResponse(
            {"ok": True, "message": "Processing session initialization..."},
            status_code=202,
            headers=dict(NO_STORE_HEADERS),
        )

    @app.get("/get-qr")
    async def get_qr(request: Request, session: str = Query(..., min_length=1)):
        rejected = _guard(request, "/get-qr", session)
        if rejected is not None:
            return rejected
        snapshot = manager.current_qr(session)
        if snapshot.qr:
            WA_QR_SERVED_TOTAL.inc()
        return JSONResponse(snapshot.to_payload(), headers=dict(NO_STORE_HEADERS))

    @app.get("/qr.png")
    async def qr_png(request: Request, session: str = Query(..., min_length=1)):
        rejected = _guard(request, "/qr.png", session)
        if rejected is not None:
            return rejected
        snapshot = manager.current_qr(session)
        blob = snapshot.png_bytes()
        if blob is None:
            return JSONResponse(
                {"error": "qr_not_found", "status": snapshot.status},
                status_code=404,
                headers=dict(NO_STORE_HEADERS),
            )
        WA_QR_SERVED_TOTAL.inc()
        return Response(content=blob, media_type="image/png", headers=dict(NO_STORE_HEADERS))

    @app.get("/logout")
    async def logout(request: Request, session: str = Query(..., min_length=1)):
        rejected = _guard(request, "/logout", session)
        if rejected is not None:
            return rejected
        removed = await manager.request_logout(session)
        WA_LOGOUT_REQUEST_TOTAL.inc()
        return JSONResponse(
            {
                "ok": True,
                "message": "Session purged successfully.",
                "removed_storage": bool(removed),
            },
            headers=dict(NO_STORE_HEADERS),
        )

    @app.post("/send")
    async def send(request: Request, payload: SendRequest):
        rejected = _guard(request, "/send", payload.session)
        if rejected is not None:
            return rejected
        try:
            result = await manager.send_message(payload.session, payload.message)
        except SessionNotActiveError:
            WA_SEND_TOTAL.labels("not_active").inc()
            return JSONResponse(
                {"ok": False, "error": "session_not_active"},
                status_code=400,
                headers=dict(NO_STORE_HEADERS),
            )
        except SocketError as exc:
            WA_SEND_TOTAL.labels("failed").inc()
            logger.error("event=send_failed session_id=%s error=%s", payload.session, exc)
            return JSONResponse(
                {"ok": False, "error": "send_failed"},
                status_code=502,
                headers=dict(NO_STORE_HEADERS),
            )
        WA_SEND_TOTAL.labels("ok").inc()
        return JSONResponse({"ok": True, "result": result}, headers=dict(NO_STORE_HEADERS))

    @app.get("/health")
    async def health():
        stats = _safe_stats_snapshot()
        return {
            "ok": True,
            "connected_count": int(stats.get("connected", 0) or 0),
            "qr_ready_count": int(stats.get("qr_ready", 0) or 0),
            "initializing_count": int(stats.get("initializing", 0) or 0),
            "reconnecting_count": int(stats.get("reconnecting", 0) or 0),
        }

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]

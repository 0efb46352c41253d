"""Lightweight configuration helpers for the WhatsApp session worker."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_SESSIONS_DIR = "./sessions"
DEFAULT_BRIDGE_URL = "http://wabridge:3001"
DEFAULT_PORT = 3000


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _normalize_url(raw: str | None, default: str) -> str:
    if not raw:
        return default
    cleaned = raw.strip()
    if not cleaned:
        return default
    return cleaned.rstrip("/") or default


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("ms"):
        try:
            return float(cleaned[:-2]) / 1000.0
        except ValueError:
            return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        return default


def _resolve_sessions_dir(raw: str | None) -> Path:
    candidate = Path(raw or DEFAULT_SESSIONS_DIR)
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path("/tmp/wa-sessions")
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


@dataclass(frozen=True, slots=True)
class WhatsAppConfig:
    sessions_dir: Path
    api_key: str
    host: str
    port: int
    public_base_url: str
    bridge_url: str
    bridge_timeout: float
    reconnect_delay: float
    max_reconnect_attempts: int


def whatsapp_config() -> WhatsAppConfig:
    sessions_dir = _resolve_sessions_dir(os.getenv("WA_SESSIONS_DIR"))
    api_key = (os.getenv("WA_API_KEY") or "").strip()
    host = (os.getenv("WA_HOST") or "0.0.0.0").strip() or "0.0.0.0"
    port = _coerce_int(os.getenv("WA_PORT"), DEFAULT_PORT) or DEFAULT_PORT
    public_base_url = _normalize_url(
        os.getenv("WA_PUBLIC_BASE_URL"), f"http://localhost:{port}"
    )
    bridge_url = _normalize_url(os.getenv("WA_BRIDGE_URL"), DEFAULT_BRIDGE_URL)
    bridge_timeout = _parse_duration(os.getenv("WA_BRIDGE_TIMEOUT"), default=10.0)
    reconnect_delay = _parse_duration(os.getenv("WA_RECONNECT_DELAY"), default=3.0)
    max_attempts = max(0, _coerce_int(os.getenv("WA_MAX_RECONNECT_ATTEMPTS"), 0))

    return WhatsAppConfig(
        sessions_dir=sessions_dir,
        api_key=api_key,
        host=host,
        port=port,
        public_base_url=public_base_url,
        bridge_url=bridge_url,
        bridge_timeout=bridge_timeout,
        reconnect_delay=reconnect_delay,
        max_reconnect_attempts=max_attempts,
    )


__all__ = [
    "WhatsAppConfig",
    "DEFAULT_SESSIONS_DIR",
    "DEFAULT_BRIDGE_URL",
    "whatsapp_config",
]

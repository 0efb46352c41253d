from __future__ import annotations

import config


def test_defaults(monkeypatch, tmp_path):
    for name in (
        "WA_API_KEY",
        "WA_PORT",
        "WA_BRIDGE_URL",
        "WA_RECONNECT_DELAY",
        "WA_MAX_RECONNECT_ATTEMPTS",
        "WA_PUBLIC_BASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("WA_SESSIONS_DIR", str(tmp_path / "sessions"))

    cfg = config.whatsapp_config()

    assert cfg.sessions_dir == tmp_path / "sessions"
    assert cfg.sessions_dir.is_dir()
    assert cfg.api_key == ""
    assert cfg.port == 3000
    assert cfg.public_base_url == "http://localhost:3000"
    assert cfg.bridge_url == config.DEFAULT_BRIDGE_URL
    assert cfg.reconnect_delay == 3.0
    assert cfg.max_reconnect_attempts == 0


def test_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("WA_SESSIONS_DIR", str(tmp_path))
    monkeypatch.setenv("WA_API_KEY", "  secret ")
    monkeypatch.setenv("WA_PORT", "8080")
    monkeypatch.setenv("WA_BRIDGE_URL", "http://bridge:9000/")
    monkeypatch.setenv("WA_RECONNECT_DELAY", "1500ms")
    monkeypatch.setenv("WA_MAX_RECONNECT_ATTEMPTS", "5")

    cfg = config.whatsapp_config()

    assert cfg.api_key == "secret"
    assert cfg.port == 8080
    assert cfg.bridge_url == "http://bridge:9000"
    assert cfg.reconnect_delay == 1.5
    assert cfg.max_reconnect_attempts == 5


def test_invalid_values_fall_back(monkeypatch, tmp_path):
    monkeypatch.setenv("WA_SESSIONS_DIR", str(tmp_path))
    monkeypatch.setenv("WA_PORT", "nope")
    monkeypatch.setenv("WA_RECONNECT_DELAY", "soon")

    cfg = config.whatsapp_config()

    assert cfg.port == 3000
    assert cfg.reconnect_delay == 3.0

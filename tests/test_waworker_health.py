from __future__ import annotations


def test_health_reports_counts(wa_client):
    client, stub = wa_client
    stub.stats = {"connected": 2, "qr_ready": 1, "initializing": 0, "reconnecting": 3}

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "connected_count": 2,
        "qr_ready_count": 1,
        "initializing_count": 0,
        "reconnecting_count": 3,
    }


def test_health_survives_stats_failure(wa_client, monkeypatch):
    client, stub = wa_client

    def boom():
        raise RuntimeError("stats unavailable")

    monkeypatch.setattr(stub, "stats_snapshot", boom)
    payload = client.get("/health").json()
    assert payload["ok"] is True
    assert payload["connected_count"] == 0


def test_metrics_endpoint(wa_client):
    client, _ = wa_client
    client.get("/connect", params={"session": "shop", "key": "test-key"})
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "wa_connect_request_total" in response.text

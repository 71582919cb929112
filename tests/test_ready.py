"""
Tests for the /health and /ready endpoints.
"""
from __future__ import annotations

from unittest.mock import patch


def test_ready_ok(app_client):
    """Test /ready returns ok when all services are healthy."""
    _app, client = app_client

    with patch("app.routes.core._ping_redis", return_value=True):
        res = client.get("/ready")
        assert res.status_code == 200

        body = res.get_json()
        assert body["status"] == "ok"
        assert body["checks"] == {"db": "ok", "redis": "ok"}


def test_ready_redis_down(app_client):
    """Test /ready returns degraded when Redis is down."""
    _app, client = app_client

    with patch("app.routes.core._ping_redis", return_value=False):
        res = client.get("/ready")
        assert res.status_code == 503

        body = res.get_json()
        assert body["status"] == "degraded"
        assert body["checks"]["redis"] == "error"


def test_health_reports_version(app_client):
    app, client = app_client
    body = client.get("/health").get_json()
    assert body["status"] == "ok"
    assert body["version"] == app.config["CFG"].APP_VERSION

from __future__ import annotations

import pytest

from cache_layer import cache_clear
from support import INTERNAL_TOKEN


@pytest.fixture()
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'lifecycle.db'}")
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "test-client")
    monkeypatch.setenv("ALLOW_TEST_TOKENS", "1")
    monkeypatch.setenv("NOTIFY_DELIVERY_MODE", "off")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("INTERNAL_CRON_TOKEN", INTERNAL_TOKEN)
    monkeypatch.setenv("ENABLE_SCHEDULER", "0")
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("RATE_LIMIT_GLOBAL", "0")
    monkeypatch.setenv("RATE_LIMIT_DEFAULT", "0")
    monkeypatch.setenv("RATE_LIMIT_LOGIN", "0")

    # RBAC rules and department heads are cached per process; each test gets a fresh database.
    cache_clear()

    from lifecycle_app import create_app

    app = create_app()
    app.config["TESTING"] = True
    client = app.test_client()
    yield app, client
    cache_clear()

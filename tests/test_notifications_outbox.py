from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests
from sqlalchemy import select

from db import SessionLocal
from models import NotificationOutbox
from services import notification_transport
from services.notifications import deliver_pending, enqueue_notification, kick_delivery
from support import api, ok_data, staff
from utils import parse_datetime_maybe


def _enqueue(recipient="someone@example.com", type="onboarding_welcome") -> str:
    with SessionLocal() as db:
        row = enqueue_notification(db, type=type, recipient=recipient, context={"employeeName": "Sam"}, entity_type="ONBOARDING", entity_id="ONB-1")
        db.commit()
        return row.id


def _row(ntf_id: str) -> NotificationOutbox:
    with SessionLocal() as db:
        return db.execute(select(NotificationOutbox).where(NotificationOutbox.id == ntf_id)).scalar_one()


def _deliver(cfg) -> dict:
    with SessionLocal() as db:
        out = deliver_pending(db, cfg=cfg)
        db.commit()
    return out


def test_enqueue_validates_type_and_skips_blank_recipients(app_client):
    with SessionLocal() as db:
        with pytest.raises(ValueError):
            enqueue_notification(db, type="birthday_card", recipient="a@example.com")
        assert enqueue_notification(db, type="offer_letter", recipient="  ") is None


def test_delivery_marks_rows_sent(app_client):
    app, _client = app_client
    ntf_id = _enqueue()

    with patch("services.notification_transport.send", return_value={"delivered": True}) as send:
        assert _deliver(app.config["CFG"]) == {"sent": 1, "retrying": 0, "failed": 0}

    send.assert_called_once_with(app.config["CFG"], "onboarding_welcome", "someone@example.com", {"employeeName": "Sam"})
    row = _row(ntf_id)
    assert row.status == "SENT"
    assert row.attempts == 1
    assert row.sentAt

    with patch("services.notification_transport.send") as send:
        assert _deliver(app.config["CFG"])["sent"] == 0
    send.assert_not_called()


def test_failures_back_off_then_give_up(app_client):
    app, _client = app_client
    cfg = app.config["CFG"]
    cfg.NOTIFY_MAX_ATTEMPTS = 2
    ntf_id = _enqueue()
    ok_id = _enqueue("other@example.com")

    def flaky(_cfg, _type, recipient, _context):
        if recipient == "someone@example.com":
            raise notification_transport.TransportError("gateway down")
        return {"delivered": True}

    before = datetime.now(timezone.utc)
    with patch("services.notification_transport.send", side_effect=flaky):
        assert _deliver(cfg) == {"sent": 1, "retrying": 1, "failed": 0}

        row = _row(ntf_id)
        assert row.status == "PENDING"
        assert row.attempts == 1
        assert row.lastError == "gateway down"
        assert parse_datetime_maybe(row.nextAttemptAt) >= before + timedelta(seconds=29)

        # Not due yet.
        assert _deliver(cfg) == {"sent": 0, "retrying": 0, "failed": 0}

        with SessionLocal() as db:
            db.execute(select(NotificationOutbox).where(NotificationOutbox.id == ntf_id)).scalar_one().nextAttemptAt = "2000-01-01T00:00:00.000Z"
            db.commit()
        assert _deliver(cfg) == {"sent": 0, "retrying": 0, "failed": 1}

    assert _row(ntf_id).status == "FAILED"
    assert _row(ntf_id).attempts == 2
    assert _row(ok_id).status == "SENT"


def test_kick_delivery_modes(app_client):
    app, _client = app_client
    cfg = app.config["CFG"]
    ntf_id = _enqueue()

    with patch("services.notifications.deliver_pending") as deliver:
        kick_delivery(cfg)
    deliver.assert_not_called()
    assert _row(ntf_id).status == "PENDING"

    cfg.NOTIFY_DELIVERY_MODE = "celery"
    with patch("app.tasks.notifications.deliver_notifications") as task:
        kick_delivery(cfg)
    task.delay.assert_called_once_with()

    cfg.NOTIFY_DELIVERY_MODE = "inline"
    kick_delivery(cfg)
    assert _row(ntf_id).status == "SENT"


def test_webhook_transport_posts_and_wraps_errors(app_client):
    app, _client = app_client
    cfg = app.config["CFG"]
    assert notification_transport.send(cfg, "offer_letter", "a@example.com", {})["transport"] == "log"

    cfg.NOTIFY_WEBHOOK_URL = "https://notify.example.com/hook"
    cfg.NOTIFY_WEBHOOK_TOKEN = "hook-secret"
    resp = MagicMock(status_code=202)
    with patch("services.notification_transport.requests.post", return_value=resp) as post:
        out = notification_transport.send(cfg, "offer_letter", "a@example.com", {"role": "Engineer"})
    assert out == {"delivered": True, "transport": "webhook", "status": 202}
    assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer hook-secret"
    assert post.call_args.kwargs["json"] == {"type": "offer_letter", "recipient": "a@example.com", "context": {"role": "Engineer"}}

    with patch("services.notification_transport.requests.post", side_effect=requests.Timeout("slow")):
        with pytest.raises(notification_transport.TransportError):
            notification_transport.send(cfg, "offer_letter", "a@example.com", {})


def test_deliver_action_is_admin_only(app_client):
    _app, client = app_client
    admin = staff(client, "ops@example.com", "SYSTEM_ADMIN", "EMP-OPS")
    hr = staff(client, "hrm@example.com", "HR_MANAGER", "EMP-HRM")
    _enqueue()

    assert api(client, "NOTIFICATIONS_DELIVER", {}, hr).status_code == 403
    data = ok_data(api(client, "NOTIFICATIONS_DELIVER", {}, admin))
    assert data["sent"] == 1
    assert data["message"] == "Delivered 1 notification(s)"

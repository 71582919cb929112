"""
Notification outbox.

Workflow actions never talk to the transport directly. They call
enqueue_notification(), which adds a row to `notification_outbox` inside the
caller's transaction, so a notification exists if and only if the state change
that produced it was committed. deliver_pending() drains due rows through the
transport with retries and backoff; it runs from the Celery worker
(app.tasks.notifications) or inline, depending on NOTIFY_DELIVERY_MODE.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select

from models import NotificationOutbox
from services import notification_transport
from utils import iso_utc_now, safe_json_string, to_iso_utc


logger = logging.getLogger("notifications")

NOTIFICATION_TYPES = {
    "application_status",
    "interview_scheduled",
    "panel_invitation",
    "offer_letter",
    "onboarding_welcome",
    "onboarding_reminder",
    "clearance_reminder",
    "access_revoked",
    "final_settlement",
}

_BACKOFF_BASE_SECONDS = 30
_BACKOFF_MAX_SECONDS = 6 * 3600


def enqueue_notification(
    db,
    *,
    type: str,
    recipient: str,
    context: dict[str, Any] | None = None,
    entity_type: str = "",
    entity_id: str = "",
) -> Optional[NotificationOutbox]:
    ntype = str(type or "").strip().lower()
    if ntype not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {type}")

    addr = str(recipient or "").strip()
    if not addr:
        logger.warning("notification %s skipped: no recipient address (%s %s)", ntype, entity_type, entity_id)
        return None

    now = iso_utc_now()
    row = NotificationOutbox(
        id=f"NTF-{os.urandom(12).hex()}",
        type=ntype,
        recipient=addr,
        contextJson=safe_json_string(context or {}, "{}"),
        status="PENDING",
        attempts=0,
        lastError="",
        nextAttemptAt=now,
        entityType=str(entity_type or ""),
        entityId=str(entity_id or ""),
        createdAt=now,
        sentAt="",
    )
    db.add(row)
    return row


def _backoff(attempts: int) -> timedelta:
    seconds = min(_BACKOFF_MAX_SECONDS, _BACKOFF_BASE_SECONDS * (2 ** max(0, attempts - 1)))
    return timedelta(seconds=seconds)


def deliver_pending(db, *, cfg: Any, limit: int | None = None) -> dict[str, int]:
    """
    Deliver due PENDING rows. One failing row never blocks the others.

    Rows are claimed with FOR UPDATE SKIP LOCKED so parallel workers split the
    batch instead of double-sending. The caller commits.
    """

    batch = int(limit or getattr(cfg, "NOTIFY_BATCH_SIZE", 100) or 100)
    max_attempts = int(getattr(cfg, "NOTIFY_MAX_ATTEMPTS", 5) or 5)
    now_dt = datetime.now(timezone.utc)
    now = to_iso_utc(now_dt)

    rows = (
        db.execute(
            select(NotificationOutbox)
            .where(NotificationOutbox.status == "PENDING")
            .where(NotificationOutbox.nextAttemptAt <= now)
            .order_by(NotificationOutbox.createdAt.asc())
            .limit(batch)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )

    stats = {"sent": 0, "retrying": 0, "failed": 0}
    for row in rows:
        try:
            context = json.loads(row.contextJson or "{}")
        except json.JSONDecodeError:
            context = {}

        try:
            notification_transport.send(cfg, row.type, row.recipient, context)
        except Exception as e:
            row.attempts = int(row.attempts or 0) + 1
            row.lastError = str(e)[:500]
            if row.attempts >= max_attempts:
                row.status = "FAILED"
                stats["failed"] += 1
                logger.warning("notification %s to=%s failed permanently: %s", row.id, row.recipient, e)
            else:
                row.nextAttemptAt = to_iso_utc(now_dt + _backoff(row.attempts))
                stats["retrying"] += 1
                logger.warning("notification %s to=%s failed (attempt %s): %s", row.id, row.recipient, row.attempts, e)
            continue

        row.status = "SENT"
        row.sentAt = now
        row.attempts = int(row.attempts or 0) + 1
        stats["sent"] += 1

    return stats


def kick_delivery(cfg: Any) -> None:
    """Called after a committed request. Never raises."""
    mode = str(getattr(cfg, "NOTIFY_DELIVERY_MODE", "off") or "off").lower()
    if mode == "off":
        return

    if mode == "celery":
        try:
            from app.tasks.notifications import deliver_notifications

            deliver_notifications.delay()
        except Exception:
            logger.warning("could not enqueue notification delivery", exc_info=True)
        return

    from db import SessionLocal

    db = SessionLocal()
    try:
        deliver_pending(db, cfg=cfg)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("inline notification delivery failed")
    finally:
        db.close()

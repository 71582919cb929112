"""
Outbox delivery task. Enqueued after every committed request when
NOTIFY_DELIVERY_MODE=celery, and run periodically by the beat.
"""
from __future__ import annotations

import logging

from app.tasks import celery_app
from app.tasks.sweeps import worker_config

logger = logging.getLogger("notifications")


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)
def deliver_notifications(self, limit: int | None = None):
    from db import SessionLocal
    from services.notifications import deliver_pending

    cfg = worker_config()
    db = SessionLocal()
    try:
        stats = deliver_pending(db, cfg=cfg, limit=limit)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception("outbox delivery failed")
        raise self.retry(exc=e)
    finally:
        db.close()

    if stats["sent"] or stats["retrying"] or stats["failed"]:
        logger.info("outbox delivery: %s", stats)
    return {"task_id": self.request.id, **stats}

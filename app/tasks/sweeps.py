"""
Daily lifecycle sweeps run by the Celery beat (or enqueued from /api/v1/jobs).

Each task runs its action in one transaction as the system principal, the same
way the in-process scheduler in lifecycle_app does.
"""
from __future__ import annotations

import logging
import threading

from dotenv import load_dotenv

from app.tasks import celery_app
from config import Config

logger = logging.getLogger("scheduler")

_cfg_lock = threading.Lock()
_cfg: Config | None = None


def worker_config() -> Config:
    """Config plus a bound engine for worker processes that never ran create_app()."""
    global _cfg
    with _cfg_lock:
        if _cfg is None:
            from db import ensure_engine

            load_dotenv()
            cfg = Config()
            cfg.validate()
            ensure_engine(cfg.DATABASE_URL)
            _cfg = cfg
        return _cfg


def _run(task, action: str, data: dict | None = None) -> dict:
    from actions import dispatch
    from actions.helpers import SYSTEM_AUTH
    from db import SessionLocal
    from services.notifications import kick_delivery

    cfg = worker_config()
    db = SessionLocal()
    try:
        out = dispatch(action, data or {}, SYSTEM_AUTH, db, cfg)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception("%s failed", action)
        raise task.retry(exc=e)
    finally:
        db.close()

    kick_delivery(cfg)
    logger.info("%s ok: %s", action, {k: v for k, v in out.items() if k != "message"})
    return {"task_id": task.request.id, "action": action, "result": out}


@celery_app.task(bind=True, max_retries=3, default_retry_delay=300)
def access_sweep(self):
    return _run(self, "ACCESS_SWEEP_RUN")


@celery_app.task(bind=True, max_retries=3, default_retry_delay=300)
def onboarding_reminders(self, force: bool = False):
    return _run(self, "ONBOARDING_SEND_REMINDERS", {"force": force})


@celery_app.task(bind=True, max_retries=3, default_retry_delay=300)
def clearance_reminders(self, force: bool = False):
    return _run(self, "CLEARANCE_SEND_REMINDERS", {"force": force})

"""
Celery configuration, task modules and the beat schedule.

Usage:
    celery -A app.tasks.celery_app worker --loglevel=INFO
    celery -A app.tasks.celery_app beat --loglevel=INFO
"""
from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except ValueError:
        return default


def make_celery() -> Celery:
    """
    Create and configure the Celery app with a Redis broker.

    Environment variables:
        REDIS_URL: Redis connection URL (default: redis://localhost:6379/0)
        CELERY_RESULT_BACKEND: Optional separate result backend
        SCHEDULER_HOUR / SCHEDULER_MINUTE: daily sweep time in APP_TIMEZONE
        NOTIFY_DELIVERY_INTERVAL_SECONDS: outbox drain period for the beat
    """
    redis_url = os.getenv("REDIS_URL", "") or "redis://localhost:6379/0"
    result_backend = os.getenv("CELERY_RESULT_BACKEND", redis_url)

    app = Celery(
        "hr_lifecycle",
        broker=redis_url,
        backend=result_backend,
        include=["app.tasks.notifications", "app.tasks.sweeps"],
    )

    hour = max(0, min(23, _env_int("SCHEDULER_HOUR", 6)))
    minute = max(0, min(59, _env_int("SCHEDULER_MINUTE", 0)))

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone=os.getenv("APP_TIMEZONE", "UTC") or "UTC",
        enable_utc=True,
        result_expires=86400,
        # A sweep or delivery batch is re-run if the worker dies mid-way; both are idempotent.
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=int(os.getenv("CELERY_CONCURRENCY", "4")),
        task_default_retry_delay=60,
        task_max_retries=3,
        beat_schedule={
            "access-sweep-daily": {
                "task": "app.tasks.sweeps.access_sweep",
                "schedule": crontab(hour=hour, minute=minute),
            },
            "onboarding-reminders-daily": {
                "task": "app.tasks.sweeps.onboarding_reminders",
                "schedule": crontab(hour=hour, minute=minute),
            },
            "clearance-reminders-daily": {
                "task": "app.tasks.sweeps.clearance_reminders",
                "schedule": crontab(hour=hour, minute=minute),
            },
            "deliver-notifications": {
                "task": "app.tasks.notifications.deliver_notifications",
                "schedule": float(max(10, _env_int("NOTIFY_DELIVERY_INTERVAL_SECONDS", 60))),
            },
        },
    )

    return app


celery_app = make_celery()

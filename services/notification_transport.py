"""
Outbound notification transport.

Posts each notification to the configured delivery webhook (email/SMS gateway,
in-app notification service). Without NOTIFY_WEBHOOK_URL the transport only logs,
which is what local development and tests use.
"""

from __future__ import annotations

import logging
from typing import Any

import requests


logger = logging.getLogger("notifications")


class TransportError(RuntimeError):
    pass


def send(cfg: Any, notification_type: str, recipient: str, context: dict[str, Any]) -> dict[str, Any]:
    url = str(getattr(cfg, "NOTIFY_WEBHOOK_URL", "") or "").strip()
    if not url:
        logger.info("notification type=%s to=%s (log-only transport)", notification_type, recipient)
        return {"delivered": False, "transport": "log"}

    headers = {"Content-Type": "application/json"}
    token = str(getattr(cfg, "NOTIFY_WEBHOOK_TOKEN", "") or "").strip()
    if token:
        headers["Authorization"] = f"Bearer {token}"

    timeout = int(getattr(cfg, "OUTBOUND_TIMEOUT_SECONDS", 10) or 10)
    try:
        resp = requests.post(
            url,
            json={"type": notification_type, "recipient": recipient, "context": context or {}},
            headers=headers,
            timeout=timeout,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        raise TransportError(f"Notification webhook failed: {e}") from e
    return {"delivered": True, "transport": "webhook", "status": resp.status_code}

"""
Calls into the identity provider, mail system and application directory when an
employee's access is revoked. Each call is independent: the caller records the
result of every action, and one failing system must not block the others.

An unset endpoint means the system is handled out of band; the action is recorded
as "queued" for the IT team to pick up.
"""

from __future__ import annotations

import logging
from typing import Any

import requests


logger = logging.getLogger("deprovisioning")


def _post(cfg: Any, url: str, payload: dict[str, Any]) -> dict[str, Any]:
    headers = {"Content-Type": "application/json"}
    token = str(getattr(cfg, "DEPROVISION_TOKEN", "") or "").strip()
    if token:
        headers["Authorization"] = f"Bearer {token}"
    timeout = int(getattr(cfg, "OUTBOUND_TIMEOUT_SECONDS", 10) or 10)
    resp = requests.post(url, json=payload, headers=headers, timeout=timeout)
    resp.raise_for_status()
    return {"status": "done", "httpStatus": resp.status_code}


def _call(cfg: Any, setting: str, action: str, payload: dict[str, Any]) -> dict[str, Any]:
    url = str(getattr(cfg, setting, "") or "").strip()
    if not url:
        logger.info("%s for %s queued (no %s configured)", action, payload.get("employeeId"), setting)
        return {"status": "queued"}
    return _post(cfg, url, payload)


def revoke_identity_provider(cfg: Any, *, employee_id: str, email: str) -> dict[str, Any]:
    return _call(cfg, "IDP_REVOKE_URL", "idp_revoke", {"employeeId": employee_id, "email": email})


def deactivate_mailbox(cfg: Any, *, employee_id: str, email: str) -> dict[str, Any]:
    return _call(cfg, "MAIL_DEACTIVATE_URL", "mail_deactivate", {"employeeId": employee_id, "email": email})


def deprovision_applications(cfg: Any, *, employee_id: str, email: str) -> dict[str, Any]:
    return _call(cfg, "APPS_DEPROVISION_URL", "apps_deprovision", {"employeeId": employee_id, "email": email})


REVOCATION_STEPS = (
    ("idp", revoke_identity_provider),
    ("mail", deactivate_mailbox),
    ("apps", deprovision_applications),
)

"""
System access revocation.

revoke_access() is the single path for taking an employee's access away: the
manual ACCESS_REVOKE action, IT clearance approval and the termination-date
sweep all go through it. An employee who is already INACTIVE is a no-op, so
repeated calls never re-run the de-provisioning calls.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select

from actions.helpers import actor_id, append_audit, append_note, dumps_compact, str_field
from actions.onboarding import provision_due_access
from auth import revoke_user_sessions
from models import Employee, TerminationRequest, User
from services.deprovisioning import REVOCATION_STEPS
from services.directory import contact_for_employee, find_employee, lock_employee, recipients_for_roles, resolve_employee, set_employee_status
from services.notifications import enqueue_notification
from utils import ApiError, AuthContext, iso_utc_now, json_loads_maybe, normalize_role, parse_datetime_maybe, to_iso_utc


logger = logging.getLogger("access")


def latest_termination_for(db, employee_id: str) -> Optional[TerminationRequest]:
    return (
        db.execute(
            select(TerminationRequest)
            .where(TerminationRequest.employeeId == str(employee_id or ""))
            .order_by(TerminationRequest.createdAt.desc())
        )
        .scalars()
        .first()
    )


def _run_steps(cfg, emp: Employee) -> list[dict[str, Any]]:
    email = str(emp.workEmail or "").strip() or str(emp.personalEmail or "").strip()
    results: list[dict[str, Any]] = []
    for service, step in REVOCATION_STEPS:
        try:
            details = step(cfg, employee_id=str(emp.employeeId), email=email)
            results.append({"service": service, "success": True, "details": details})
        except Exception as e:
            logger.warning("de-provisioning %s failed for %s: %s", service, emp.employeeId, e)
            results.append({"service": service, "success": False, "details": str(e)})
    return results


def _notify_revoked(db, emp: Employee, reason: str) -> int:
    context = {
        "employeeName": str(emp.fullName or emp.employeeNumber or "Employee"),
        "employeeNumber": str(emp.employeeNumber or ""),
        "reason": reason,
    }
    recipients = []
    own = contact_for_employee(emp)
    if own:
        recipients.append(own)
    recipients.extend(recipients_for_roles(db, ["SYSTEM_ADMIN"]))

    sent = 0
    seen: set[str] = set()
    for r in recipients:
        addr = r["email"].lower()
        if addr in seen:
            continue
        seen.add(addr)
        if enqueue_notification(db, type="access_revoked", recipient=r["email"], context=context, entity_type="EMPLOYEE", entity_id=str(emp.employeeId)):
            sent += 1
    return sent


def revoke_access(
    db,
    cfg,
    emp: Employee,
    *,
    auth: Optional[AuthContext],
    reason: str,
    termination: Optional[TerminationRequest] = None,
) -> dict[str, Any]:
    emp = lock_employee(db, emp.employeeId)
    term = termination or latest_termination_for(db, emp.employeeId)

    if str(emp.status or "").upper() == "INACTIVE":
        return {
            "message": "Employee is already inactive. No further action taken.",
            "employeeId": str(emp.employeeId),
            "employeeNumber": str(emp.employeeNumber or ""),
            "previousStatus": "INACTIVE",
            "newStatus": "INACTIVE",
            "alreadyInactive": True,
            "revocationLog": json_loads_maybe(term.revocationLogJson, []) if term else [],
        }

    who = actor_id(auth)
    previous = set_employee_status(db, emp, "INACTIVE", auth=auth, reason=reason)

    users = db.execute(select(User).where(User.employeeId == str(emp.employeeId))).scalars().all()
    sessions_revoked = 0
    for usr in users:
        sessions_revoked += revoke_user_sessions(db, user_id=usr.userId, revoked_by=who)

    actions = _run_steps(cfg, emp)

    now = iso_utc_now()
    entry = {"at": now, "by": who, "reason": reason, "actions": actions}
    if term:
        log = json_loads_maybe(term.revocationLogJson, [])
        if not isinstance(log, list):
            log = []
        log.append(entry)
        term.revocationLogJson = dumps_compact(log)
        term.hrComments = append_note(term.hrComments, f"[ACCESS_REVOKED:{now}] by {who}")
        term.updatedAt = now
        term.updatedBy = who

    append_audit(
        db,
        entityType="EMPLOYEE",
        entityId=str(emp.employeeId),
        action="ACCESS_REVOKE",
        fromState=previous,
        toState="INACTIVE",
        actor=auth,
        at=now,
        remark=reason,
        meta={"terminationId": str(getattr(term, "terminationId", "") or ""), "sessionsRevoked": sessions_revoked, "actions": actions},
    )
    _notify_revoked(db, emp, reason)

    failed = [a["service"] for a in actions if not a["success"]]
    if failed:
        logger.warning("access revoked for %s with failed steps: %s", emp.employeeId, ",".join(failed))
    else:
        logger.info("access revoked for %s by %s", emp.employeeId, who)

    return {
        "message": "System access revoked (employee status set to INACTIVE). De-provisioning actions initiated.",
        "employeeId": str(emp.employeeId),
        "employeeNumber": str(emp.employeeNumber or ""),
        "previousStatus": previous,
        "newStatus": "INACTIVE",
        "alreadyInactive": False,
        "sessionsRevoked": sessions_revoked,
        "actions": actions,
    }


def access_revoke(data, auth: AuthContext | None, db, cfg):
    if normalize_role(getattr(auth, "role", "")) != "SYSTEM_ADMIN":
        raise ApiError("FORBIDDEN", "Only System Admin can revoke system access.")
    emp = resolve_employee(db, str_field(data, "employeeId"))
    reason = str_field(data, "reason") or "Manual revocation by System Admin"
    return revoke_access(db, cfg, emp, auth=auth, reason=reason)


def revoke_due_terminations(db, cfg, *, auth: Optional[AuthContext], now: Optional[datetime] = None) -> int:
    """Revoke access for approved terminations whose termination date has arrived."""
    current = now or datetime.now(timezone.utc)
    rows = (
        db.execute(
            select(TerminationRequest)
            .where(TerminationRequest.status == "approved")
            .where(TerminationRequest.terminationDate != "")
            .order_by(TerminationRequest.terminationDate.asc())
        )
        .scalars()
        .all()
    )

    revoked = 0
    for term in rows:
        when = parse_datetime_maybe(term.terminationDate)
        if not when or when > current:
            continue
        emp = find_employee(db, term.employeeId)
        if not emp or str(emp.status or "").upper() == "INACTIVE":
            continue
        revoke_access(db, cfg, emp, auth=auth, reason=f"Termination date reached ({to_iso_utc(when)})", termination=term)
        revoked += 1
    return revoked


def run_access_sweep(db, cfg, *, auth: Optional[AuthContext], now: Optional[datetime] = None) -> dict[str, int]:
    """Daily: provision access for employees who started, revoke it for those who left."""
    provisioned = provision_due_access(db, auth=auth, now=now)
    revoked = revoke_due_terminations(db, cfg, auth=auth, now=now)
    logger.info("access sweep: provisioned=%s revoked=%s", provisioned, revoked)
    return {"provisioned": provisioned, "revoked": revoked}

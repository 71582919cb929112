"""
Offboarding clearance.

Every approved termination gets one checklist with six department items. Who
may decide an item comes from CLEARANCE_APPROVER_ROLES. Only the departments
in CLEARANCE_APPROVAL_SEQUENCE are ordered; IT, FACILITIES and ADMIN can be
approved at any point. Once every item is approved the checklist completes,
the termination is forced to approved and a final settlement is queued.

Reminder bookkeeping lives in `clearance_reminders`, one row per
(checklist, department), written with a version check so two concurrent sweeps
cannot both send the same reminder.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update

from actions.access_revocation import latest_termination_for, revoke_access
from actions.helpers import actor_id, append_audit, append_note, dumps_compact, flush_or_conflict, new_entity_id, setting_int, str_field
from actions.onboarding import annotate_equipment_returned, reserved_equipment
from models import ClearanceChecklist, ClearanceItem, ClearanceReminder, Employee, TerminationRequest
from services.directory import (
    actor_employee_id,
    contact_for_employee,
    find_employee,
    line_manager_for,
    recipients_for_roles,
    resolve_employee,
    serialize_employee_brief,
)
from services.notifications import enqueue_notification
from utils import ApiError, AuthContext, iso_utc_now, json_loads_maybe, normalize_role, parse_datetime_maybe, to_iso_utc


logger = logging.getLogger("clearance")

CLEARANCE_DEPARTMENTS = ("LINE_MANAGER", "HR", "IT", "FINANCE", "FACILITIES", "ADMIN")
APPROVAL_STATUSES = {"pending", "approved", "rejected"}

CLEARANCE_APPROVER_ROLES: dict[str, frozenset[str]] = {
    "LINE_MANAGER": frozenset({"DEPARTMENT_HEAD", "HR_MANAGER"}),
    "IT": frozenset({"SYSTEM_ADMIN", "HR_MANAGER"}),
    "FINANCE": frozenset({"FINANCE_STAFF", "PAYROLL_MANAGER", "PAYROLL_SPECIALIST", "HR_MANAGER"}),
    "FACILITIES": frozenset({"HR_ADMIN", "SYSTEM_ADMIN", "HR_MANAGER"}),
    "ADMIN": frozenset({"HR_ADMIN", "HR_MANAGER", "SYSTEM_ADMIN"}),
    "HR": frozenset({"HR_EMPLOYEE", "HR_MANAGER", "SYSTEM_ADMIN"}),
}
_FALLBACK_APPROVERS = frozenset({"HR_MANAGER", "SYSTEM_ADMIN"})

# Partial order: covers these three departments only.
CLEARANCE_APPROVAL_SEQUENCE = ("LINE_MANAGER", "FINANCE", "HR")

REMINDER_RECIPIENT_ROLES: dict[str, tuple[str, ...]] = {
    "LINE_MANAGER": ("DEPARTMENT_HEAD",),
    "HR": ("HR_MANAGER", "HR_EMPLOYEE", "HR_ADMIN"),
    "IT": ("SYSTEM_ADMIN",),
    "FINANCE": ("FINANCE_STAFF", "PAYROLL_MANAGER", "PAYROLL_SPECIALIST"),
    "FACILITIES": ("HR_ADMIN", "SYSTEM_ADMIN"),
    "ADMIN": ("HR_ADMIN", "SYSTEM_ADMIN"),
}

CLEARANCE_REMINDER_INTERVAL_DAYS = 3
CLEARANCE_ESCALATION_AFTER_DAYS = 7
CLEARANCE_MAX_REMINDERS = 3

FINAL_SETTLEMENT_ROLES = ("PAYROLL_MANAGER", "PAYROLL_SPECIALIST")


def _items(db, checklist_id: str) -> list[ClearanceItem]:
    return list(
        db.execute(
            select(ClearanceItem)
            .where(ClearanceItem.checklistId == str(checklist_id or ""))
            .order_by(ClearanceItem.orderNo.asc(), ClearanceItem.id.asc())
        )
        .scalars()
        .all()
    )


def _reminders(db, checklist_id: str) -> list[ClearanceReminder]:
    return list(
        db.execute(select(ClearanceReminder).where(ClearanceReminder.checklistId == str(checklist_id or ""))).scalars().all()
    )


def serialize_item(row: ClearanceItem) -> dict:
    return {
        "department": str(row.department or ""),
        "status": str(row.status or ""),
        "assignedTo": str(row.assignedTo or ""),
        "comments": str(row.comments or ""),
        "updatedBy": str(row.updatedBy or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def serialize_reminder(row: ClearanceReminder) -> dict:
    return {
        "department": str(row.department or ""),
        "sentCount": int(row.sentCount or 0),
        "firstSentAt": str(row.firstSentAt or ""),
        "lastSentAt": str(row.lastSentAt or ""),
        "escalated": bool(row.escalated),
        "escalatedAt": str(row.escalatedAt or ""),
    }


def serialize_checklist(db, row: ClearanceChecklist) -> dict:
    return {
        "checklistId": str(row.checklistId or ""),
        "terminationId": str(row.terminationId or ""),
        "employeeId": str(row.employeeId or ""),
        "items": [serialize_item(i) for i in _items(db, row.checklistId)],
        "equipmentList": json_loads_maybe(row.equipmentJson, []),
        "cardReturned": bool(row.cardReturned),
        "completed": bool(row.completed),
        "completedAt": str(row.completedAt or ""),
        "reminders": [serialize_reminder(r) for r in _reminders(db, row.checklistId)],
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def get_checklist_row(db, checklist_id: str, *, for_update: bool = False) -> ClearanceChecklist:
    cid = str(checklist_id or "").strip()
    if not cid:
        raise ApiError("BAD_REQUEST", "Invalid checklist ID format")
    q = select(ClearanceChecklist).where(ClearanceChecklist.checklistId == cid)
    if for_update:
        q = q.with_for_update(of=ClearanceChecklist)
    row = db.execute(q).scalars().first()
    if not row:
        raise ApiError("NOT_FOUND", "Checklist not found.")
    return row


def checklist_for_termination(db, termination_id: str) -> Optional[ClearanceChecklist]:
    return (
        db.execute(select(ClearanceChecklist).where(ClearanceChecklist.terminationId == str(termination_id or "")))
        .scalars()
        .first()
    )


def _termination_row(db, termination_id: str, *, for_update: bool = False) -> TerminationRequest:
    tid = str(termination_id or "").strip()
    if not tid:
        raise ApiError("BAD_REQUEST", "Invalid termination ID format")
    q = select(TerminationRequest).where(TerminationRequest.terminationId == tid)
    if for_update:
        q = q.with_for_update(of=TerminationRequest)
    row = db.execute(q).scalars().first()
    if not row:
        raise ApiError("NOT_FOUND", "Termination request not found.")
    return row


def create_clearance_for_termination(db, term: TerminationRequest, *, auth: Optional[AuthContext]) -> ClearanceChecklist:
    duplicate_msg = "Clearance checklist already exists for this termination request"
    if checklist_for_termination(db, term.terminationId):
        raise ApiError("CONFLICT", duplicate_msg)

    emp = find_employee(db, term.employeeId)
    manager = line_manager_for(db, emp)
    equipment = reserved_equipment(db, emp.employeeId) if emp else []

    now = iso_utc_now()
    row = ClearanceChecklist(
        checklistId=new_entity_id(db, ClearanceChecklist.checklistId, "CLR"),
        terminationId=str(term.terminationId),
        employeeId=str(term.employeeId or ""),
        equipmentJson=dumps_compact(equipment),
        cardReturned=False,
        completed=False,
        completedAt="",
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(row)
    flush_or_conflict(db, duplicate_msg)

    for i, dept in enumerate(CLEARANCE_DEPARTMENTS, start=1):
        db.add(
            ClearanceItem(
                checklistId=row.checklistId,
                orderNo=i,
                department=dept,
                status="pending",
                assignedTo=str(manager.employeeId) if dept == "LINE_MANAGER" and manager else "",
                comments="",
                updatedBy="",
                updatedAt=now,
            )
        )
        db.add(ClearanceReminder(checklistId=row.checklistId, department=dept, sentCount=0, escalated=False, version=0))
    flush_or_conflict(db, duplicate_msg)

    append_audit(
        db,
        entityType="CLEARANCE",
        entityId=row.checklistId,
        action="CLEARANCE_CREATE",
        toState="pending",
        actor=auth,
        at=now,
        meta={"terminationId": row.terminationId, "lineManager": str(getattr(manager, "employeeId", "") or ""), "equipment": len(equipment)},
    )
    return row


def clearance_create(data, auth: AuthContext | None, db, cfg):
    term = _termination_row(db, str_field(data, "terminationId"), for_update=True)
    row = create_clearance_for_termination(db, term, auth=auth)
    return {"checklist": serialize_checklist(db, row), "message": "Clearance checklist created"}


def clearance_get_by_employee(data, auth: AuthContext | None, db, cfg):
    emp = resolve_employee(db, str_field(data, "employeeId"))
    term = latest_termination_for(db, emp.employeeId)
    if not term:
        raise ApiError("NOT_FOUND", "No termination found for this employee.")
    row = checklist_for_termination(db, term.terminationId)
    if not row:
        raise ApiError("NOT_FOUND", "No clearance checklist found for this employee.")
    return {"checklist": serialize_checklist(db, row), "employee": serialize_employee_brief(emp)}


def clearance_list(data, auth: AuthContext | None, db, cfg):
    pending_dept = str_field(data, "pendingDepartment").upper()
    q = select(ClearanceChecklist)
    if pending_dept:
        if pending_dept not in CLEARANCE_DEPARTMENTS:
            raise ApiError("BAD_REQUEST", f"Unknown department: {pending_dept}")
        pending_ids = select(ClearanceItem.checklistId).where(ClearanceItem.department == pending_dept).where(ClearanceItem.status == "pending")
        q = q.where(ClearanceChecklist.checklistId.in_(pending_ids))
    rows = db.execute(q.order_by(ClearanceChecklist.createdAt.asc())).scalars().all()
    return {"items": [serialize_checklist(db, r) for r in rows], "total": len(rows)}


def can_decide(db, auth: Optional[AuthContext], item: ClearanceItem) -> bool:
    dept = str(item.department or "")
    if dept == "LINE_MANAGER" and str(item.assignedTo or "") and actor_employee_id(db, auth) == str(item.assignedTo):
        return True
    role = normalize_role(getattr(auth, "role", ""))
    return role in CLEARANCE_APPROVER_ROLES.get(dept, _FALLBACK_APPROVERS)


def assert_sequence(items: list[ClearanceItem], department: str) -> None:
    """Raise unless every department ahead of `department` in the sequence is approved."""
    if department not in CLEARANCE_APPROVAL_SEQUENCE:
        return
    by_dept = {str(i.department): str(i.status or "") for i in items}
    for prev in CLEARANCE_APPROVAL_SEQUENCE[: CLEARANCE_APPROVAL_SEQUENCE.index(department)]:
        if by_dept.get(prev) != "approved":
            raise ApiError("INVALID_STATE", f"Cannot approve '{department}' before '{prev}' is approved")


def _apply_equipment_returns(row: ClearanceChecklist, returns: list) -> int:
    equipment = json_loads_maybe(row.equipmentJson, [])
    if not isinstance(equipment, list):
        equipment = []
    matched = 0
    for r in returns:
        if not isinstance(r, dict):
            continue
        key = str(r.get("equipmentId") or r.get("name") or "").strip()
        if not key:
            continue
        for e in equipment:
            if str(e.get("equipmentId") or "") == key or str(e.get("name") or "") == key:
                e["returned"] = True
                if r.get("condition"):
                    e["condition"] = r.get("condition")
                matched += 1
                break
    row.equipmentJson = dumps_compact(equipment)
    return matched


def trigger_final_settlement(db, term: TerminationRequest, *, auth: Optional[AuthContext]) -> dict[str, Any]:
    emp = find_employee(db, term.employeeId)
    now = iso_utc_now()

    errors: list[str] = []
    if not emp:
        errors.append("Employee not found for final settlement")

    settlement = {
        "employeeId": str(term.employeeId or ""),
        "employeeNumber": str(getattr(emp, "employeeNumber", "") or ""),
        "terminationId": str(term.terminationId),
        "terminationDate": str(term.terminationDate or ""),
        "initiatedAt": now,
        "status": "PARTIAL" if errors else "QUEUED",
        "components": {
            "leaveEncashment": None,
            "finalPay": None,
            "benefitsTermination": None,
            "deductions": None,
            "severance": None,
        },
        "errors": errors,
    }
    term.finalSettlementJson = dumps_compact(settlement)
    term.hrComments = append_note(term.hrComments, f"[FINAL_SETTLEMENT_TRIGGERED:{now}] Status: {settlement['status']}")
    term.updatedAt = now
    term.updatedBy = actor_id(auth)

    append_audit(
        db,
        entityType="TERMINATION",
        entityId=term.terminationId,
        action="FINAL_SETTLEMENT_TRIGGER",
        toState=settlement["status"],
        actor=auth,
        at=now,
        after=settlement,
    )
    for r in recipients_for_roles(db, FINAL_SETTLEMENT_ROLES):
        enqueue_notification(
            db,
            type="final_settlement",
            recipient=r["email"],
            context={
                "recipientName": r["name"],
                "employeeNumber": settlement["employeeNumber"],
                "terminationId": settlement["terminationId"],
                "status": settlement["status"],
            },
            entity_type="TERMINATION",
            entity_id=term.terminationId,
        )
    logger.info("final settlement %s for termination %s", settlement["status"], term.terminationId)
    return settlement


def final_settlement_trigger(data, auth: AuthContext | None, db, cfg):
    term = _termination_row(db, str_field(data, "terminationId"), for_update=True)
    if str(term.status or "") != "approved":
        raise ApiError("INVALID_STATE", "Final settlement requires an approved termination request")
    settlement = trigger_final_settlement(db, term, auth=auth)
    return {"settlementData": settlement, "message": "Final settlement process initiated"}


def _complete_checklist(db, cfg, row: ClearanceChecklist, *, auth: Optional[AuthContext], now: str) -> dict[str, Any]:
    row.completed = True
    row.completedAt = now
    row.cardReturned = True

    term = _termination_row(db, row.terminationId, for_update=True)
    before = str(term.status or "")
    term.status = "approved"
    term.updatedAt = now
    term.updatedBy = actor_id(auth)
    append_audit(
        db,
        entityType="CLEARANCE",
        entityId=row.checklistId,
        action="CLEARANCE_COMPLETED",
        fromState="pending",
        toState="completed",
        actor=auth,
        at=now,
        meta={"terminationId": term.terminationId, "terminationStatusBefore": before},
    )
    return trigger_final_settlement(db, term, auth=auth)


def clearance_item_update(data, auth: AuthContext | None, db, cfg):
    dept = str_field(data, "department").upper()
    if not dept:
        raise ApiError("BAD_REQUEST", "Department is required and must be a non-empty string")
    status = str_field(data, "status").lower()
    if status not in APPROVAL_STATUSES:
        raise ApiError("BAD_REQUEST", "Invalid approval status")

    row = get_checklist_row(db, str_field(data, "checklistId"), for_update=True)
    items = _items(db, row.checklistId)
    item = next((i for i in items if str(i.department) == dept), None)
    if not item:
        raise ApiError("BAD_REQUEST", f"Department '{dept}' not found in clearance checklist")
    if row.completed:
        raise ApiError("INVALID_STATE", "Clearance checklist is already completed")

    if not can_decide(db, auth, item):
        raise ApiError("FORBIDDEN", "User does not have permission to update this department clearance item")
    if status == "approved":
        assert_sequence(items, dept)
        if dept == "HR" and normalize_role(getattr(auth, "role", "")) != "HR_MANAGER":
            raise ApiError("FORBIDDEN", "Only HR Manager can finalize HR approval")

    now = iso_utc_now()
    before = str(item.status or "")
    item.status = status
    item.comments = str((data or {}).get("comments") or "")
    item.updatedBy = actor_id(auth)
    item.updatedAt = now
    row.updatedAt = now
    row.updatedBy = actor_id(auth)
    append_audit(
        db,
        entityType="CLEARANCE",
        entityId=row.checklistId,
        action="CLEARANCE_ITEM_UPDATE",
        stageTag=dept,
        fromState=before,
        toState=status,
        actor=auth,
        at=now,
        remark=item.comments,
    )

    out: dict[str, Any] = {"message": "Clearance item updated."}
    if status == "approved":
        term = _termination_row(db, row.terminationId)
        emp = find_employee(db, row.employeeId)
        if dept == "IT" and emp:
            out["accessRevocation"] = revoke_access(db, cfg, emp, auth=auth, reason="IT clearance approved", termination=term)
        returns = (data or {}).get("equipmentReturns")
        if dept == "FACILITIES" and isinstance(returns, list) and returns:
            out["equipmentReturned"] = _apply_equipment_returns(row, returns)
            annotate_equipment_returned(db, row.employeeId, returns, auth=auth, now=now)

    db.flush()
    if all(str(i.status or "") == "approved" for i in items):
        out["finalSettlement"] = _complete_checklist(db, cfg, row, auth=auth, now=now)

    out["checklist"] = serialize_checklist(db, row)
    return out


def clearance_complete(data, auth: AuthContext | None, db, cfg):
    row = get_checklist_row(db, str_field(data, "checklistId"), for_update=True)
    now = iso_utc_now()
    row.cardReturned = True
    row.updatedAt = now
    row.updatedBy = actor_id(auth)
    append_audit(db, entityType="CLEARANCE", entityId=row.checklistId, action="CLEARANCE_CARD_RETURNED", actor=auth, at=now)
    return {"checklist": serialize_checklist(db, row), "message": "Clearance checklist marked as completed"}


def _reminder_row(db, checklist_id: str, department: str) -> ClearanceReminder:
    row = (
        db.execute(
            select(ClearanceReminder)
            .where(ClearanceReminder.checklistId == checklist_id)
            .where(ClearanceReminder.department == department)
        )
        .scalars()
        .first()
    )
    if row:
        return row
    row = ClearanceReminder(checklistId=checklist_id, department=department, sentCount=0, escalated=False, version=0)
    db.add(row)
    db.flush()
    return row


def _whole_days(later: datetime, earlier: Optional[datetime]) -> Optional[int]:
    if not earlier:
        return None
    return int((later - earlier).total_seconds() // 86400)


def _claim(db, rem: ClearanceReminder, values: dict[str, Any]) -> bool:
    """Version-checked write; False when a concurrent sweep already updated the row."""
    version = int(rem.version or 0)
    res = db.execute(
        update(ClearanceReminder)
        .where(ClearanceReminder.id == rem.id)
        .where(ClearanceReminder.version == version)
        .values(version=version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        return False
    for k, v in values.items():
        setattr(rem, k, v)
    rem.version = version + 1
    return True


def _recipients_for_item(db, item: ClearanceItem) -> list[dict[str, str]]:
    if str(item.assignedTo or ""):
        contact = contact_for_employee(find_employee(db, item.assignedTo))
        if contact:
            return [contact]
    return recipients_for_roles(db, REMINDER_RECIPIENT_ROLES.get(str(item.department), ("HR_MANAGER",)))


def _escalation_recipients(db, emp: Optional[Employee]) -> list[dict[str, str]]:
    uniq = {r["email"].lower(): r for r in recipients_for_roles(db, ["HR_MANAGER"])}
    manager = contact_for_employee(line_manager_for(db, emp))
    if manager:
        uniq.setdefault(manager["email"].lower(), manager)
    return list(uniq.values())


def _send_all(db, recipients: list[dict[str, str]], context: dict[str, Any], checklist_id: str) -> int:
    sent = 0
    for r in recipients:
        try:
            if enqueue_notification(
                db,
                type="clearance_reminder",
                recipient=r["email"],
                context={**context, "recipientName": r.get("name", "")},
                entity_type="CLEARANCE",
                entity_id=checklist_id,
            ):
                sent += 1
        except Exception:
            logger.exception("clearance reminder to %s failed", r.get("email"))
    return sent


def send_clearance_reminders(db, cfg, *, force: bool = False, now: Optional[datetime] = None) -> dict[str, int]:
    current = now or datetime.now(timezone.utc)
    stamp = to_iso_utc(current)
    interval = setting_int(db, "CLEARANCE_REMINDER_INTERVAL_DAYS", CLEARANCE_REMINDER_INTERVAL_DAYS)
    escalate_after = setting_int(db, "CLEARANCE_ESCALATION_AFTER_DAYS", CLEARANCE_ESCALATION_AFTER_DAYS)
    max_reminders = setting_int(db, "CLEARANCE_MAX_REMINDERS", CLEARANCE_MAX_REMINDERS)

    pending_ids = select(ClearanceItem.checklistId).where(ClearanceItem.status == "pending")
    rows = (
        db.execute(
            select(ClearanceChecklist)
            .where(ClearanceChecklist.completed == False)  # noqa: E712
            .where(ClearanceChecklist.checklistId.in_(pending_ids))
            .order_by(ClearanceChecklist.createdAt.asc())
        )
        .scalars()
        .all()
    )

    stats = {"checklists": len(rows), "reminders": 0, "escalations": 0, "skipped": 0}
    for row in rows:
        emp = find_employee(db, row.employeeId)
        employee_name = str(getattr(emp, "employeeNumber", "") or getattr(emp, "workEmail", "") or "Employee")

        for item in _items(db, row.checklistId):
            if str(item.status or "") != "pending":
                continue
            dept = str(item.department)
            rem = _reminder_row(db, row.checklistId, dept)
            count = int(rem.sentCount or 0)
            last = parse_datetime_maybe(rem.lastSentAt)
            first = parse_datetime_maybe(rem.firstSentAt)
            since_last = _whole_days(current, last)
            since_first = _whole_days(current, first)

            send_normal = force or (count < max_reminders and (since_last is None or since_last >= interval))
            escalate = not rem.escalated and first is not None and since_first is not None and since_first >= escalate_after
            if not send_normal and not escalate:
                continue

            values: dict[str, Any] = {}
            if send_normal:
                values.update(sentCount=count + 1, lastSentAt=stamp, firstSentAt=rem.firstSentAt or stamp)
            if escalate:
                values.update(escalated=True, escalatedAt=stamp)
            if not _claim(db, rem, values):
                stats["skipped"] += 1
                continue

            context = {
                "employeeName": employee_name,
                "checklistId": row.checklistId,
                "department": dept,
                "itemName": dept,
            }
            if send_normal:
                pending_since = str(item.updatedAt or "") or "unknown"
                stats["reminders"] += _send_all(
                    db, _recipients_for_item(db, item), {**context, "note": f"Pending since {pending_since}"}, row.checklistId
                )
            if escalate:
                note = f"ESCALATION: {int(rem.sentCount or 0)} reminder(s) sent with no resolution. Please intervene."
                stats["escalations"] += _send_all(db, _escalation_recipients(db, emp), {**context, "note": note}, row.checklistId)

    logger.info("clearance reminders: %s", stats)
    return stats


def clearance_send_reminders(data, auth: AuthContext | None, db, cfg):
    out = send_clearance_reminders(db, cfg, force=bool((data or {}).get("force")))
    out["message"] = "Clearance reminders processed."
    return out

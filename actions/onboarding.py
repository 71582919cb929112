"""
Onboarding checklists.

One checklist per employee (unique on `onboardings.employeeId`). Tasks live in
`onboarding_tasks` ordered by `orderNo`; API callers address them by their
zero-based position in that order. The checklist-level `completed` flag is
always recomputed from the tasks, never set directly.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func, select, update

from actions.helpers import actor_id, append_audit, append_note, dumps_compact, flush_or_conflict, new_entity_id, setting_int, str_field
from models import Employee, Onboarding, OnboardingTask
from services.directory import actor_employee_id, contact_for_employee, find_employee, resolve_employee
from services.documents import delete_document, store_document
from services.notifications import enqueue_notification
from utils import ApiError, AuthContext, iso_utc_now, normalize_role, parse_datetime_maybe, to_iso_utc


logger = logging.getLogger("onboarding")

TASK_STATUSES = {"pending", "in_progress", "completed"}

IT, ADMIN, HR = "IT", "Admin", "HR"
ONBOARDING_DEPARTMENTS = {IT, ADMIN, HR}

TASK_EMAIL = "Allocate Email Account"
TASK_LAPTOP = "Allocate Laptop/Equipment"
TASK_SSO = "Set up System Access (SSO)"
TASK_DESK = "Reserve Workspace/Desk"
TASK_BADGE = "Issue ID Badge/Access Card"
TASK_PAYROLL = "Create Payroll Profile"
TASK_BONUS = "Process Signing Bonus"
TASK_BENEFITS = "Set up Benefits"
TASK_CONTRACT = "Upload Signed Contract"
TASK_ID_DOC = "Upload ID Document"
TASK_CERTS = "Upload Certifications"

EQUIPMENT_TASKS = {
    "workspace": TASK_DESK,
    "desk": TASK_DESK,
    "access_card": TASK_BADGE,
    "badge": TASK_BADGE,
}

DEFAULT_DEADLINE_DAYS = 7
UPCOMING_WINDOW_DAYS = 2
ONBOARDING_REMINDER_MIN_HOURS = 20

_RESERVED_RE = re.compile(r"Reserved:\s*(?=[\[{])")
_JSON_DECODER = json.JSONDecoder()


def _stamp(now: str) -> str:
    return f"[{now}]"


def serialize_task(row: OnboardingTask, index: int) -> dict:
    return {
        "index": index,
        "name": str(row.name or ""),
        "department": str(row.department or ""),
        "status": str(row.status or ""),
        "deadline": str(row.deadline or ""),
        "completedAt": str(row.completedAt or ""),
        "documentId": str(row.documentId or ""),
        "notes": str(row.notes or ""),
    }


def load_tasks(db, onboarding_id: str) -> list[OnboardingTask]:
    return list(
        db.execute(
            select(OnboardingTask)
            .where(OnboardingTask.onboardingId == str(onboarding_id or ""))
            .order_by(OnboardingTask.orderNo.asc(), OnboardingTask.id.asc())
        )
        .scalars()
        .all()
    )


def serialize_onboarding(db, row: Onboarding) -> dict:
    tasks = load_tasks(db, row.onboardingId)
    return {
        "onboardingId": str(row.onboardingId or ""),
        "employeeId": str(row.employeeId or ""),
        "startDate": str(row.startDate or ""),
        "contractSigningDate": str(row.contractSigningDate or ""),
        "completed": bool(row.completed),
        "completedAt": str(row.completedAt or ""),
        "cancelledAt": str(row.cancelledAt or ""),
        "cancelReason": str(row.cancelReason or ""),
        "lastReminderAt": str(row.lastReminderAt or ""),
        "tasks": [serialize_task(t, i) for i, t in enumerate(tasks)],
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def get_onboarding_row(db, onboarding_id: str, *, for_update: bool = False) -> Onboarding:
    oid = str(onboarding_id or "").strip()
    if not oid:
        raise ApiError("BAD_REQUEST", "Missing onboardingId")
    q = select(Onboarding).where(Onboarding.onboardingId == oid)
    if for_update:
        q = q.with_for_update(of=Onboarding)
    row = db.execute(q).scalars().first()
    if not row:
        raise ApiError("NOT_FOUND", "Onboarding not found")
    return row


def onboarding_for_employee(db, employee_id: str, *, for_update: bool = False) -> Optional[Onboarding]:
    q = select(Onboarding).where(Onboarding.employeeId == str(employee_id or ""))
    if for_update:
        q = q.with_for_update(of=Onboarding)
    return db.execute(q).scalars().first()


def recompute_completion(db, row: Onboarding, now: str) -> bool:
    """completed == every task completed."""
    db.flush()
    tasks = load_tasks(db, row.onboardingId)
    done = all(str(t.status or "") == "completed" for t in tasks)
    if done and not row.completed:
        row.completedAt = now
    elif not done:
        row.completedAt = ""
    row.completed = done
    row.updatedAt = now
    return done


def _default_deadline(emp: Employee) -> str:
    start = parse_datetime_maybe(emp.startDate)
    if start:
        return to_iso_utc(start - timedelta(days=DEFAULT_DEADLINE_DAYS))
    return to_iso_utc(datetime.now(timezone.utc) + timedelta(days=DEFAULT_DEADLINE_DAYS))


def default_tasks(emp: Employee) -> list[dict[str, str]]:
    deadline = _default_deadline(emp)
    signed = parse_datetime_maybe(emp.contractSigningDate)
    payroll_deadline = to_iso_utc(signed) if signed else deadline

    email_notes = "Automated task: Email account provisioning"
    if str(emp.workEmail or "").strip():
        email_notes += f"\nEmail to create: {emp.workEmail}"

    return [
        {"name": TASK_EMAIL, "department": IT, "deadline": deadline, "notes": email_notes},
        {"name": TASK_LAPTOP, "department": IT, "deadline": deadline, "notes": "Automated task: Hardware allocation"},
        {"name": TASK_SSO, "department": IT, "deadline": deadline, "notes": "Automated task: SSO and internal systems access"},
        {"name": TASK_DESK, "department": ADMIN, "deadline": deadline, "notes": "Automated task: Workspace allocation"},
        {"name": TASK_BADGE, "department": ADMIN, "deadline": deadline, "notes": "Automated task: Access card provisioning"},
        {"name": TASK_PAYROLL, "department": HR, "deadline": payroll_deadline, "notes": "Automated task: Payroll initiation"},
        {"name": TASK_BONUS, "department": HR, "deadline": payroll_deadline, "notes": "Automated task: Signing bonus processing"},
        {"name": TASK_BENEFITS, "department": HR, "deadline": deadline, "notes": "Automated task: Benefits enrollment"},
        {"name": TASK_CONTRACT, "department": HR, "deadline": deadline, "notes": "Required: Signed contract document"},
        {"name": TASK_ID_DOC, "department": HR, "deadline": deadline, "notes": "Required: Government-issued ID for compliance"},
        {"name": TASK_CERTS, "department": HR, "deadline": deadline, "notes": "Required: Professional certifications if applicable"},
    ]


def _clean_task(raw: Any, app_timezone: str) -> dict[str, str]:
    if not isinstance(raw, dict):
        raise ApiError("BAD_REQUEST", "Each task must be an object")
    name = str(raw.get("name") or "").strip()
    department = str(raw.get("department") or "").strip()
    if not name:
        raise ApiError("BAD_REQUEST", "Task name is required")
    if not department:
        raise ApiError("BAD_REQUEST", "Task department is required")
    status = str(raw.get("status") or "pending").strip().lower()
    if status not in TASK_STATUSES:
        raise ApiError("BAD_REQUEST", f"Invalid task status: {status}")

    deadline = ""
    raw_deadline = str(raw.get("deadline") or "").strip()
    if raw_deadline:
        dt = parse_datetime_maybe(raw_deadline, app_timezone)
        if not dt:
            raise ApiError("BAD_REQUEST", "Invalid deadline format. Expected ISO 8601 date string.")
        deadline = to_iso_utc(dt)
    return {"name": name, "department": department, "status": status, "deadline": deadline, "notes": str(raw.get("notes") or "")}


def _next_order_no(db, onboarding_id: str) -> int:
    current = db.execute(select(func.max(OnboardingTask.orderNo)).where(OnboardingTask.onboardingId == onboarding_id)).scalar()
    return int(current or 0) + 1


def _add_task(db, onboarding_id: str, task_def: dict[str, str], *, order_no: int, auth: Optional[AuthContext], now: str) -> OnboardingTask:
    status = task_def.get("status") or "pending"
    task = OnboardingTask(
        onboardingId=onboarding_id,
        orderNo=order_no,
        name=task_def["name"],
        department=task_def["department"],
        status=status,
        deadline=task_def.get("deadline") or "",
        completedAt=now if status == "completed" else "",
        documentId="",
        notes=task_def.get("notes") or "",
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(task)
    return task


def create_onboarding_for_employee(db, emp: Employee, *, tasks: Optional[list], auth: Optional[AuthContext], cfg) -> Onboarding:
    duplicate_msg = "Onboarding checklist already exists for this employee"
    if onboarding_for_employee(db, emp.employeeId):
        raise ApiError("CONFLICT", duplicate_msg)

    app_tz = str(getattr(cfg, "APP_TIMEZONE", "UTC") or "UTC")
    task_defs = [_clean_task(t, app_tz) for t in tasks] if tasks else default_tasks(emp)

    now = iso_utc_now()
    row = Onboarding(
        onboardingId=new_entity_id(db, Onboarding.onboardingId, "ONB"),
        employeeId=str(emp.employeeId),
        startDate=str(emp.startDate or ""),
        contractSigningDate=str(emp.contractSigningDate or ""),
        completed=False,
        completedAt="",
        cancelledAt="",
        cancelReason="",
        lastReminderAt="",
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(row)
    flush_or_conflict(db, duplicate_msg)

    for i, task_def in enumerate(task_defs, start=1):
        _add_task(db, row.onboardingId, task_def, order_no=i, auth=auth, now=now)
    recompute_completion(db, row, now)

    append_audit(
        db,
        entityType="ONBOARDING",
        entityId=row.onboardingId,
        action="ONBOARDING_CREATE",
        toState="open",
        actor=auth,
        at=now,
        meta={"employeeId": row.employeeId, "taskCount": len(task_defs), "defaults": not tasks},
    )

    contact = contact_for_employee(emp)
    enqueue_notification(
        db,
        type="onboarding_welcome",
        recipient=(contact or {}).get("email", ""),
        context={"employeeName": (contact or {}).get("name", str(emp.fullName or "")), "taskCount": len(task_defs)},
        entity_type="ONBOARDING",
        entity_id=row.onboardingId,
    )
    return row


def _task_at(tasks: list[OnboardingTask], index: Any) -> OnboardingTask:
    try:
        idx = int(index)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "Invalid task index")
    if idx < 0 or idx >= len(tasks):
        raise ApiError("BAD_REQUEST", "Invalid task index")
    return tasks[idx]


def _set_task_status(task: OnboardingTask, status: str, *, auth: Optional[AuthContext], now: str) -> None:
    if status == "completed" and str(task.status or "") != "completed":
        task.completedAt = now
    elif status != "completed":
        task.completedAt = ""
    task.status = status
    task.updatedAt = now
    task.updatedBy = actor_id(auth)


def _ensure_own_onboarding(db, auth: Optional[AuthContext], row: Onboarding) -> None:
    if normalize_role(getattr(auth, "role", "")) != "EMPLOYEE":
        return
    if actor_employee_id(db, auth) != str(row.employeeId or ""):
        raise ApiError("FORBIDDEN", "You can only access your own onboarding checklist")


def _ensure_not_cancelled(row: Onboarding) -> None:
    if str(row.cancelledAt or ""):
        raise ApiError("INVALID_STATE", "Onboarding has been cancelled")


def _open_onboarding_for(db, data: Any, *, completed_msg: str = "Onboarding checklist is already completed") -> tuple[Employee, Onboarding]:
    """Locked onboarding of the employee named in `employeeId`; rejects finished checklists."""
    emp = resolve_employee(db, str_field(data, "employeeId"))
    row = onboarding_for_employee(db, emp.employeeId, for_update=True)
    if not row:
        raise ApiError("NOT_FOUND", "Onboarding not found")
    if row.completed:
        raise ApiError("INVALID_STATE", completed_msg)
    _ensure_not_cancelled(row)
    return emp, row


def _audit_task(db, row: Onboarding, action: str, task: OnboardingTask, *, auth, now: str, before: str = "", meta=None) -> None:
    append_audit(
        db,
        entityType="ONBOARDING",
        entityId=row.onboardingId,
        action=action,
        fromState=before,
        toState=str(task.status or ""),
        actor=auth,
        at=now,
        remark=str(task.name or ""),
        meta=meta,
    )


def onboarding_create(data, auth: AuthContext | None, db, cfg):
    emp = resolve_employee(db, str_field(data, "employeeId"))
    tasks = (data or {}).get("tasks")
    if tasks is not None and not isinstance(tasks, list):
        raise ApiError("BAD_REQUEST", "tasks must be a list")
    row = create_onboarding_for_employee(db, emp, tasks=tasks, auth=auth, cfg=cfg)
    return {"onboarding": serialize_onboarding(db, row), "message": "Onboarding checklist created"}


def onboarding_get(data, auth: AuthContext | None, db, cfg):
    oid = str_field(data, "onboardingId")
    if oid:
        row = get_onboarding_row(db, oid)
    else:
        emp = resolve_employee(db, str_field(data, "employeeId"))
        row = onboarding_for_employee(db, emp.employeeId)
        if not row:
            raise ApiError("NOT_FOUND", "Onboarding not found")
    _ensure_own_onboarding(db, auth, row)
    return {"onboarding": serialize_onboarding(db, row)}


def onboarding_list(data, auth: AuthContext | None, db, cfg):
    q = select(Onboarding)
    completed = (data or {}).get("completed")
    if completed is not None and str(completed).strip() != "":
        q = q.where(Onboarding.completed == (str(completed).strip().lower() in {"1", "true", "yes"}))
    rows = db.execute(q.order_by(Onboarding.createdAt.desc())).scalars().all()
    return {"items": [serialize_onboarding(db, r) for r in rows], "total": len(rows)}


def onboarding_stats(data, auth: AuthContext | None, db, cfg):
    total = int(db.execute(select(func.count()).select_from(Onboarding)).scalar() or 0)
    completed = int(db.execute(select(func.count()).select_from(Onboarding).where(Onboarding.completed == True)).scalar() or 0)  # noqa: E712
    return {
        "total": total,
        "completed": completed,
        "inProgress": total - completed,
        "completionRate": round(completed * 100.0 / total, 2) if total else 0.0,
    }


def onboarding_task_update(data, auth: AuthContext | None, db, cfg):
    row = get_onboarding_row(db, str_field(data, "onboardingId"), for_update=True)
    _ensure_not_cancelled(row)
    tasks = load_tasks(db, row.onboardingId)
    task = _task_at(tasks, (data or {}).get("taskIndex"))

    now = iso_utc_now()
    before = str(task.status or "")
    status = str_field(data, "status").lower()
    if status:
        if status not in TASK_STATUSES:
            raise ApiError("BAD_REQUEST", f"Invalid task status: {status}")
        _set_task_status(task, status, auth=auth, now=now)

    if "notes" in (data or {}):
        task.notes = str((data or {}).get("notes") or "")
    if "documentId" in (data or {}):
        task.documentId = str_field(data, "documentId")
    raw_deadline = str_field(data, "deadline")
    if raw_deadline:
        dt = parse_datetime_maybe(raw_deadline, cfg.APP_TIMEZONE)
        if not dt:
            raise ApiError("BAD_REQUEST", "Invalid deadline format. Expected ISO 8601 date string.")
        task.deadline = to_iso_utc(dt)
    task.updatedAt = now
    task.updatedBy = actor_id(auth)

    recompute_completion(db, row, now)
    _audit_task(db, row, "ONBOARDING_TASK_UPDATE", task, auth=auth, now=now, before=before)
    return {"onboarding": serialize_onboarding(db, row), "message": "Task updated"}


def onboarding_task_add(data, auth: AuthContext | None, db, cfg):
    row = get_onboarding_row(db, str_field(data, "onboardingId"), for_update=True)
    _ensure_not_cancelled(row)
    if row.completed:
        raise ApiError("INVALID_STATE", "Cannot add tasks to a completed onboarding checklist")

    task_def = _clean_task(
        {
            "name": (data or {}).get("name"),
            "department": (data or {}).get("department"),
            "deadline": (data or {}).get("deadline"),
            "notes": (data or {}).get("notes"),
        },
        cfg.APP_TIMEZONE,
    )
    now = iso_utc_now()
    task = _add_task(db, row.onboardingId, task_def, order_no=_next_order_no(db, row.onboardingId), auth=auth, now=now)
    recompute_completion(db, row, now)
    _audit_task(db, row, "ONBOARDING_TASK_ADD", task, auth=auth, now=now)
    return {"onboarding": serialize_onboarding(db, row), "message": "Task added"}


def onboarding_task_remove(data, auth: AuthContext | None, db, cfg):
    row = get_onboarding_row(db, str_field(data, "onboardingId"), for_update=True)
    _ensure_not_cancelled(row)
    tasks = load_tasks(db, row.onboardingId)
    task = _task_at(tasks, (data or {}).get("taskIndex"))

    now = iso_utc_now()
    removed = serialize_task(task, tasks.index(task))
    if task.documentId:
        delete_document(db, task.documentId)
    db.delete(task)
    recompute_completion(db, row, now)
    append_audit(
        db,
        entityType="ONBOARDING",
        entityId=row.onboardingId,
        action="ONBOARDING_TASK_REMOVE",
        actor=auth,
        at=now,
        remark=removed["name"],
        before=removed,
    )
    return {"onboarding": serialize_onboarding(db, row), "message": "Task removed"}


def attach_task_document(
    db,
    row: Onboarding,
    task_index: Any,
    *,
    file_bytes: bytes,
    file_name: str,
    mime_type: str,
    auth: Optional[AuthContext],
    cfg,
) -> dict:
    """Store the file, link it to the task and complete the task if it was still pending."""
    tasks = load_tasks(db, row.onboardingId)
    task = _task_at(tasks, task_index)

    doc = store_document(
        db,
        cfg=cfg,
        owner_id=row.employeeId,
        document_type=f"onboarding:{task.name}",
        file_bytes=file_bytes,
        file_name=file_name,
        mime_type=mime_type,
        uploaded_by=actor_id(auth),
    )

    now = iso_utc_now()
    before = str(task.status or "")
    task.documentId = doc.documentId
    if before == "pending":
        _set_task_status(task, "completed", auth=auth, now=now)
    task.updatedAt = now
    task.updatedBy = actor_id(auth)

    recompute_completion(db, row, now)
    _audit_task(db, row, "ONBOARDING_TASK_UPLOAD", task, auth=auth, now=now, before=before, meta={"documentId": doc.documentId})
    return {"documentId": doc.documentId, "task": serialize_task(task, tasks.index(task)), "onboarding": serialize_onboarding(db, row)}


def onboarding_task_upload(data, auth: AuthContext | None, db, cfg):
    row = get_onboarding_row(db, str_field(data, "onboardingId"), for_update=True)
    _ensure_own_onboarding(db, auth, row)
    _ensure_not_cancelled(row)

    raw = str_field(data, "fileBase64")
    if not raw:
        raise ApiError("BAD_REQUEST", "Missing file")
    try:
        blob = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise ApiError("BAD_REQUEST", "Invalid base64 file content")

    out = attach_task_document(
        db,
        row,
        (data or {}).get("taskIndex"),
        file_bytes=blob,
        file_name=str_field(data, "fileName") or "document",
        mime_type=str_field(data, "mimeType"),
        auth=auth,
        cfg=cfg,
    )
    out["message"] = "Document uploaded successfully"
    return out


def _whole_days_until(deadline: datetime, now: datetime) -> int:
    return int(math.ceil((deadline - now).total_seconds() / 86400.0))


def reminder_digest(tasks: list[OnboardingTask], now: datetime) -> tuple[list[dict], list[dict]]:
    """(overdue, upcoming) among the tasks that are not completed."""
    overdue: list[dict] = []
    upcoming: list[dict] = []
    for t in tasks:
        if str(t.status or "") == "completed":
            continue
        deadline = parse_datetime_maybe(t.deadline)
        if not deadline:
            continue
        if deadline < now:
            overdue.append({"name": str(t.name or ""), "department": str(t.department or "")})
            continue
        days_left = _whole_days_until(deadline, now)
        if 0 < days_left <= UPCOMING_WINDOW_DAYS:
            upcoming.append({"name": str(t.name or ""), "department": str(t.department or ""), "daysLeft": days_left})
    return overdue, upcoming


def _claim_reminder_slot(db, row: Onboarding, stamp: str) -> bool:
    """Compare-and-set on lastReminderAt; False when another sweep got there first."""
    res = db.execute(
        update(Onboarding)
        .where(Onboarding.onboardingId == row.onboardingId)
        .where(Onboarding.lastReminderAt == str(row.lastReminderAt or ""))
        .values(lastReminderAt=stamp)
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        return False
    row.lastReminderAt = stamp
    return True


def send_onboarding_reminders(db, cfg, *, force: bool = False, now: Optional[datetime] = None) -> dict[str, int]:
    current = now or datetime.now(timezone.utc)
    stamp = to_iso_utc(current)
    min_hours = setting_int(db, "ONBOARDING_REMINDER_MIN_HOURS", ONBOARDING_REMINDER_MIN_HOURS)

    rows = (
        db.execute(select(Onboarding).where(Onboarding.completed == False).where(Onboarding.cancelledAt == ""))  # noqa: E712
        .scalars()
        .all()
    )

    stats = {"checked": len(rows), "reminded": 0, "skipped": 0, "failed": 0}
    for row in rows:
        overdue, upcoming = reminder_digest(load_tasks(db, row.onboardingId), current)
        if not overdue and not upcoming:
            continue

        last = parse_datetime_maybe(row.lastReminderAt)
        if not force and last and current - last < timedelta(hours=min_hours):
            stats["skipped"] += 1
            continue
        if not _claim_reminder_slot(db, row, stamp):
            stats["skipped"] += 1
            continue

        try:
            emp = find_employee(db, row.employeeId)
            contact = contact_for_employee(emp)
            if not contact:
                logger.warning("onboarding reminder skipped: employee %s has no email", row.employeeId)
                stats["failed"] += 1
                continue
            enqueue_notification(
                db,
                type="onboarding_reminder",
                recipient=contact["email"],
                context={"employeeName": contact["name"], "overdueTasks": overdue, "upcomingTasks": upcoming},
                entity_type="ONBOARDING",
                entity_id=row.onboardingId,
            )
            stats["reminded"] += 1
        except Exception:
            logger.exception("onboarding reminder failed for %s", row.onboardingId)
            stats["failed"] += 1

    logger.info("onboarding reminders: %s", stats)
    return stats


def onboarding_send_reminders(data, auth: AuthContext | None, db, cfg):
    force = bool((data or {}).get("force"))
    out = send_onboarding_reminders(db, cfg, force=force)
    out["message"] = f"Sent {out['reminded']} onboarding reminder(s)"
    return out


def _provision_task(task: OnboardingTask, *, auth: Optional[AuthContext], now: str) -> None:
    _set_task_status(task, "completed", auth=auth, now=now)
    task.notes = append_note(task.notes, f"{_stamp(now)} System access provisioned automatically.")


def onboarding_provision_access(data, auth: AuthContext | None, db, cfg):
    _, row = _open_onboarding_for(db, data)
    tasks = load_tasks(db, row.onboardingId)
    task = _task_at(tasks, (data or {}).get("taskIndex"))
    if str(task.department or "") != IT:
        raise ApiError("BAD_REQUEST", "This method is only for IT tasks")

    now = iso_utc_now()
    before = str(task.status or "")
    _provision_task(task, auth=auth, now=now)
    recompute_completion(db, row, now)
    _audit_task(db, row, "ONBOARDING_PROVISION_ACCESS", task, auth=auth, now=now, before=before)
    return {"task": serialize_task(task, tasks.index(task)), "message": "System access provisioned successfully"}


def onboarding_reserve_equipment(data, auth: AuthContext | None, db, cfg):
    equipment_type = (data or {}).get("equipmentType")
    if not isinstance(equipment_type, str) or not equipment_type.strip():
        raise ApiError("BAD_REQUEST", "Equipment type is required and must be a non-empty string")
    details = (data or {}).get("details")
    if not isinstance(details, dict):
        raise ApiError("BAD_REQUEST", "Equipment details are required and must be an object")

    _, row = _open_onboarding_for(db, data, completed_msg="Cannot reserve equipment for a completed onboarding checklist")
    tasks = load_tasks(db, row.onboardingId)
    if not any(str(t.department or "") == ADMIN for t in tasks):
        raise ApiError("NOT_FOUND", "No Admin tasks found in onboarding checklist")

    kind = equipment_type.strip().lower()
    task_name = EQUIPMENT_TASKS.get(kind)
    if not task_name:
        raise ApiError("BAD_REQUEST", f"Invalid equipment type: {equipment_type}. Valid types: workspace, desk, access_card, badge")
    task = next((t for t in tasks if str(t.department or "") == ADMIN and str(t.name or "") == task_name), None)
    if not task:
        raise ApiError("NOT_FOUND", f"Task '{task_name}' not found in onboarding checklist")

    now = iso_utc_now()
    before = str(task.status or "")
    reserved = {"type": kind, **details}
    _set_task_status(task, "in_progress", auth=auth, now=now)
    task.notes = append_note(task.notes, f"{_stamp(now)} Reserved: {dumps_compact(reserved)}")
    recompute_completion(db, row, now)
    _audit_task(db, row, "ONBOARDING_RESERVE_EQUIPMENT", task, auth=auth, now=now, before=before, meta=reserved)
    return {"task": serialize_task(task, tasks.index(task)), "message": f"{equipment_type} reserved successfully"}


def reserved_equipment(db, employee_id: str) -> list[dict[str, Any]]:
    """Equipment reserved through reserve-equipment notes on the employee's Admin tasks."""
    row = onboarding_for_employee(db, employee_id)
    if not row:
        return []
    found: list[dict[str, Any]] = []
    for task in load_tasks(db, row.onboardingId):
        if str(task.department or "") != ADMIN:
            continue
        notes = str(task.notes or "")
        for match in _RESERVED_RE.finditer(notes):
            parsed = _json_at(notes, match.end())
            for item in parsed if isinstance(parsed, list) else [parsed]:
                if not isinstance(item, dict):
                    continue
                found.append(
                    {
                        "equipmentId": item.get("id") or item.get("equipmentId"),
                        "name": item.get("name") or item.get("type") or "Unknown",
                        "returned": False,
                        "condition": None,
                    }
                )
    return found


def _json_at(text: str, pos: int):
    """The JSON value starting at `pos`, or None."""
    try:
        value, _end = _JSON_DECODER.raw_decode(text, pos)
    except ValueError:
        return None
    return value


def annotate_equipment_returned(db, employee_id: str, returns: list, *, auth: Optional[AuthContext], now: str) -> bool:
    row = onboarding_for_employee(db, employee_id)
    if not row:
        return False
    for task in load_tasks(db, row.onboardingId):
        if str(task.department or "") == ADMIN:
            task.notes = append_note(task.notes, f"{_stamp(now)} Equipment returned: {dumps_compact(returns)}")
            task.updatedAt = now
            task.updatedBy = actor_id(auth)
    return True


def onboarding_schedule_access(data, auth: AuthContext | None, db, cfg):
    start = parse_datetime_maybe(str_field(data, "startDate"), cfg.APP_TIMEZONE)
    if not start:
        raise ApiError("BAD_REQUEST", "Invalid startDate format. Expected ISO 8601 date string.")
    today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    if start < today:
        raise ApiError("BAD_REQUEST", "Start date cannot be in the past")

    end = None
    raw_end = str_field(data, "endDate")
    if raw_end:
        end = parse_datetime_maybe(raw_end, cfg.APP_TIMEZONE)
        if not end:
            raise ApiError("BAD_REQUEST", "Invalid endDate format. Expected ISO 8601 date string.")
        if end <= start:
            raise ApiError("BAD_REQUEST", "End date must be after start date")

    _, row = _open_onboarding_for(db, data)
    it_tasks = [t for t in load_tasks(db, row.onboardingId) if str(t.department or "") == IT]
    if not it_tasks:
        raise ApiError("NOT_FOUND", "No IT tasks found in onboarding checklist. Cannot schedule access provisioning.")

    now = iso_utc_now()
    start_iso = to_iso_utc(start)
    scheduled = 0
    for task in it_tasks:
        deadline = parse_datetime_maybe(task.deadline)
        if deadline and deadline <= start:
            continue
        task.deadline = start_iso
        note = f"{_stamp(now)} Scheduled for automatic provisioning on {start_iso}"
        if end:
            note += f". Access revocation scheduled for {to_iso_utc(end)}"
        task.notes = append_note(task.notes, note)
        task.updatedAt = now
        task.updatedBy = actor_id(auth)
        scheduled += 1

    row.updatedAt = now
    append_audit(
        db,
        entityType="ONBOARDING",
        entityId=row.onboardingId,
        action="ONBOARDING_SCHEDULE_ACCESS",
        actor=auth,
        at=now,
        meta={"startDate": start_iso, "endDate": to_iso_utc(end) if end else "", "scheduledTasks": scheduled},
    )
    return {
        "startDate": start_iso,
        "endDate": to_iso_utc(end) if end else "",
        "scheduledTasks": scheduled,
        "message": "Access provisioning scheduled successfully",
    }


def _positive_amount(data: Any, key: str, message: str) -> float:
    raw = (data or {}).get(key)
    if isinstance(raw, bool):
        raise ApiError("BAD_REQUEST", message)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", message)
    if not math.isfinite(value) or value <= 0:
        raise ApiError("BAD_REQUEST", message)
    return value


def _hr_task_containing(tasks: list[OnboardingTask], needle: str) -> Optional[OnboardingTask]:
    n = needle.lower()
    return next((t for t in tasks if str(t.department or "") == HR and n in str(t.name or "").lower()), None)


def onboarding_trigger_payroll(data, auth: AuthContext | None, db, cfg):
    signed = parse_datetime_maybe(str_field(data, "contractSigningDate"), cfg.APP_TIMEZONE)
    if not signed:
        raise ApiError("BAD_REQUEST", "Invalid contract signing date format")
    gross = _positive_amount(data, "grossSalary", "Gross salary must be a positive number")

    _, row = _open_onboarding_for(db, data)
    tasks = load_tasks(db, row.onboardingId)
    task = _hr_task_containing(tasks, "payroll")
    if not task:
        raise ApiError("NOT_FOUND", "Payroll task not found in onboarding checklist")

    now = iso_utc_now()
    before = str(task.status or "")
    _set_task_status(task, "completed", auth=auth, now=now)
    task.notes = append_note(
        task.notes,
        f"{_stamp(now)} Payroll initiated automatically. Contract signed: {to_iso_utc(signed)}, Gross Salary: {gross:g}",
    )
    recompute_completion(db, row, now)
    _audit_task(db, row, "ONBOARDING_TRIGGER_PAYROLL", task, auth=auth, now=now, before=before, meta={"grossSalary": gross})
    return {
        "contractSigningDate": to_iso_utc(signed),
        "grossSalary": gross,
        "task": serialize_task(task, tasks.index(task)),
        "message": "Payroll initiation triggered successfully",
    }


def onboarding_process_bonus(data, auth: AuthContext | None, db, cfg):
    bonus = _positive_amount(data, "signingBonus", "Signing bonus must be a positive number")
    paid_on = ""
    raw_date = str_field(data, "paymentDate") or str_field(data, "contractSigningDate")
    if raw_date:
        dt = parse_datetime_maybe(raw_date, cfg.APP_TIMEZONE)
        if not dt:
            raise ApiError("BAD_REQUEST", "Invalid payment date format")
        paid_on = to_iso_utc(dt)

    _, row = _open_onboarding_for(db, data)
    tasks = load_tasks(db, row.onboardingId)
    task = _hr_task_containing(tasks, "signing bonus")
    if not task:
        raise ApiError("NOT_FOUND", "Signing bonus task not found in onboarding checklist")

    now = iso_utc_now()
    before = str(task.status or "")
    _set_task_status(task, "completed", auth=auth, now=now)
    note = f"{_stamp(now)} Signing bonus processed automatically. Amount: {bonus:g}"
    if paid_on:
        note += f", Payment date: {paid_on}"
    task.notes = append_note(task.notes, note)
    recompute_completion(db, row, now)
    _audit_task(db, row, "ONBOARDING_PROCESS_BONUS", task, auth=auth, now=now, before=before, meta={"signingBonus": bonus})
    return {
        "signingBonus": bonus,
        "paymentDate": paid_on,
        "task": serialize_task(task, tasks.index(task)),
        "message": "Signing bonus processed successfully",
    }


def onboarding_cancel(data, auth: AuthContext | None, db, cfg):
    reason = (data or {}).get("reason")
    if not isinstance(reason, str) or not reason.strip():
        raise ApiError("BAD_REQUEST", "Cancellation reason is required and must be a non-empty string")
    reason = reason.strip()

    emp, row = _open_onboarding_for(db, data, completed_msg="Cannot cancel a completed onboarding checklist")
    tasks = load_tasks(db, row.onboardingId)

    now = iso_utc_now()
    for task in tasks:
        if str(task.status or "") in {"pending", "in_progress"}:
            _set_task_status(task, "pending", auth=auth, now=now)
            task.notes = append_note(task.notes, f"{_stamp(now)} CANCELLED: {reason}")
    if tasks:
        tasks[0].notes = append_note(tasks[0].notes, f"{_stamp(now)} ONBOARDING CANCELLED: {reason}")

    row.cancelledAt = now
    row.cancelReason = reason
    row.updatedAt = now
    row.updatedBy = actor_id(auth)
    append_audit(
        db,
        entityType="ONBOARDING",
        entityId=row.onboardingId,
        action="ONBOARDING_CANCEL",
        fromState="open",
        toState="cancelled",
        actor=auth,
        at=now,
        remark=reason,
    )
    logger.info("onboarding %s cancelled for employee %s", row.onboardingId, emp.employeeId)
    return {
        "employeeId": str(emp.employeeId),
        "reason": reason,
        "onboarding": serialize_onboarding(db, row),
        "message": "Onboarding cancelled successfully",
    }


def provision_due_access(db, *, auth: Optional[AuthContext], now: Optional[datetime] = None) -> int:
    """Provision open IT tasks of every open onboarding whose employee has started."""
    current = now or datetime.now(timezone.utc)
    stamp = to_iso_utc(current)
    rows = (
        db.execute(select(Onboarding).where(Onboarding.completed == False).where(Onboarding.cancelledAt == ""))  # noqa: E712
        .scalars()
        .all()
    )

    provisioned = 0
    for row in rows:
        start = parse_datetime_maybe(row.startDate)
        if not start or start > current:
            continue
        opened = [t for t in load_tasks(db, row.onboardingId) if str(t.department or "") == IT and str(t.status or "") != "completed"]
        for task in opened:
            before = str(task.status or "")
            _provision_task(task, auth=auth, now=stamp)
            _audit_task(db, row, "ONBOARDING_AUTO_PROVISION", task, auth=auth, now=stamp, before=before)
            provisioned += 1
        if opened:
            recompute_completion(db, row, stamp)
    return provisioned

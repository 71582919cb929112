from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select

from actions.clearance import checklist_for_termination, create_clearance_for_termination, serialize_checklist
from actions.helpers import actor_id, append_audit, new_entity_id, str_field
from models import TerminationRequest
from services.directory import actor_employee_id, find_employee, latest_appraisal, resolve_employee, serialize_employee_brief
from utils import ApiError, AuthContext, iso_utc_now, json_loads_maybe, normalize_role, parse_datetime_maybe, to_iso_utc


TERMINATION_STATUSES = {"pending", "approved", "rejected"}
INITIATORS = {"employee", "hr", "manager"}

# Latest appraisal total score must be strictly below this for a performance termination.
PERFORMANCE_TERMINATION_THRESHOLD = 2.5


def serialize_termination(row: TerminationRequest) -> dict:
    return {
        "terminationId": str(row.terminationId or ""),
        "employeeId": str(row.employeeId or ""),
        "initiator": str(row.initiator or ""),
        "reason": str(row.reason or ""),
        "employeeComments": str(row.employeeComments or ""),
        "hrComments": str(row.hrComments or ""),
        "status": str(row.status or ""),
        "terminationDate": str(row.terminationDate or ""),
        "finalSettlement": json_loads_maybe(row.finalSettlementJson, None),
        "revocationLog": json_loads_maybe(row.revocationLogJson, []),
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def get_termination_row(db, termination_id: str, *, for_update: bool = False) -> TerminationRequest:
    tid = str(termination_id or "").strip()
    if not tid:
        raise ApiError("BAD_REQUEST", "Invalid termination request ID format")
    q = select(TerminationRequest).where(TerminationRequest.terminationId == tid)
    if for_update:
        q = q.with_for_update(of=TerminationRequest)
    row = db.execute(q).scalars().first()
    if not row:
        raise ApiError("NOT_FOUND", "Termination request not found.")
    return row


def _termination_date(data, app_timezone: str) -> str:
    raw = str_field(data, "terminationDate")
    if not raw:
        return ""
    dt = parse_datetime_maybe(raw, app_timezone)
    if not dt:
        raise ApiError("BAD_REQUEST", "Invalid termination date format. Expected ISO 8601 date string.")
    return to_iso_utc(dt)


def _performance_reason(db, emp) -> str:
    record = latest_appraisal(db, emp.employeeId)
    if not record:
        raise ApiError("FORBIDDEN", "Cannot terminate: employee has no appraisal record.")
    if record.totalScore is None:
        raise ApiError("FORBIDDEN", "Cannot terminate: appraisal has no total score.")
    if float(record.totalScore) >= PERFORMANCE_TERMINATION_THRESHOLD:
        raise ApiError("FORBIDDEN", "Cannot terminate: performance score is not low enough for termination.")
    return f"Termination due to poor performance (score: {record.totalScore:g})"


def termination_create(data, auth: AuthContext | None, db, cfg):
    if not str_field(data, "employeeId"):
        raise ApiError("BAD_REQUEST", "Employee ID (employeeNumber) is required and must be a non-empty string")
    initiator = str_field(data, "initiator").lower()
    if initiator not in INITIATORS:
        raise ApiError("BAD_REQUEST", "Invalid termination initiator. Must be one of: employee, hr, manager")

    emp = resolve_employee(db, str_field(data, "employeeId"))
    reason = str_field(data, "reason")

    if initiator == "employee":
        if actor_employee_id(db, auth) != str(emp.employeeId):
            raise ApiError("FORBIDDEN", "You can only submit a resignation for your own profile.")
    else:
        if normalize_role(getattr(auth, "role", "")) != "HR_MANAGER":
            raise ApiError("FORBIDDEN", "Only HR Manager can initiate termination based on performance.")
        default_reason = _performance_reason(db, emp)
        reason = reason or default_reason

    now = iso_utc_now()
    row = TerminationRequest(
        terminationId=new_entity_id(db, TerminationRequest.terminationId, "TRM"),
        employeeId=str(emp.employeeId),
        initiator=initiator,
        reason=reason,
        employeeComments=str_field(data, "employeeComments"),
        hrComments="",
        status="pending",
        terminationDate=_termination_date(data, cfg.APP_TIMEZONE),
        finalSettlementJson="",
        revocationLogJson="[]",
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(row)
    append_audit(
        db,
        entityType="TERMINATION",
        entityId=row.terminationId,
        action="TERMINATION_CREATE",
        toState="pending",
        actor=auth,
        at=now,
        remark=initiator,
        meta={"employeeId": row.employeeId},
    )
    return {"termination": serialize_termination(row), "message": "Termination request created"}


def termination_my_list(data, auth: AuthContext | None, db, cfg):
    emp_id = actor_employee_id(db, auth)
    if not emp_id or not find_employee(db, emp_id):
        raise ApiError("NOT_FOUND", "Employee profile not found")
    rows = (
        db.execute(select(TerminationRequest).where(TerminationRequest.employeeId == emp_id).order_by(TerminationRequest.createdAt.desc()))
        .scalars()
        .all()
    )
    return {"items": [serialize_termination(r) for r in rows], "total": len(rows)}


def termination_list(data, auth: AuthContext | None, db, cfg):
    status = str_field(data, "status").lower()
    q = select(TerminationRequest)
    if status:
        if status not in TERMINATION_STATUSES:
            raise ApiError("BAD_REQUEST", "Invalid termination status")
        q = q.where(TerminationRequest.status == status)
    rows = db.execute(q.order_by(TerminationRequest.createdAt.desc())).scalars().all()
    return {"items": [serialize_termination(r) for r in rows], "total": len(rows)}


def termination_get(data, auth: AuthContext | None, db, cfg):
    row = get_termination_row(db, str_field(data, "terminationId"))
    checklist = checklist_for_termination(db, row.terminationId)
    return {
        "termination": serialize_termination(row),
        "employee": serialize_employee_brief(find_employee(db, row.employeeId)),
        "checklist": serialize_checklist(db, checklist) if checklist else None,
    }


def termination_status_update(data, auth: AuthContext | None, db, cfg):
    status = str_field(data, "status").lower()
    if status not in TERMINATION_STATUSES:
        raise ApiError("BAD_REQUEST", "Invalid termination status")

    row = get_termination_row(db, str_field(data, "terminationId"), for_update=True)
    before = str(row.status or "")
    if before == "approved" and status != "approved":
        raise ApiError("INVALID_STATE", "Cannot change status of an approved termination request")

    now = iso_utc_now()
    row.status = status
    if "hrComments" in (data or {}):
        row.hrComments = str((data or {}).get("hrComments") or "")
    termination_date = _termination_date(data, cfg.APP_TIMEZONE)
    if termination_date:
        row.terminationDate = termination_date
    row.updatedAt = now
    row.updatedBy = actor_id(auth)
    append_audit(
        db,
        entityType="TERMINATION",
        entityId=row.terminationId,
        action="TERMINATION_STATUS_UPDATE",
        fromState=before,
        toState=status,
        actor=auth,
        at=now,
    )

    checklist = None
    if status == "approved":
        checklist = checklist_for_termination(db, row.terminationId)
        if not checklist:
            checklist = create_clearance_for_termination(db, row, auth=auth)

    return {
        "termination": serialize_termination(row),
        "checklist": serialize_checklist(db, checklist) if checklist else None,
        "message": f"Termination request {status}",
    }


def termination_details_update(data, auth: AuthContext | None, db, cfg):
    row = get_termination_row(db, str_field(data, "terminationId"), for_update=True)
    if str(row.status or "") == "approved":
        raise ApiError("INVALID_STATE", "Cannot edit details of an approved termination request")

    termination_date = _termination_date(data, cfg.APP_TIMEZONE)
    if termination_date and str(row.initiator or "") != "employee":
        if parse_datetime_maybe(termination_date) < datetime.now(timezone.utc):
            raise ApiError("BAD_REQUEST", "Termination date cannot be in the past for HR/Manager initiated terminations")

    payload = data or {}
    if "reason" in payload:
        reason = payload.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            raise ApiError("BAD_REQUEST", "Reason must be a non-empty string")
        row.reason = reason.strip()
    if "employeeComments" in payload:
        row.employeeComments = str(payload.get("employeeComments") or "")
    if "hrComments" in payload:
        row.hrComments = str(payload.get("hrComments") or "")
    if termination_date:
        row.terminationDate = termination_date

    now = iso_utc_now()
    row.updatedAt = now
    row.updatedBy = actor_id(auth)
    append_audit(db, entityType="TERMINATION", entityId=row.terminationId, action="TERMINATION_DETAILS_UPDATE", actor=auth, at=now)
    return {"termination": serialize_termination(row), "message": "Termination request updated"}


def appraisal_latest_get(data, auth: AuthContext | None, db, cfg):
    emp = resolve_employee(db, str_field(data, "employeeId"))
    record = latest_appraisal(db, emp.employeeId)
    if not record:
        raise ApiError("NOT_FOUND", "No appraisal record found for this employee.")
    return {
        "employee": serialize_employee_brief(emp),
        "appraisal": {
            "recordId": str(record.recordId or ""),
            "cycle": str(record.cycle or ""),
            "totalScore": record.totalScore,
            "ratingLabel": str(record.ratingLabel or ""),
            "createdAt": str(record.createdAt or ""),
        },
    }

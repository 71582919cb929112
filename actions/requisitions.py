from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select

from actions.helpers import actor_id, append_audit, new_entity_id, str_field
from models import Application, Requisition
from utils import ApiError, AuthContext, iso_utc_now, parse_datetime_maybe, to_iso_utc


PUBLISH_STATUSES = {"draft", "published", "closed"}

_PROGRESS = {
    "screening": 20,
    "shortlisting": 40,
    "department_interview": 50,
    "hr_interview": 60,
    "interview": 60,
    "offer": 80,
    "hired": 100,
    "submitted": 10,
    "in_process": 40,
}


def calculate_progress(stage_or_status: str) -> int:
    return _PROGRESS.get(str(stage_or_status or "").strip().lower(), 0)


def _serialize_requisition(row: Requisition) -> dict:
    return {
        "requisitionId": str(row.requisitionId or ""),
        "title": str(row.title or ""),
        "departmentId": str(row.departmentId or ""),
        "location": str(row.location or ""),
        "hiringManagerId": str(row.hiringManagerId or ""),
        "openings": int(row.openings or 0),
        "publishStatus": str(row.publishStatus or ""),
        "postingDate": str(row.postingDate or ""),
        "expiryDate": str(row.expiryDate or ""),
        "hiredCount": int(row.hiredCount or 0),
        "progress": int(row.progress or 0),
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def get_requisition_row(db, requisition_id: str) -> Requisition:
    rid = str(requisition_id or "").strip()
    if not rid:
        raise ApiError("BAD_REQUEST", "Missing requisitionId")
    row = db.execute(select(Requisition).where(Requisition.requisitionId == rid)).scalar_one_or_none()
    if not row:
        raise ApiError("NOT_FOUND", "Job Requisition not found")
    return row


def lock_requisition(db, requisition_id: str) -> Requisition:
    """Row lock serializes hires and applications against the openings count."""
    row = (
        db.execute(
            select(Requisition).where(Requisition.requisitionId == str(requisition_id or "")).with_for_update(of=Requisition)
        )
        .scalars()
        .first()
    )
    if not row:
        raise ApiError("NOT_FOUND", "Job Requisition not found")
    return row


def count_hired(db, requisition_id: str) -> int:
    return int(
        db.execute(
            select(func.count())
            .select_from(Application)
            .where(Application.requisitionId == str(requisition_id or ""))
            .where(Application.status == "hired")
        ).scalar()
        or 0
    )


def is_expired(row: Requisition, now: datetime | None = None) -> bool:
    exp = parse_datetime_maybe(row.expiryDate)
    if not exp:
        return False
    return exp < (now or datetime.now(timezone.utc))


def refresh_fill_state(db, req: Requisition, *, auth: AuthContext | None, now: str) -> bool:
    """
    Recompute hired count and progress; close the requisition once every opening is filled.

    Returns True when this call closed it.
    """

    db.flush()
    hired = count_hired(db, req.requisitionId)
    req.hiredCount = hired

    progresses = (
        db.execute(select(Application.progress).where(Application.requisitionId == req.requisitionId)).scalars().all()
    )
    req.progress = max([int(p or 0) for p in progresses] or [0])
    req.updatedAt = now
    req.updatedBy = actor_id(auth)

    if hired >= int(req.openings or 0) and str(req.publishStatus or "") != "closed":
        before = str(req.publishStatus or "")
        req.publishStatus = "closed"
        req.latestRemark = "All positions filled"
        append_audit(
            db,
            entityType="REQUISITION",
            entityId=req.requisitionId,
            action="REQUISITION_AUTO_CLOSE",
            fromState=before,
            toState="closed",
            actor=auth,
            at=now,
            remark=f"hired={hired} openings={req.openings}",
        )
        return True
    return False


def _parse_openings(value) -> int:
    if isinstance(value, bool):
        raise ApiError("BAD_REQUEST", "Openings must be a positive integer")
    try:
        openings = int(value)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "Openings must be a positive integer")
    if isinstance(value, float) and not float(value).is_integer():
        raise ApiError("BAD_REQUEST", "Openings must be a positive integer")
    if openings <= 0:
        raise ApiError("BAD_REQUEST", "Openings must be a positive integer")
    return openings


def requisition_create(data, auth: AuthContext | None, db, cfg):
    title = str_field(data, "title")
    if not title:
        raise ApiError("BAD_REQUEST", "Title must be a non-empty string")
    openings = _parse_openings((data or {}).get("openings"))

    expiry = ""
    raw_expiry = str_field(data, "expiryDate")
    if raw_expiry:
        exp_dt = parse_datetime_maybe(raw_expiry, cfg.APP_TIMEZONE)
        if not exp_dt:
            raise ApiError("BAD_REQUEST", "Invalid expiryDate format. Expected ISO 8601 date string.")
        expiry = to_iso_utc(exp_dt)

    now = iso_utc_now()
    row = Requisition(
        requisitionId=new_entity_id(db, Requisition.requisitionId, "REQ"),
        title=title,
        departmentId=str_field(data, "departmentId"),
        location=str_field(data, "location"),
        hiringManagerId=str_field(data, "hiringManagerId"),
        openings=openings,
        publishStatus="draft",
        postingDate="",
        expiryDate=expiry,
        hiredCount=0,
        progress=0,
        latestRemark="",
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(row)
    append_audit(db, entityType="REQUISITION", entityId=row.requisitionId, action="REQUISITION_CREATE", toState="draft", actor=auth, at=now)
    return {"requisition": _serialize_requisition(row), "message": "Job requisition created"}


def requisition_publish(data, auth: AuthContext | None, db, cfg):
    req = lock_requisition(db, get_requisition_row(db, str_field(data, "requisitionId")).requisitionId)

    if str(req.publishStatus or "") == "closed":
        raise ApiError("INVALID_STATE", "Cannot publish a closed job requisition")
    if int(req.openings or 0) <= 0:
        raise ApiError("BAD_REQUEST", "Cannot publish job requisition: Number of openings must be greater than 0")

    now = iso_utc_now()
    before = str(req.publishStatus or "")
    req.publishStatus = "published"
    req.postingDate = now
    req.updatedAt = now
    req.updatedBy = actor_id(auth)
    append_audit(
        db, entityType="REQUISITION", entityId=req.requisitionId, action="REQUISITION_PUBLISH", fromState=before, toState="published", actor=auth, at=now
    )
    return {"requisition": _serialize_requisition(req), "message": "Job requisition published"}


def requisition_status_update(data, auth: AuthContext | None, db, cfg):
    status = str_field(data, "status").lower()
    if not status:
        raise ApiError("BAD_REQUEST", "Invalid status value")

    req = lock_requisition(db, get_requisition_row(db, str_field(data, "requisitionId")).requisitionId)
    before = str(req.publishStatus or "")
    now = iso_utc_now()

    if status == "approved":
        if before == "draft":
            req.publishStatus = "published"
            req.postingDate = now
    elif status == "closed":
        req.publishStatus = "closed"
    elif status == "published":
        return requisition_publish({"requisitionId": req.requisitionId}, auth, db, cfg)
    else:
        raise ApiError("BAD_REQUEST", "Invalid status value")

    req.latestRemark = str_field(data, "remark") or req.latestRemark
    req.updatedAt = now
    req.updatedBy = actor_id(auth)
    append_audit(
        db,
        entityType="REQUISITION",
        entityId=req.requisitionId,
        action="REQUISITION_STATUS_UPDATE",
        fromState=before,
        toState=str(req.publishStatus or ""),
        actor=auth,
        at=now,
        remark=status,
    )
    return {"requisition": _serialize_requisition(req), "message": f"Job requisition status: {req.publishStatus}"}


def requisition_get(data, auth: AuthContext | None, db, cfg):
    row = get_requisition_row(db, str_field(data, "requisitionId"))
    return {"requisition": _serialize_requisition(row)}


def requisition_list(data, auth: AuthContext | None, db, cfg):
    status = str_field(data, "publishStatus").lower()
    q = select(Requisition)
    if status:
        if status not in PUBLISH_STATUSES:
            raise ApiError("BAD_REQUEST", "Invalid publishStatus")
        q = q.where(Requisition.publishStatus == status)
    rows = db.execute(q.order_by(Requisition.createdAt.desc())).scalars().all()
    return {"items": [_serialize_requisition(r) for r in rows], "total": len(rows)}

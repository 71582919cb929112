from __future__ import annotations

from typing import Optional

from sqlalchemy import select

from actions.helpers import actor_id, append_audit, flush_or_conflict, new_entity_id, str_field
from actions.requisitions import calculate_progress, count_hired, is_expired, lock_requisition, refresh_fill_state
from models import Application, ApplicationHistory, Candidate, Referral
from services.directory import actor_candidate_id, contact_for_candidate, find_employee
from services.notifications import enqueue_notification
from utils import ApiError, AuthContext, iso_utc_now, normalize_role


APPLICATION_STATUSES = {"submitted", "in_process", "offer", "hired", "rejected"}
APPLICATION_STAGES = {"screening", "department_interview", "hr_interview", "offer"}

# Forward-only order; "rejected" sits outside it and is reachable from any open state.
STATUS_ORDER = ["submitted", "in_process", "offer", "hired"]
TERMINAL_STATUSES = {"rejected", "hired"}


def serialize_application(row: Application) -> dict:
    return {
        "applicationId": str(row.applicationId or ""),
        "candidateId": str(row.candidateId or ""),
        "requisitionId": str(row.requisitionId or ""),
        "status": str(row.status or ""),
        "currentStage": str(row.currentStage or ""),
        "progress": int(row.progress or 0),
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def _serialize_history(row: ApplicationHistory) -> dict:
    return {
        "oldStage": str(row.oldStage or ""),
        "newStage": str(row.newStage or ""),
        "oldStatus": str(row.oldStatus or ""),
        "newStatus": str(row.newStatus or ""),
        "changedBy": str(row.changedBy or ""),
        "changedAt": str(row.changedAt or ""),
        "remark": str(row.remark or ""),
    }


def get_application_row(db, application_id: str, *, for_update: bool = False) -> Application:
    aid = str(application_id or "").strip()
    if not aid:
        raise ApiError("BAD_REQUEST", "Missing applicationId")
    q = select(Application).where(Application.applicationId == aid)
    if for_update:
        q = q.with_for_update(of=Application)
    row = db.execute(q).scalars().first()
    if not row:
        raise ApiError("NOT_FOUND", "Application not found")
    return row


def derive_stage(current_stage: str, new_status: str) -> str:
    if new_status == "rejected":
        return "screening"
    if new_status == "in_process":
        return "department_interview" if current_stage == "screening" else current_stage
    if new_status in {"offer", "hired"}:
        return "offer"
    return current_stage


def _history(db, app: Application, *, old_stage: str, old_status: str, auth: AuthContext | None, at: str, remark: str = "") -> None:
    db.add(
        ApplicationHistory(
            applicationId=app.applicationId,
            oldStage=old_stage,
            newStage=str(app.currentStage or ""),
            oldStatus=old_status,
            newStatus=str(app.status or ""),
            changedBy=actor_id(auth),
            changedAt=at,
            remark=remark,
        )
    )


def _notify_candidate(db, app: Application) -> None:
    contact = contact_for_candidate(db, app.candidateId)
    enqueue_notification(
        db,
        type="application_status",
        recipient=(contact or {}).get("email", ""),
        context={"candidateName": (contact or {}).get("name", "Candidate"), "status": app.status, "stage": app.currentStage},
        entity_type="APPLICATION",
        entity_id=app.applicationId,
    )


def change_application_status(
    db, app: Application, new_status: str, *, auth: AuthContext | None, remark: str = ""
) -> Optional[dict]:
    """
    Apply one validated status transition to a locked application.

    Returns the transition summary, or None when the status is unchanged.
    """

    status = str(new_status or "").strip().lower()
    if status not in APPLICATION_STATUSES:
        raise ApiError("BAD_REQUEST", f"Invalid application status: {new_status}")

    old_status = str(app.status or "")
    old_stage = str(app.currentStage or "")

    if old_status == "rejected" and status != "rejected":
        raise ApiError(
            "INVALID_STATE", "Cannot change status of a rejected application. Rejected applications cannot be reactivated."
        )
    if old_status == "hired" and status != "hired":
        raise ApiError("INVALID_STATE", "Cannot change status of a hired application. Hired applications are final.")
    if old_status == status:
        return None

    if status != "rejected" and old_status in STATUS_ORDER and STATUS_ORDER.index(status) < STATUS_ORDER.index(old_status):
        raise ApiError(
            "INVALID_STATE",
            f"Invalid status transition: Cannot change from {old_status} to {status}. Status can only progress forward in the workflow.",
        )

    req = lock_requisition(db, app.requisitionId)
    if status == "hired" and count_hired(db, req.requisitionId) >= int(req.openings or 0):
        raise ApiError(
            "CAPACITY_FULL",
            f"All {req.openings} position(s) for this requisition have been filled. No more candidates can be hired.",
        )

    now = iso_utc_now()
    app.status = status
    app.currentStage = derive_stage(old_stage, status)
    app.progress = calculate_progress("hired" if status == "hired" else app.currentStage)
    app.updatedAt = now
    app.updatedBy = actor_id(auth)

    _history(db, app, old_stage=old_stage, old_status=old_status, auth=auth, at=now, remark=remark)
    append_audit(
        db,
        entityType="APPLICATION",
        entityId=app.applicationId,
        action="APPLICATION_STATUS_CHANGE",
        fromState=old_status,
        toState=status,
        actor=auth,
        at=now,
        remark=remark,
        before={"status": old_status, "stage": old_stage},
        after={"status": status, "stage": app.currentStage},
    )
    _notify_candidate(db, app)

    closed = refresh_fill_state(db, req, auth=auth, now=now)
    return {"oldStatus": old_status, "newStatus": status, "requisitionClosed": closed}


def application_submit(data, auth: AuthContext | None, db, cfg):
    role = normalize_role(getattr(auth, "role", ""))
    candidate_id = str_field(data, "candidateId")
    if role == "CANDIDATE":
        own = actor_candidate_id(db, auth)
        if not own or (candidate_id and candidate_id != own):
            raise ApiError("FORBIDDEN", "Candidates can only apply on their own behalf")
        candidate_id = own
    if not candidate_id:
        raise ApiError("BAD_REQUEST", "Missing candidateId")

    if (data or {}).get("consent") is not True:
        raise ApiError(
            "BAD_REQUEST",
            "Applicant consent for data processing is required before storing application. Please provide consent first.",
        )

    cand = db.execute(select(Candidate).where(Candidate.candidateId == candidate_id)).scalar_one_or_none()
    if not cand:
        raise ApiError("NOT_FOUND", "Candidate not found")

    requisition_id = str_field(data, "requisitionId")
    if not requisition_id:
        raise ApiError("BAD_REQUEST", "Missing requisitionId")
    req = lock_requisition(db, requisition_id)

    openings = int(req.openings or 0)
    if count_hired(db, req.requisitionId) >= openings:
        raise ApiError(
            "CAPACITY_FULL",
            f"All {openings} position(s) for this requisition have been filled. No more applications are being accepted.",
        )
    if str(req.publishStatus or "") == "closed":
        raise ApiError("INVALID_STATE", "Cannot apply to a closed job requisition")
    if str(req.publishStatus or "") != "published":
        raise ApiError("INVALID_STATE", "Cannot apply to a job that is not published")
    if is_expired(req):
        raise ApiError("INVALID_STATE", "Cannot apply to an expired job requisition")

    duplicate = (
        db.execute(
            select(Application.applicationId)
            .where(Application.candidateId == candidate_id)
            .where(Application.requisitionId == req.requisitionId)
        )
        .scalars()
        .first()
    )
    if duplicate:
        raise ApiError("CONFLICT", "You have already applied to this position")

    now = iso_utc_now()
    app = Application(
        applicationId=new_entity_id(db, Application.applicationId, "APP"),
        candidateId=candidate_id,
        requisitionId=req.requisitionId,
        status="submitted",
        currentStage="screening",
        progress=calculate_progress("screening"),
        consentAt=now,
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(app)
    flush_or_conflict(db, "You have already applied to this position")

    _history(db, app, old_stage="", old_status="", auth=auth, at=now, remark="Application submitted")
    append_audit(db, entityType="APPLICATION", entityId=app.applicationId, action="APPLICATION_SUBMIT", toState="submitted", actor=auth, at=now)
    refresh_fill_state(db, req, auth=auth, now=now)

    return {"application": serialize_application(app), "message": "Application submitted"}


def application_status_update(data, auth: AuthContext | None, db, cfg):
    app = get_application_row(db, str_field(data, "applicationId"), for_update=True)
    result = change_application_status(db, app, str_field(data, "status"), auth=auth, remark=str_field(data, "remark"))
    if result is None:
        return {"application": serialize_application(app), "message": "Status unchanged"}
    return {
        "application": serialize_application(app),
        "requisitionClosed": result["requisitionClosed"],
        "message": f"Application status changed from {result['oldStatus']} to {result['newStatus']}",
    }


def application_list(data, auth: AuthContext | None, db, cfg):
    q = select(Application)
    requisition_id = str_field(data, "requisitionId")
    candidate_id = str_field(data, "candidateId")
    status = str_field(data, "status").lower()
    if requisition_id:
        q = q.where(Application.requisitionId == requisition_id)
    if candidate_id:
        q = q.where(Application.candidateId == candidate_id)
    if status:
        if status not in APPLICATION_STATUSES:
            raise ApiError("BAD_REQUEST", f"Invalid application status: {status}")
        q = q.where(Application.status == status)
    rows = db.execute(q.order_by(Application.createdAt.asc())).scalars().all()
    return {"items": [serialize_application(r) for r in rows], "total": len(rows)}


def application_history_get(data, auth: AuthContext | None, db, cfg):
    app = get_application_row(db, str_field(data, "applicationId"))
    rows = (
        db.execute(
            select(ApplicationHistory)
            .where(ApplicationHistory.applicationId == app.applicationId)
            .order_by(ApplicationHistory.id.asc())
        )
        .scalars()
        .all()
    )
    return {"applicationId": app.applicationId, "items": [_serialize_history(r) for r in rows]}


def referral_tag(data, auth: AuthContext | None, db, cfg):
    candidate_id = str_field(data, "candidateId")
    employee_id = str_field(data, "referringEmployeeId")
    if not candidate_id:
        raise ApiError("BAD_REQUEST", "Missing candidateId")
    if not employee_id:
        raise ApiError("BAD_REQUEST", "Missing referringEmployeeId")

    if not db.execute(select(Candidate.candidateId).where(Candidate.candidateId == candidate_id)).scalars().first():
        raise ApiError("NOT_FOUND", "Candidate not found")
    if not find_employee(db, employee_id):
        raise ApiError("NOT_FOUND", "Referring employee not found")

    msg = "Candidate is already tagged as a referral by this employee"
    existing = (
        db.execute(
            select(Referral.id).where(Referral.candidateId == candidate_id).where(Referral.referringEmployeeId == employee_id)
        )
        .scalars()
        .first()
    )
    if existing:
        raise ApiError("CONFLICT", msg)

    now = iso_utc_now()
    row = Referral(
        candidateId=candidate_id,
        referringEmployeeId=employee_id,
        role=str_field(data, "role"),
        level=str_field(data, "level"),
        createdAt=now,
        createdBy=actor_id(auth),
    )
    db.add(row)
    flush_or_conflict(db, msg)
    append_audit(db, entityType="CANDIDATE", entityId=candidate_id, action="REFERRAL_TAG", actor=auth, at=now, meta={"referringEmployeeId": employee_id})
    return {"referral": _serialize_referral(row), "message": "Candidate tagged as referral"}


def _serialize_referral(row: Referral) -> dict:
    return {
        "candidateId": str(row.candidateId or ""),
        "referringEmployeeId": str(row.referringEmployeeId or ""),
        "role": str(row.role or ""),
        "level": str(row.level or ""),
        "createdAt": str(row.createdAt or ""),
    }


def referral_list(data, auth: AuthContext | None, db, cfg):
    candidate_id = str_field(data, "candidateId")
    if not candidate_id:
        raise ApiError("BAD_REQUEST", "Missing candidateId")
    rows = db.execute(select(Referral).where(Referral.candidateId == candidate_id).order_by(Referral.id.asc())).scalars().all()
    return {"items": [_serialize_referral(r) for r in rows]}

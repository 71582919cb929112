from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from actions.applications import TERMINAL_STATUSES, get_application_row, serialize_application
from actions.helpers import actor_id, append_audit, dumps_compact, flush_or_conflict, new_entity_id, str_field
from actions.requisitions import calculate_progress, get_requisition_row, lock_requisition, refresh_fill_state
from models import Application, Interview, InterviewFeedback, Referral
from services.directory import actor_employee_id, contact_for_candidate, contact_for_employee, find_employee
from services.notifications import enqueue_notification
from utils import ApiError, AuthContext, iso_utc_now, json_loads_maybe, parse_datetime_maybe, to_iso_utc


logger = logging.getLogger("api")

INTERVIEW_STAGES = {"screening", "department_interview", "hr_interview"}
INTERVIEW_METHODS = {"onsite", "video", "phone"}
INTERVIEW_STATUSES = {"scheduled", "completed", "cancelled"}

REFERRAL_BONUS = 10


def _panel(row: Interview) -> list[str]:
    raw = json_loads_maybe(row.panelJson, [])
    return [str(x) for x in raw] if isinstance(raw, list) else []


def _serialize_interview(row: Interview) -> dict:
    return {
        "interviewId": str(row.interviewId or ""),
        "applicationId": str(row.applicationId or ""),
        "stage": str(row.stage or ""),
        "scheduledDate": str(row.scheduledDate or ""),
        "method": str(row.method or ""),
        "videoLink": str(row.videoLink or ""),
        "panel": _panel(row),
        "status": str(row.status or ""),
        "createdAt": str(row.createdAt or ""),
    }


def _serialize_feedback(row: InterviewFeedback) -> dict:
    return {
        "interviewId": str(row.interviewId or ""),
        "interviewerId": str(row.interviewerId or ""),
        "score": float(row.score or 0),
        "comments": str(row.comments or ""),
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def _get_interview(db, interview_id: str, *, for_update: bool = False) -> Interview:
    iid = str(interview_id or "").strip()
    if not iid:
        raise ApiError("BAD_REQUEST", "Missing interviewId")
    q = select(Interview).where(Interview.interviewId == iid)
    if for_update:
        q = q.with_for_update(of=Interview)
    row = db.execute(q).scalars().first()
    if not row:
        raise ApiError("NOT_FOUND", "Interview not found")
    return row


def _add_one_year(dt: datetime) -> datetime:
    try:
        return dt.replace(year=dt.year + 1)
    except ValueError:
        # Feb 29
        return dt.replace(year=dt.year + 1, day=28)


def interview_schedule(data, auth: AuthContext | None, db, cfg):
    app = get_application_row(db, str_field(data, "applicationId"), for_update=True)
    if app.status == "rejected":
        raise ApiError("INVALID_STATE", "Cannot schedule interview for a rejected application")
    if app.status == "hired":
        raise ApiError("INVALID_STATE", "Cannot schedule interview for a hired candidate")

    stage = str_field(data, "stage").lower()
    if stage not in INTERVIEW_STAGES:
        raise ApiError("BAD_REQUEST", f"Invalid interview stage: {stage or '(empty)'}")

    method = str_field(data, "method").lower()
    if method and method not in INTERVIEW_METHODS:
        raise ApiError("BAD_REQUEST", f"Invalid interview method: {method}")

    scheduled = parse_datetime_maybe(str_field(data, "scheduledDate"), cfg.APP_TIMEZONE)
    if not scheduled:
        raise ApiError("BAD_REQUEST", "Invalid scheduledDate format. Expected ISO 8601 date string.")
    now_dt = datetime.now(timezone.utc)
    if scheduled <= now_dt:
        raise ApiError("BAD_REQUEST", "Interview date must be in the future")
    if scheduled > _add_one_year(now_dt):
        raise ApiError("BAD_REQUEST", "Interview date cannot be more than 1 year in the future")

    duplicate_msg = (
        f"An interview for stage '{stage}' already exists for this application. "
        "Please update the existing interview or cancel it first."
    )
    active = (
        db.execute(
            select(Interview.interviewId)
            .where(Interview.applicationId == app.applicationId)
            .where(Interview.stage == stage)
            .where(Interview.status != "cancelled")
        )
        .scalars()
        .first()
    )
    if active:
        raise ApiError("CONFLICT", duplicate_msg)

    panel_members = []
    raw_panel = (data or {}).get("panel")
    if raw_panel is not None:
        if not isinstance(raw_panel, list) or not raw_panel:
            raise ApiError("BAD_REQUEST", "Panel must have at least one member")
        seen = set()
        for pid in raw_panel:
            key = str(pid or "").strip()
            emp = find_employee(db, key) if key else None
            if not emp:
                raise ApiError("BAD_REQUEST", f"Invalid panel member ID: {pid}")
            if key not in seen:
                seen.add(key)
                panel_members.append(emp)

    now = to_iso_utc(now_dt)
    row = Interview(
        interviewId=new_entity_id(db, Interview.interviewId, "INT"),
        applicationId=app.applicationId,
        stage=stage,
        scheduledDate=to_iso_utc(scheduled),
        method=method,
        videoLink=str_field(data, "videoLink"),
        panelJson=dumps_compact([e.employeeId for e in panel_members]),
        status="scheduled",
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(row)
    flush_or_conflict(db, duplicate_msg)

    app.currentStage = stage
    app.progress = calculate_progress(stage)
    app.updatedAt = now
    app.updatedBy = actor_id(auth)
    req = lock_requisition(db, app.requisitionId)
    refresh_fill_state(db, req, auth=auth, now=now)

    append_audit(
        db,
        entityType="INTERVIEW",
        entityId=row.interviewId,
        action="INTERVIEW_SCHEDULE",
        toState="scheduled",
        actor=auth,
        at=now,
        meta={"applicationId": app.applicationId, "stage": stage, "panel": [e.employeeId for e in panel_members]},
    )

    candidate = contact_for_candidate(db, app.candidateId)
    context = {
        "candidateName": (candidate or {}).get("name", "Candidate"),
        "interviewDate": row.scheduledDate,
        "method": method or "TBD",
        "videoLink": row.videoLink,
        "position": str(req.title or "Position"),
    }
    enqueue_notification(
        db,
        type="interview_scheduled",
        recipient=(candidate or {}).get("email", ""),
        context=context,
        entity_type="INTERVIEW",
        entity_id=row.interviewId,
    )
    for emp in panel_members:
        contact = contact_for_employee(emp)
        if not contact:
            logger.warning("panel member %s has no email address; invitation skipped", emp.employeeId)
            continue
        enqueue_notification(
            db,
            type="panel_invitation",
            recipient=contact["email"],
            context=dict(context, panelMemberName=contact["name"]),
            entity_type="INTERVIEW",
            entity_id=row.interviewId,
        )

    return {"interview": _serialize_interview(row), "application": serialize_application(app), "message": "Interview scheduled"}


def interview_status_update(data, auth: AuthContext | None, db, cfg):
    row = _get_interview(db, str_field(data, "interviewId"), for_update=True)
    status = str_field(data, "status").lower()
    if status not in INTERVIEW_STATUSES:
        raise ApiError("BAD_REQUEST", f"Invalid interview status: {status or '(empty)'}")

    before = str(row.status or "")
    if before == "completed" and status != "completed":
        raise ApiError("INVALID_STATE", "Cannot change status of a completed interview")
    if before == "cancelled" and status != "cancelled":
        raise ApiError("INVALID_STATE", "Cannot change status of a cancelled interview. Please schedule a new interview.")

    now = iso_utc_now()
    row.status = status
    row.updatedAt = now
    row.updatedBy = actor_id(auth)
    if before != status:
        append_audit(db, entityType="INTERVIEW", entityId=row.interviewId, action="INTERVIEW_STATUS_UPDATE", fromState=before, toState=status, actor=auth, at=now)
    return {"interview": _serialize_interview(row), "message": f"Interview {status}"}


def interview_feedback_submit(data, auth: AuthContext | None, db, cfg):
    raw_score = (data or {}).get("score")
    if isinstance(raw_score, bool):
        raise ApiError("BAD_REQUEST", "Score must be between 0 and 100")
    try:
        score = float(raw_score)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "Score must be between 0 and 100")
    if score != score or score < 0 or score > 100:
        raise ApiError("BAD_REQUEST", "Score must be between 0 and 100")

    row = _get_interview(db, str_field(data, "interviewId"))
    if row.status == "cancelled":
        raise ApiError("INVALID_STATE", "Cannot submit feedback for a cancelled interview")
    if not str(row.scheduledDate or "").strip():
        raise ApiError("INVALID_STATE", "Interview has not been scheduled yet")

    panel = _panel(row)
    if not panel:
        raise ApiError("INVALID_STATE", "Interview panel is empty. Cannot submit feedback without panel members.")
    interviewer_id = actor_employee_id(db, auth)
    if not interviewer_id or interviewer_id not in panel:
        raise ApiError("FORBIDDEN", "Interviewer is not part of the interview panel")

    now = iso_utc_now()
    comments = str_field(data, "comments")
    existing = (
        db.execute(
            select(InterviewFeedback)
            .where(InterviewFeedback.interviewId == row.interviewId)
            .where(InterviewFeedback.interviewerId == interviewer_id)
            .with_for_update(of=InterviewFeedback)
        )
        .scalars()
        .first()
    )
    if existing:
        existing.score = score
        existing.comments = comments
        existing.updatedAt = now
        fb = existing
        message = "Feedback updated"
    else:
        fb = InterviewFeedback(
            interviewId=row.interviewId,
            interviewerId=interviewer_id,
            score=score,
            comments=comments,
            createdAt=now,
            updatedAt=now,
        )
        db.add(fb)
        flush_or_conflict(db, "Feedback was submitted concurrently; please retry")
        message = "Feedback submitted"

    append_audit(
        db,
        entityType="INTERVIEW",
        entityId=row.interviewId,
        action="INTERVIEW_FEEDBACK_SUBMIT",
        actor=auth,
        at=now,
        meta={"interviewerId": interviewer_id, "score": score},
    )
    return {"feedback": _serialize_feedback(fb), "message": message}


def average_score(db, interview_id: str) -> float:
    scores = db.execute(select(InterviewFeedback.score).where(InterviewFeedback.interviewId == interview_id)).scalars().all()
    if not scores:
        return 0.0
    return sum(float(s or 0) for s in scores) / len(scores)


def interview_feedback_get(data, auth: AuthContext | None, db, cfg):
    row = _get_interview(db, str_field(data, "interviewId"))
    items = (
        db.execute(select(InterviewFeedback).where(InterviewFeedback.interviewId == row.interviewId).order_by(InterviewFeedback.id.asc()))
        .scalars()
        .all()
    )
    return {"interviewId": row.interviewId, "items": [_serialize_feedback(f) for f in items]}


def interview_score_get(data, auth: AuthContext | None, db, cfg):
    row = _get_interview(db, str_field(data, "interviewId"))
    return {"interviewId": row.interviewId, "averageScore": average_score(db, row.interviewId)}


def rank_applications(db, requisition_id: str) -> list[dict]:
    """
    rankingScore = best interview average + REFERRAL_BONUS for referred candidates.

    Sorted by rankingScore descending; ties go to the earlier application.
    """

    apps = (
        db.execute(
            select(Application)
            .where(Application.requisitionId == requisition_id)
            .order_by(Application.createdAt.asc(), Application.applicationId.asc())
        )
        .scalars()
        .all()
    )
    if not apps:
        return []

    app_ids = [a.applicationId for a in apps]
    best: dict[str, float] = {}
    for iv in db.execute(select(Interview).where(Interview.applicationId.in_(app_ids))).scalars().all():
        avg = average_score(db, iv.interviewId)
        if avg > best.get(iv.applicationId, 0.0):
            best[iv.applicationId] = avg

    referred = set(
        db.execute(select(Referral.candidateId).where(Referral.candidateId.in_([a.candidateId for a in apps]))).scalars().all()
    )

    ranked = []
    for a in apps:
        avg = best.get(a.applicationId, 0.0)
        is_referral = a.candidateId in referred
        item = serialize_application(a)
        item.update(
            {
                "averageScore": avg,
                "isReferral": is_referral,
                "rankingScore": avg + (REFERRAL_BONUS if is_referral else 0),
            }
        )
        ranked.append(item)

    # Stable sort keeps the createdAt order among equal scores.
    ranked.sort(key=lambda x: -x["rankingScore"])
    return ranked


def application_ranked(data, auth: AuthContext | None, db, cfg):
    req = get_requisition_row(db, str_field(data, "requisitionId"))
    items = rank_applications(db, req.requisitionId)
    return {"requisitionId": req.requisitionId, "items": items, "activeCount": len([i for i in items if i["status"] not in TERMINAL_STATUSES])}

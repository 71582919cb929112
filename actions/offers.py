from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select

from actions.applications import change_application_status, get_application_row, serialize_application
from actions.helpers import actor_id, append_audit, dumps_compact, flush_or_conflict, new_entity_id, str_field
from actions.onboarding import create_onboarding_for_employee, serialize_onboarding
from models import Candidate, Employee, Offer, User
from services.directory import actor_candidate_id, contact_for_candidate, serialize_employee_brief
from services.notifications import enqueue_notification
from utils import ApiError, AuthContext, iso_utc_now, json_loads_maybe, normalize_role, parse_datetime_maybe, to_iso_utc


RESPONSES = {"pending", "accepted", "rejected"}
FINAL_STATUSES = {"pending", "approved", "rejected"}


def serialize_offer(row: Offer) -> dict:
    return {
        "offerId": str(row.offerId or ""),
        "applicationId": str(row.applicationId or ""),
        "candidateId": str(row.candidateId or ""),
        "role": str(row.role or ""),
        "grossSalary": float(row.grossSalary or 0),
        "signingBonus": float(row.signingBonus or 0),
        "benefits": json_loads_maybe(row.benefitsJson, []),
        "conditions": str(row.conditions or ""),
        "insurances": str(row.insurances or ""),
        "content": str(row.content or ""),
        "deadline": str(row.deadline or ""),
        "applicantResponse": str(row.applicantResponse or ""),
        "finalStatus": str(row.finalStatus or ""),
        "candidateSignedAt": str(row.candidateSignedAt or ""),
        "finalizedAt": str(row.finalizedAt or ""),
        "createdAt": str(row.createdAt or ""),
    }


def _get_offer(db, offer_id: str, *, for_update: bool = False) -> Offer:
    oid = str(offer_id or "").strip()
    if not oid:
        raise ApiError("BAD_REQUEST", "Missing offerId")
    q = select(Offer).where(Offer.offerId == oid)
    if for_update:
        q = q.with_for_update(of=Offer)
    row = db.execute(q).scalars().first()
    if not row:
        raise ApiError("NOT_FOUND", "Offer not found")
    return row


def _money(data, key: str, *, required: bool) -> float:
    raw = (data or {}).get(key)
    if raw is None or raw == "":
        if required:
            raise ApiError("BAD_REQUEST", "Gross salary must be a positive number")
        return 0.0
    if isinstance(raw, bool):
        raise ApiError("BAD_REQUEST", f"Invalid {key}")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", f"Invalid {key}")
    if value != value or value in (float("inf"), float("-inf")):
        raise ApiError("BAD_REQUEST", f"Invalid {key}")
    return value


def offer_create(data, auth: AuthContext | None, db, cfg):
    app = get_application_row(db, str_field(data, "applicationId"), for_update=True)

    candidate_id = str_field(data, "candidateId") or app.candidateId
    if candidate_id != app.candidateId:
        raise ApiError("BAD_REQUEST", "Candidate ID does not match the application")
    if app.status == "rejected":
        raise ApiError("INVALID_STATE", "Cannot create offer for a rejected application")
    if app.status == "hired":
        raise ApiError("INVALID_STATE", "Cannot create offer for a hired candidate")

    duplicate_msg = "An offer already exists for this application"
    if db.execute(select(Offer.offerId).where(Offer.applicationId == app.applicationId)).scalars().first():
        raise ApiError("CONFLICT", duplicate_msg)

    gross = _money(data, "grossSalary", required=True)
    if gross <= 0:
        raise ApiError("BAD_REQUEST", "Gross salary must be a positive number")
    bonus = _money(data, "signingBonus", required=False)
    if bonus < 0:
        raise ApiError("BAD_REQUEST", "Signing bonus must be a non-negative number")

    deadline = parse_datetime_maybe(str_field(data, "deadline"), cfg.APP_TIMEZONE)
    if not deadline:
        raise ApiError("BAD_REQUEST", "Invalid deadline format. Expected ISO 8601 date string.")
    if deadline <= datetime.now(timezone.utc):
        raise ApiError("BAD_REQUEST", "Deadline must be in the future")

    benefits = (data or {}).get("benefits") or []
    if isinstance(benefits, str):
        benefits = [b.strip() for b in benefits.split(",") if b.strip()]
    if not isinstance(benefits, list):
        raise ApiError("BAD_REQUEST", "benefits must be a list")

    now = iso_utc_now()
    row = Offer(
        offerId=new_entity_id(db, Offer.offerId, "OFF"),
        applicationId=app.applicationId,
        candidateId=candidate_id,
        role=str_field(data, "role"),
        grossSalary=gross,
        signingBonus=bonus,
        benefitsJson=dumps_compact([str(b) for b in benefits]),
        conditions=str_field(data, "conditions"),
        insurances=str_field(data, "insurances"),
        content=str_field(data, "content"),
        deadline=to_iso_utc(deadline),
        applicantResponse="pending",
        finalStatus="pending",
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(row)
    flush_or_conflict(db, duplicate_msg)

    append_audit(db, entityType="OFFER", entityId=row.offerId, action="OFFER_CREATE", toState="pending", actor=auth, at=now, meta={"applicationId": app.applicationId})

    contact = contact_for_candidate(db, candidate_id)
    enqueue_notification(
        db,
        type="offer_letter",
        recipient=(contact or {}).get("email", ""),
        context={
            "candidateName": (contact or {}).get("name", "Candidate"),
            "role": row.role,
            "grossSalary": gross,
            "signingBonus": bonus,
            "benefits": benefits,
            "deadline": row.deadline,
            "content": row.content,
        },
        entity_type="OFFER",
        entity_id=row.offerId,
    )
    return {"offer": serialize_offer(row), "message": "Offer created"}


def deadline_passed(deadline: datetime | None, now: datetime) -> bool:
    """The response window is closed from the deadline instant onwards."""
    return deadline is not None and deadline <= now


def offer_respond(data, auth: AuthContext | None, db, cfg):
    row = _get_offer(db, str_field(data, "offerId"), for_update=True)
    if row.candidateId != actor_candidate_id(db, auth):
        raise ApiError("FORBIDDEN", "You can only respond to your own offer")

    response = str_field(data, "applicantResponse").lower()
    if response not in {"accepted", "rejected"}:
        raise ApiError("BAD_REQUEST", "applicantResponse must be 'accepted' or 'rejected'")

    if row.finalStatus != "pending":
        raise ApiError("INVALID_STATE", f"Cannot respond to offer: Offer has already been finalized with status: {row.finalStatus}.")
    deadline = parse_datetime_maybe(row.deadline)
    if deadline_passed(deadline, datetime.now(timezone.utc)):
        raise ApiError(
            "INVALID_STATE",
            f"Cannot respond to offer: The response deadline ({deadline.date().isoformat()}) has passed. Please contact HR.",
        )
    if row.applicantResponse != "pending":
        raise ApiError("INVALID_STATE", f"Offer has already been {row.applicantResponse}. Cannot change response.")

    now = iso_utc_now()
    row.applicantResponse = response
    row.respondedAt = now
    if response == "accepted":
        row.candidateSignedAt = now
    row.updatedAt = now
    row.updatedBy = actor_id(auth)

    append_audit(db, entityType="OFFER", entityId=row.offerId, action="OFFER_RESPOND", fromState="pending", toState=response, actor=auth, at=now)
    return {"offer": serialize_offer(row), "message": f"Offer {response}"}


def offer_finalize(data, auth: AuthContext | None, db, cfg):
    row = _get_offer(db, str_field(data, "offerId"), for_update=True)
    final_status = str_field(data, "finalStatus").lower()
    if final_status not in {"approved", "rejected"}:
        raise ApiError("BAD_REQUEST", "finalStatus must be 'approved' or 'rejected'")

    if row.applicantResponse == "pending":
        raise ApiError(
            "INVALID_STATE", "Cannot finalize offer: Candidate has not responded yet. Please wait for candidate response."
        )
    if row.finalStatus != "pending" and row.finalStatus != final_status:
        raise ApiError("INVALID_STATE", f"Offer has already been finalized with status: {row.finalStatus}. Cannot change final status.")
    if row.finalStatus == final_status:
        return {"offer": serialize_offer(row), "message": f"Offer already {final_status}"}

    now = iso_utc_now()
    row.finalStatus = final_status
    row.finalizedAt = now
    row.finalizedBy = actor_id(auth)
    row.updatedAt = now
    row.updatedBy = actor_id(auth)
    append_audit(db, entityType="OFFER", entityId=row.offerId, action="OFFER_FINALIZE", fromState="pending", toState=final_status, actor=auth, at=now)

    out = {"offer": serialize_offer(row), "message": f"Offer {final_status}"}
    if final_status == "approved" and row.applicantResponse == "accepted":
        app = get_application_row(db, row.applicationId, for_update=True)
        result = change_application_status(db, app, "hired", auth=auth, remark=f"Offer {row.offerId} approved")
        out["application"] = serialize_application(app)
        out["requisitionClosed"] = bool(result and result["requisitionClosed"])
        out["message"] = "Offer approved; candidate hired"
    return out


def offer_get(data, auth: AuthContext | None, db, cfg):
    role = normalize_role(getattr(auth, "role", ""))
    own_candidate = actor_candidate_id(db, auth) if role == "CANDIDATE" else ""

    offer_id = str_field(data, "offerId")
    application_id = str_field(data, "applicationId")
    candidate_id = str_field(data, "candidateId")

    if offer_id or application_id:
        q = select(Offer).where(Offer.offerId == offer_id) if offer_id else select(Offer).where(Offer.applicationId == application_id)
        row = db.execute(q).scalars().first()
        if not row:
            raise ApiError("NOT_FOUND", "Offer not found")
        if role == "CANDIDATE" and row.candidateId != own_candidate:
            raise ApiError("FORBIDDEN", "Not allowed to view this offer")
        return {"offer": serialize_offer(row)}

    if role == "CANDIDATE":
        if candidate_id and candidate_id != own_candidate:
            raise ApiError("FORBIDDEN", "Not allowed to view these offers")
        candidate_id = own_candidate
    if not candidate_id:
        raise ApiError("BAD_REQUEST", "Provide offerId, applicationId or candidateId")
    rows = db.execute(select(Offer).where(Offer.candidateId == candidate_id).order_by(Offer.createdAt.desc())).scalars().all()
    return {"items": [serialize_offer(r) for r in rows]}


def offer_create_employee(data, auth: AuthContext | None, db, cfg):
    row = _get_offer(db, str_field(data, "offerId"), for_update=True)
    if row.applicantResponse != "accepted":
        raise ApiError("INVALID_STATE", "Offer must be accepted by the candidate before creating an employee")
    if row.finalStatus != "approved":
        raise ApiError("INVALID_STATE", "Offer must be approved before creating an employee")

    duplicate_msg = "Employee already created from this offer"
    if db.execute(select(Employee.employeeId).where(Employee.offerId == row.offerId)).scalars().first():
        raise ApiError("CONFLICT", duplicate_msg)

    cand = db.execute(select(Candidate).where(Candidate.candidateId == row.candidateId)).scalar_one_or_none()
    if not cand:
        raise ApiError("NOT_FOUND", "Candidate not found")

    start_date = ""
    raw_start = str_field(data, "startDate")
    if raw_start:
        start_dt = parse_datetime_maybe(raw_start, cfg.APP_TIMEZONE)
        if not start_dt:
            raise ApiError("BAD_REQUEST", "Invalid startDate format")
        start_date = to_iso_utc(start_dt)

    signing_date = ""
    raw_signing = str_field(data, "contractSigningDate")
    if raw_signing:
        signing_dt = parse_datetime_maybe(raw_signing, cfg.APP_TIMEZONE)
        if not signing_dt:
            raise ApiError("BAD_REQUEST", "Invalid contractSigningDate format")
        signing_date = to_iso_utc(signing_dt)
    elif row.candidateSignedAt:
        signing_date = str(row.candidateSignedAt)

    now = iso_utc_now()
    number = new_entity_id(db, Employee.employeeNumber, "EMP")
    emp = Employee(
        employeeId=number,
        employeeNumber=number,
        fullName=str(cand.fullName or ""),
        workEmail=str_field(data, "workEmail"),
        personalEmail=str(cand.email or ""),
        departmentId=str_field(data, "departmentId"),
        positionId=str_field(data, "positionId"),
        status="PROBATION",
        startDate=start_date,
        contractSigningDate=signing_date,
        candidateId=row.candidateId,
        offerId=row.offerId,
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(emp)
    flush_or_conflict(db, duplicate_msg)

    # The candidate's login now acts as the new employee.
    for usr in db.execute(select(User).where(User.candidateId == row.candidateId)).scalars().all():
        usr.employeeId = emp.employeeId
        if normalize_role(usr.role) == "CANDIDATE":
            usr.role = "EMPLOYEE"
        usr.updatedAt = now
        usr.updatedBy = actor_id(auth)

    append_audit(
        db,
        entityType="EMPLOYEE",
        entityId=emp.employeeId,
        action="EMPLOYEE_CREATE_FROM_OFFER",
        toState="PROBATION",
        actor=auth,
        at=now,
        meta={"offerId": row.offerId, "candidateId": row.candidateId},
    )

    onboarding = create_onboarding_for_employee(db, emp, tasks=None, auth=auth, cfg=cfg)
    return {
        "employee": serialize_employee_brief(emp),
        "onboarding": serialize_onboarding(db, onboarding),
        "message": "Employee created and onboarding started",
    }

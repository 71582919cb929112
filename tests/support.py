"""Seeding and request helpers shared by the workflow tests."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from db import SessionLocal
from models import AppraisalRecord, Candidate, Department, Employee, PositionAssignment, User
from utils import iso_utc_now, to_iso_utc


INTERNAL_TOKEN = "cron-secret"


def days_from_now(days: float) -> str:
    return to_iso_utc(datetime.now(timezone.utc) + timedelta(days=days))


def api(client, action: str, data: dict | None = None, token: str | None = None):
    return client.post(
        "/api",
        data=json.dumps({"action": action, "token": token, "data": data or {}}),
        content_type="text/plain; charset=utf-8",
    )


def ok_data(res) -> dict:
    body = res.get_json()
    assert res.status_code == 200, body
    assert body["ok"] is True, body
    return body["data"]


def error_of(res) -> dict:
    body = res.get_json()
    assert body["ok"] is False, body
    return body["error"]


def seed_user(email: str, role: str, *, employee_id: str = "", candidate_id: str = "", status: str = "ACTIVE") -> str:
    now = iso_utc_now()
    user_id = "USR-" + email.split("@", 1)[0].upper()
    with SessionLocal() as db:
        db.add(
            User(
                userId=user_id,
                email=email,
                fullName=email.split("@", 1)[0].title(),
                role=role,
                status=status,
                employeeId=employee_id,
                candidateId=candidate_id,
                lastLoginAt="",
                createdAt=now,
                createdBy="TEST",
                updatedAt=now,
                updatedBy="TEST",
            )
        )
        db.commit()
    return user_id


def seed_employee(
    employee_id: str,
    *,
    email: str = "",
    department_id: str = "",
    status: str = "ACTIVE",
    start_date: str = "",
    full_name: str = "",
) -> str:
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            Employee(
                employeeId=employee_id,
                employeeNumber=employee_id,
                fullName=full_name or employee_id,
                workEmail=email,
                personalEmail="",
                departmentId=department_id,
                positionId="",
                status=status,
                startDate=start_date,
                contractSigningDate="",
                candidateId="",
                offerId=None,
                createdAt=now,
                createdBy="TEST",
                updatedAt=now,
                updatedBy="TEST",
            )
        )
        db.commit()
    return employee_id


def seed_candidate(candidate_id: str, *, email: str, full_name: str = "") -> str:
    with SessionLocal() as db:
        db.add(
            Candidate(
                candidateId=candidate_id,
                fullName=full_name or candidate_id,
                email=email,
                phone="",
                createdAt=iso_utc_now(),
                createdBy="TEST",
            )
        )
        db.commit()
    return candidate_id


def seed_department_head(department_id: str, head_employee_id: str) -> None:
    with SessionLocal() as db:
        db.add(Department(departmentId=department_id, name=department_id, headPositionId=f"POS-{department_id}-HEAD", status="ACTIVE"))
        db.add(PositionAssignment(positionId=f"POS-{department_id}-HEAD", employeeId=head_employee_id, isActive=True, startAt="", endAt=""))
        db.commit()


def seed_appraisal(employee_id: str, score: float | None, *, created_at: str = "") -> None:
    with SessionLocal() as db:
        db.add(
            AppraisalRecord(
                recordId=f"APR-{employee_id}-{created_at or 'latest'}",
                employeeId=employee_id,
                cycle="2026",
                totalScore=score,
                ratingLabel="",
                createdAt=created_at or iso_utc_now(),
            )
        )
        db.commit()


def login(client, email: str) -> str:
    data = ok_data(api(client, "LOGIN_EXCHANGE", {"idToken": f"TEST:{email}"}))
    return data["sessionToken"]


def staff(client, email: str, role: str, employee_id: str = "", **employee_kw) -> str:
    """Seed an employee with a login of the given role; returns a session token."""
    if employee_id:
        seed_employee(employee_id, email=email, **employee_kw)
    seed_user(email, role, employee_id=employee_id)
    return login(client, email)


def open_requisition(client, token: str, *, openings: int = 1, title: str = "Backend Engineer") -> str:
    data = ok_data(api(client, "REQUISITION_CREATE", {"title": title, "openings": openings}, token))
    rid = data["requisition"]["requisitionId"]
    ok_data(api(client, "REQUISITION_PUBLISH", {"requisitionId": rid}, token))
    return rid


def submit_application(client, token: str, candidate_id: str, requisition_id: str):
    return api(client, "APPLICATION_SUBMIT", {"candidateId": candidate_id, "requisitionId": requisition_id, "consent": True}, token)

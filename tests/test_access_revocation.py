from __future__ import annotations

from unittest.mock import MagicMock, patch

import requests
from sqlalchemy import select

from db import SessionLocal
from models import Employee, NotificationOutbox, OnboardingTask, Session as DbSession, TerminationRequest
from support import INTERNAL_TOKEN, api, days_from_now, error_of, ok_data, seed_appraisal, seed_employee, seed_user, login, staff


def _webhook_ok(status=200):
    resp = MagicMock(status_code=status)
    resp.raise_for_status.return_value = None
    return resp


def _leaver(client) -> str:
    seed_employee("EMP-LEAVE", email="leaver@example.com")
    seed_user("leaver@example.com", "EMPLOYEE", employee_id="EMP-LEAVE")
    return login(client, "leaver@example.com")


def test_revoking_twice_runs_deprovisioning_once(app_client):
    app, client = app_client
    app.config["CFG"].IDP_REVOKE_URL = "https://idp.example.com/revoke"
    admin = staff(client, "ops@example.com", "SYSTEM_ADMIN", "EMP-OPS")
    _leaver(client)

    with patch("services.deprovisioning.requests.post", return_value=_webhook_ok()) as post:
        first = ok_data(api(client, "ACCESS_REVOKE", {"employeeId": "EMP-LEAVE", "reason": "Left the company"}, admin))
        second = ok_data(api(client, "ACCESS_REVOKE", {"employeeId": "EMP-LEAVE"}, admin))

    assert post.call_count == 1
    assert post.call_args.kwargs["json"] == {"employeeId": "EMP-LEAVE", "email": "leaver@example.com"}

    assert first["alreadyInactive"] is False
    assert first["previousStatus"] == "ACTIVE"
    assert first["sessionsRevoked"] == 1
    assert {a["service"]: a["details"]["status"] for a in first["actions"]} == {"idp": "done", "mail": "queued", "apps": "queued"}

    assert second["alreadyInactive"] is True
    assert second["newStatus"] == "INACTIVE"

    with SessionLocal() as db:
        recipients = sorted(r.recipient for r in db.execute(select(NotificationOutbox).where(NotificationOutbox.type == "access_revoked")).scalars())
        assert recipients == ["leaver@example.com", "ops@example.com"]


def test_revocation_ends_sessions_and_blocks_login(app_client):
    _app, client = app_client
    admin = staff(client, "ops@example.com", "SYSTEM_ADMIN", "EMP-OPS")
    token = _leaver(client)
    ok_data(api(client, "GET_ME", {}, token))

    ok_data(client.post("/api/employees/EMP-LEAVE/revoke-access", json={"reason": "Contract ended"}, headers={"Authorization": f"Bearer {admin}"}))

    res = api(client, "GET_ME", {}, token)
    assert res.status_code == 401
    assert error_of(res)["code"] == "AUTH_INVALID"

    res = api(client, "LOGIN_EXCHANGE", {"idToken": "TEST:leaver@example.com"})
    assert res.status_code == 403
    assert error_of(res)["code"] == "FORBIDDEN"

    with SessionLocal() as db:
        sessions = db.execute(select(DbSession).where(DbSession.userId == "USR-LEAVER")).scalars().all()
        assert sessions and all(s.revokedAt for s in sessions)


def test_only_system_admin_revokes_directly(app_client):
    _app, client = app_client
    hr = staff(client, "hrm@example.com", "HR_MANAGER", "EMP-HRM")
    _leaver(client)

    res = api(client, "ACCESS_REVOKE", {"employeeId": "EMP-LEAVE"}, hr)
    assert res.status_code == 403
    assert error_of(res)["code"] == "FORBIDDEN"

    with SessionLocal() as db:
        assert db.execute(select(Employee.status).where(Employee.employeeId == "EMP-LEAVE")).scalar_one() == "ACTIVE"


def test_failed_step_is_recorded_and_others_still_run(app_client):
    app, client = app_client
    cfg = app.config["CFG"]
    cfg.IDP_REVOKE_URL = "https://idp.example.com/revoke"
    cfg.MAIL_DEACTIVATE_URL = "https://mail.example.com/deactivate"
    admin = staff(client, "ops@example.com", "SYSTEM_ADMIN", "EMP-OPS")
    _leaver(client)

    def fake_post(url, **kwargs):
        if "idp" in url:
            raise requests.ConnectionError("idp unreachable")
        return _webhook_ok()

    with patch("services.deprovisioning.requests.post", side_effect=fake_post) as post:
        out = ok_data(api(client, "ACCESS_REVOKE", {"employeeId": "EMP-LEAVE"}, admin))

    assert post.call_count == 2
    results = {a["service"]: a for a in out["actions"]}
    assert results["idp"]["success"] is False
    assert "idp unreachable" in results["idp"]["details"]
    assert results["mail"]["success"] is True
    assert results["apps"]["details"] == {"status": "queued"}
    assert out["newStatus"] == "INACTIVE"


def test_access_sweep_provisions_starters_and_revokes_leavers(app_client):
    _app, client = app_client
    hr = staff(client, "hrm@example.com", "HR_MANAGER", "EMP-HRM")

    seed_employee("EMP-START", email="start@example.com", start_date=days_from_now(-1))
    seed_employee("EMP-LATER", email="later@example.com", start_date=days_from_now(14))
    ok_data(api(client, "ONBOARDING_CREATE", {"employeeId": "EMP-START"}, hr))
    ok_data(api(client, "ONBOARDING_CREATE", {"employeeId": "EMP-LATER"}, hr))

    seed_employee("EMP-GONE", email="gone@example.com")
    seed_employee("EMP-STAYING", email="staying@example.com")
    for emp_id in ("EMP-GONE", "EMP-STAYING"):
        seed_appraisal(emp_id, 1.0)
        tid = ok_data(
            api(client, "TERMINATION_CREATE", {"employeeId": emp_id, "initiator": "hr", "terminationDate": days_from_now(10)}, hr)
        )["termination"]["terminationId"]
        ok_data(api(client, "TERMINATION_STATUS_UPDATE", {"terminationId": tid, "status": "approved"}, hr))

    with SessionLocal() as db:
        term = db.execute(select(TerminationRequest).where(TerminationRequest.employeeId == "EMP-GONE")).scalar_one()
        term.terminationDate = "2020-01-01T00:00:00.000Z"
        db.commit()

    assert client.post("/api/jobs/access-sweep").status_code == 401

    out = ok_data(client.post("/api/jobs/access-sweep", headers={"X-Internal-Token": INTERNAL_TOKEN}))
    assert out == {"provisioned": 3, "revoked": 1, "message": "Access sweep completed"}

    with SessionLocal() as db:
        statuses = dict(db.execute(select(Employee.employeeId, Employee.status)).all())
        assert statuses["EMP-GONE"] == "INACTIVE"
        assert statuses["EMP-STAYING"] == "ACTIVE"

        it_done = db.execute(
            select(OnboardingTask.status).where(OnboardingTask.department == "IT").where(OnboardingTask.status == "completed")
        ).all()
        assert len(it_done) == 3

        term = db.execute(select(TerminationRequest).where(TerminationRequest.employeeId == "EMP-GONE")).scalar_one()
        assert "ACCESS_REVOKED" in term.hrComments

    again = ok_data(client.post("/api/jobs/access-sweep", headers={"X-Internal-Token": INTERNAL_TOKEN}))
    assert (again["provisioned"], again["revoked"]) == (0, 0)

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from actions.clearance import send_clearance_reminders
from db import SessionLocal
from models import ClearanceChecklist, ClearanceReminder, Employee, NotificationOutbox, TerminationRequest
from support import api, days_from_now, error_of, ok_data, seed_appraisal, seed_department_head, seed_employee, seed_user, login, staff


def _team(client) -> dict[str, str]:
    """HR desk, approvers for every clearance department and one leaving engineer."""
    tokens = {
        "hr": staff(client, "hrm@example.com", "HR_MANAGER", "EMP-HRM"),
        "hr_staff": staff(client, "hre@example.com", "HR_EMPLOYEE", "EMP-HRE"),
        "head": staff(client, "head@example.com", "DEPARTMENT_HEAD", "EMP-HEAD", department_id="ENG"),
        "finance": staff(client, "fin@example.com", "FINANCE_STAFF", "EMP-FIN"),
        "payroll": staff(client, "pay@example.com", "PAYROLL_MANAGER", "EMP-PAY"),
        "sysadmin": staff(client, "ops@example.com", "SYSTEM_ADMIN", "EMP-OPS"),
        "facilities": staff(client, "fac@example.com", "HR_ADMIN", "EMP-FAC"),
    }
    seed_employee("EMP-LEAVE", email="leaver@example.com", department_id="ENG")
    seed_department_head("ENG", "EMP-HEAD")
    return tokens


def _terminate(client, hr, employee_id="EMP-LEAVE", **extra) -> dict:
    payload = {"employeeId": employee_id, "initiator": "hr", "terminationDate": days_from_now(10)}
    payload.update(extra)
    return ok_data(api(client, "TERMINATION_CREATE", payload, hr))["termination"]


def _approve_termination(client, hr, termination_id) -> dict:
    return ok_data(api(client, "TERMINATION_STATUS_UPDATE", {"terminationId": termination_id, "status": "approved"}, hr))


def _item(client, token, checklist_id, department, status="approved", **extra):
    payload = {"checklistId": checklist_id, "department": department, "status": status, "comments": f"{department} ok"}
    payload.update(extra)
    return api(client, "CLEARANCE_ITEM_UPDATE", payload, token)


def test_approval_creates_one_checklist_with_six_pending_items(app_client):
    _app, client = app_client
    t = _team(client)
    seed_appraisal("EMP-LEAVE", 2.0)
    term = _terminate(client, t["hr"])
    assert term["status"] == "pending"

    checklist = _approve_termination(client, t["hr"], term["terminationId"])["checklist"]
    items = {i["department"]: i for i in checklist["items"]}
    assert list(items) == ["LINE_MANAGER", "HR", "IT", "FINANCE", "FACILITIES", "ADMIN"]
    assert all(i["status"] == "pending" for i in items.values())
    assert items["LINE_MANAGER"]["assignedTo"] == "EMP-HEAD"
    assert len(checklist["reminders"]) == 6

    # Approving again keeps the existing checklist.
    again = _approve_termination(client, t["hr"], term["terminationId"])["checklist"]
    assert again["checklistId"] == checklist["checklistId"]
    res = api(client, "CLEARANCE_CREATE", {"terminationId": term["terminationId"]}, t["hr"])
    assert error_of(res)["code"] == "CONFLICT"

    assert checklist["cardReturned"] is False
    assert api(client, "CLEARANCE_COMPLETE", {"checklistId": checklist["checklistId"]}, t["hr_staff"]).status_code == 403
    marked = ok_data(api(client, "CLEARANCE_COMPLETE", {"checklistId": checklist["checklistId"]}, t["hr"]))
    assert marked["checklist"]["cardReturned"] is True
    assert marked["checklist"]["completed"] is False

    with SessionLocal() as db:
        rows = db.execute(select(ClearanceChecklist).where(ClearanceChecklist.terminationId == term["terminationId"])).scalars().all()
        assert len(rows) == 1


def test_full_clearance_completes_and_queues_final_settlement(app_client):
    _app, client = app_client
    t = _team(client)
    seed_appraisal("EMP-LEAVE", 2.0)

    # Equipment reserved during onboarding follows the employee into clearance.
    ok_data(api(client, "ONBOARDING_CREATE", {"employeeId": "EMP-LEAVE"}, t["hr"]))
    ok_data(
        api(
            client,
            "ONBOARDING_RESERVE_EQUIPMENT",
            {"employeeId": "EMP-LEAVE", "equipmentType": "desk", "details": {"id": "D-7", "name": "Desk 7"}},
            t["hr"],
        )
    )

    term = _terminate(client, t["hr"])
    checklist = _approve_termination(client, t["hr"], term["terminationId"])["checklist"]
    cid = checklist["checklistId"]
    assert checklist["equipmentList"] == [{"equipmentId": "D-7", "name": "Desk 7", "returned": False, "condition": None}]

    res = _item(client, t["finance"], cid, "FINANCE")
    e = error_of(res)
    assert res.status_code == 409
    assert e["code"] == "INVALID_STATE"
    assert e["message"] == "Cannot approve 'FINANCE' before 'LINE_MANAGER' is approved"

    ok_data(_item(client, t["head"], cid, "LINE_MANAGER"))

    out = ok_data(_item(client, t["sysadmin"], cid, "IT"))
    revocation = out["accessRevocation"]
    assert revocation["newStatus"] == "INACTIVE"
    assert [a["service"] for a in revocation["actions"]] == ["idp", "mail", "apps"]
    assert all(a["success"] for a in revocation["actions"])

    assert error_of(_item(client, t["payroll"], cid, "IT"))["code"] == "FORBIDDEN"
    ok_data(_item(client, t["finance"], cid, "FINANCE"))

    out = ok_data(_item(client, t["facilities"], cid, "FACILITIES", equipmentReturns=[{"equipmentId": "D-7", "condition": "good"}]))
    assert out["equipmentReturned"] == 1
    assert out["checklist"]["equipmentList"][0]["returned"] is True
    assert out["checklist"]["equipmentList"][0]["condition"] == "good"

    ok_data(_item(client, t["facilities"], cid, "ADMIN"))

    res = _item(client, t["hr_staff"], cid, "HR")
    assert error_of(res)["message"] == "Only HR Manager can finalize HR approval"

    out = ok_data(_item(client, t["hr"], cid, "HR"))
    assert out["checklist"]["completed"] is True
    assert out["checklist"]["cardReturned"] is True
    assert out["finalSettlement"]["status"] == "QUEUED"
    assert out["finalSettlement"]["employeeNumber"] == "EMP-LEAVE"

    detail = ok_data(api(client, "TERMINATION_GET", {"terminationId": term["terminationId"]}, t["hr"]))
    assert detail["termination"]["status"] == "approved"
    assert detail["termination"]["finalSettlement"]["status"] == "QUEUED"
    assert len(detail["termination"]["revocationLog"]) == 1

    res = _item(client, t["hr"], cid, "HR", status="rejected")
    assert error_of(res)["code"] == "INVALID_STATE"

    with SessionLocal() as db:
        rows = db.execute(select(NotificationOutbox).where(NotificationOutbox.type == "final_settlement")).scalars().all()
        assert [r.recipient for r in rows] == ["pay@example.com"]
        emp = db.execute(select(Employee).where(Employee.employeeId == "EMP-LEAVE")).scalar_one()
        assert emp.status == "INACTIVE"


def test_only_listed_roles_may_decide_an_item(app_client):
    _app, client = app_client
    t = _team(client)
    seed_appraisal("EMP-LEAVE", 1.0)
    other = staff(client, "peer@example.com", "EMPLOYEE", "EMP-PEER")
    term = _terminate(client, t["hr"])
    cid = _approve_termination(client, t["hr"], term["terminationId"])["checklist"]["checklistId"]

    assert error_of(_item(client, other, cid, "LINE_MANAGER"))["code"] == "FORBIDDEN"
    assert error_of(_item(client, t["finance"], cid, "FACILITIES"))["code"] == "FORBIDDEN"
    assert error_of(_item(client, t["hr"], cid, "PAYROLL"))["code"] == "BAD_REQUEST"
    assert error_of(_item(client, t["hr"], cid, "IT", status="done"))["code"] == "BAD_REQUEST"

    # A rejection is not an approval and does not need the sequence.
    data = ok_data(_item(client, t["finance"], cid, "FINANCE", status="rejected"))
    assert {i["department"]: i["status"] for i in data["checklist"]["items"]}["FINANCE"] == "rejected"

    listed = ok_data(api(client, "CLEARANCE_LIST", {"pendingDepartment": "LINE_MANAGER"}, t["finance"]))["items"]
    assert [c["checklistId"] for c in listed] == [cid]
    mine = ok_data(api(client, "CLEARANCE_GET_BY_EMPLOYEE", {"employeeId": "EMP-LEAVE"}, t["hr"]))["checklist"]
    assert mine["checklistId"] == cid


def test_only_line_manager_finance_hr_are_sequenced(app_client):
    _app, client = app_client
    t = _team(client)
    seed_appraisal("EMP-LEAVE", 1.0)
    term = _terminate(client, t["hr"])
    cid = _approve_termination(client, t["hr"], term["terminationId"])["checklist"]["checklistId"]

    # IT, FACILITIES and ADMIN carry no ordering.
    ok_data(_item(client, t["sysadmin"], cid, "IT"))
    ok_data(_item(client, t["facilities"], cid, "FACILITIES"))
    ok_data(_item(client, t["facilities"], cid, "ADMIN"))

    res = _item(client, t["hr"], cid, "HR")
    assert res.status_code == 409
    assert error_of(res) == {"code": "INVALID_STATE", "message": "Cannot approve 'HR' before 'LINE_MANAGER' is approved"}

    ok_data(_item(client, t["head"], cid, "LINE_MANAGER"))
    res = _item(client, t["hr"], cid, "HR")
    assert res.status_code == 409
    assert error_of(res) == {"code": "INVALID_STATE", "message": "Cannot approve 'HR' before 'FINANCE' is approved"}

    ok_data(_item(client, t["finance"], cid, "FINANCE"))
    data = ok_data(_item(client, t["hr"], cid, "HR"))
    assert data["checklist"]["completed"] is True


def test_performance_termination_needs_a_low_latest_score(app_client):
    _app, client = app_client
    t = _team(client)

    res = api(client, "TERMINATION_CREATE", {"employeeId": "EMP-LEAVE", "initiator": "hr"}, t["hr"])
    assert "no appraisal record" in error_of(res)["message"]

    seed_appraisal("EMP-LEAVE", 2.0, created_at="2025-01-01T00:00:00.000Z")
    seed_appraisal("EMP-LEAVE", 3.0, created_at="2026-01-01T00:00:00.000Z")
    res = api(client, "TERMINATION_CREATE", {"employeeId": "EMP-LEAVE", "initiator": "hr"}, t["hr"])
    assert res.status_code == 403
    assert "not low enough" in error_of(res)["message"]

    latest = ok_data(api(client, "APPRAISAL_LATEST_GET", {"employeeId": "EMP-LEAVE"}, t["hr"]))["appraisal"]
    assert latest["totalScore"] == 3.0

    seed_appraisal("EMP-LEAVE", 2.49, created_at="2026-06-01T00:00:00.000Z")
    term = _terminate(client, t["hr"])
    assert term["initiator"] == "hr"
    assert term["reason"] == "Termination due to poor performance (score: 2.49)"

    res = api(client, "TERMINATION_CREATE", {"employeeId": "EMP-LEAVE", "initiator": "manager"}, t["head"])
    assert error_of(res)["code"] == "FORBIDDEN"
    res = api(client, "TERMINATION_CREATE", {"employeeId": "EMP-LEAVE", "initiator": "board"}, t["hr"])
    assert error_of(res)["code"] == "BAD_REQUEST"


def test_resignation_is_for_own_profile_only(app_client):
    _app, client = app_client
    hr = staff(client, "hrm@example.com", "HR_MANAGER", "EMP-HRM")
    seed_employee("EMP-SELF", email="self@example.com")
    seed_employee("EMP-ELSE", email="else@example.com")
    seed_user("self@example.com", "EMPLOYEE", employee_id="EMP-SELF")
    token = login(client, "self@example.com")

    res = api(client, "TERMINATION_CREATE", {"employeeId": "EMP-ELSE", "initiator": "employee"}, token)
    assert error_of(res)["code"] == "FORBIDDEN"

    data = ok_data(
        api(
            client,
            "TERMINATION_CREATE",
            {"employeeId": "EMP-SELF", "initiator": "employee", "reason": "Relocating", "terminationDate": "2020-01-01"},
            token,
        )
    )
    assert data["termination"]["reason"] == "Relocating"

    # A self-resignation may still be backdated when its details change.
    tid = data["termination"]["terminationId"]
    backdated = days_from_now(-30)
    updated = ok_data(api(client, "TERMINATION_DETAILS_UPDATE", {"terminationId": tid, "terminationDate": backdated}, hr))
    assert updated["termination"]["terminationDate"] == backdated

    mine = ok_data(api(client, "TERMINATION_MY_LIST", {}, token))["items"]
    assert [m["terminationId"] for m in mine] == [data["termination"]["terminationId"]]

    assert error_of(api(client, "TERMINATION_LIST", {}, token))["code"] == "FORBIDDEN"


def test_approved_termination_is_frozen(app_client):
    _app, client = app_client
    t = _team(client)
    seed_appraisal("EMP-LEAVE", 1.5)
    tid = _terminate(client, t["hr"])["terminationId"]

    res = api(client, "TERMINATION_DETAILS_UPDATE", {"terminationId": tid, "terminationDate": days_from_now(-2)}, t["hr"])
    assert res.status_code == 400
    assert error_of(res)["message"] == "Termination date cannot be in the past for HR/Manager initiated terminations"
    data = ok_data(api(client, "TERMINATION_DETAILS_UPDATE", {"terminationId": tid, "hrComments": "Reviewed"}, t["hr"]))
    assert data["termination"]["hrComments"] == "Reviewed"

    res = api(client, "FINAL_SETTLEMENT_TRIGGER", {"terminationId": tid}, t["hr"])
    assert error_of(res)["code"] == "INVALID_STATE"

    _approve_termination(client, t["hr"], tid)

    res = api(client, "TERMINATION_DETAILS_UPDATE", {"terminationId": tid, "reason": "Changed"}, t["hr"])
    assert res.status_code == 409
    assert error_of(res)["code"] == "INVALID_STATE"
    res = api(client, "TERMINATION_STATUS_UPDATE", {"terminationId": tid, "status": "rejected"}, t["hr"])
    assert error_of(res)["code"] == "INVALID_STATE"

    settlement = ok_data(api(client, "FINAL_SETTLEMENT_TRIGGER", {"terminationId": tid}, t["hr"]))["settlementData"]
    assert settlement["status"] == "QUEUED"


def test_clearance_reminders_interval_cap_and_single_escalation(app_client):
    app, client = app_client
    cfg = app.config["CFG"]
    t = _team(client)
    seed_appraisal("EMP-LEAVE", 1.0)
    tid = _terminate(client, t["hr"])["terminationId"]
    cid = _approve_termination(client, t["hr"], tid)["checklist"]["checklistId"]
    ok_data(_item(client, t["head"], cid, "LINE_MANAGER"))

    t0 = datetime.now(timezone.utc)

    def run(days):
        with SessionLocal() as db:
            out = send_clearance_reminders(db, cfg, now=t0 + timedelta(days=days))
            db.commit()
        return out

    def state():
        with SessionLocal() as db:
            rows = db.execute(select(ClearanceReminder).where(ClearanceReminder.checklistId == cid)).scalars().all()
            return {r.department: (r.sentCount, bool(r.escalated)) for r in rows}

    first = run(0)
    assert first["checklists"] == 1
    assert first["reminders"] >= 5
    assert state()["FINANCE"] == (1, False)
    # Approved items get no reminders.
    assert state()["LINE_MANAGER"] == (0, False)

    assert run(1)["reminders"] == 0
    assert state()["FINANCE"] == (1, False)

    run(3)
    run(6)
    assert state()["FINANCE"] == (3, False)

    out = run(7)
    assert out["reminders"] == 0
    assert out["escalations"] >= 5
    assert state()["FINANCE"] == (3, True)

    out = run(10)
    assert out["reminders"] == 0
    assert out["escalations"] == 0
    assert state()["IT"] == (3, True)

    with SessionLocal() as db:
        term = db.execute(select(TerminationRequest).where(TerminationRequest.terminationId == tid)).scalar_one()
        assert term.status == "approved"
        escalations = [
            r
            for r in db.execute(select(NotificationOutbox).where(NotificationOutbox.type == "clearance_reminder")).scalars()
            if "ESCALATION" in r.contextJson
        ]
        assert "hrm@example.com" in {r.recipient for r in escalations}

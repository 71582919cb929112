from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from actions.offers import deadline_passed
from db import SessionLocal
from models import Employee, User
from support import api, days_from_now, error_of, login, ok_data, open_requisition, seed_candidate, seed_user, staff, submit_application


def _candidate(client, candidate_id="CAN-1", email="cand@example.com") -> str:
    seed_candidate(candidate_id, email=email, full_name="Casey Candidate")
    seed_user(email, "CANDIDATE", candidate_id=candidate_id)
    return login(client, email)


def _offer(client, hr, app_id, **extra):
    payload = {"applicationId": app_id, "grossSalary": 50000, "deadline": days_from_now(5), "role": "Engineer"}
    payload.update(extra)
    return api(client, "OFFER_CREATE", payload, hr)


def test_accepted_and_approved_offer_hires_and_closes_requisition(app_client):
    _app, client = app_client
    hr = staff(client, "hrm@example.com", "HR_MANAGER", "EMP-HRM")
    cand = _candidate(client)
    rid = open_requisition(client, hr, openings=1)
    app_id = ok_data(submit_application(client, hr, "CAN-1", rid))["application"]["applicationId"]

    offer = ok_data(_offer(client, hr, app_id))["offer"]
    assert offer["grossSalary"] == 50000.0
    assert offer["applicantResponse"] == "pending"

    res = api(client, "OFFER_FINALIZE", {"offerId": offer["offerId"], "finalStatus": "approved"}, hr)
    assert "not responded" in error_of(res)["message"]

    data = ok_data(api(client, "OFFER_RESPOND", {"offerId": offer["offerId"], "applicantResponse": "accepted"}, cand))
    assert data["offer"]["candidateSignedAt"]

    data = ok_data(api(client, "OFFER_FINALIZE", {"offerId": offer["offerId"], "finalStatus": "approved"}, hr))
    assert data["application"]["status"] == "hired"
    assert data["requisitionClosed"] is True

    req = ok_data(api(client, "REQUISITION_GET", {"requisitionId": rid}, hr))["requisition"]
    assert req["publishStatus"] == "closed"

    # Same value again is accepted; a different terminal value is not.
    ok_data(api(client, "OFFER_FINALIZE", {"offerId": offer["offerId"], "finalStatus": "approved"}, hr))
    res = api(client, "OFFER_FINALIZE", {"offerId": offer["offerId"], "finalStatus": "rejected"}, hr)
    assert error_of(res)["code"] == "INVALID_STATE"


def test_offer_creation_rules(app_client):
    _app, client = app_client
    hr = staff(client, "hrm@example.com", "HR_MANAGER", "EMP-HRM")
    seed_candidate("CAN-1", email="cand@example.com")
    rid = open_requisition(client, hr, openings=2)
    app_id = ok_data(submit_application(client, hr, "CAN-1", rid))["application"]["applicationId"]

    assert error_of(_offer(client, hr, app_id, grossSalary=0))["code"] == "BAD_REQUEST"
    assert error_of(_offer(client, hr, app_id, deadline=days_from_now(-1)))["code"] == "BAD_REQUEST"

    ok_data(_offer(client, hr, app_id))
    res = _offer(client, hr, app_id)
    assert res.status_code == 409
    assert error_of(res)["code"] == "CONFLICT"

    seed_candidate("CAN-2", email="two@example.com")
    rejected = ok_data(submit_application(client, hr, "CAN-2", rid))["application"]["applicationId"]
    ok_data(api(client, "APPLICATION_STATUS_UPDATE", {"applicationId": rejected, "status": "rejected"}, hr))
    assert error_of(_offer(client, hr, rejected))["code"] == "INVALID_STATE"


def test_response_rules(app_client):
    _app, client = app_client
    hr = staff(client, "hrm@example.com", "HR_MANAGER", "EMP-HRM")
    cand = _candidate(client)
    other = _candidate(client, "CAN-X", "other@example.com")
    rid = open_requisition(client, hr, openings=1)
    app_id = ok_data(submit_application(client, hr, "CAN-1", rid))["application"]["applicationId"]
    offer_id = ok_data(_offer(client, hr, app_id))["offer"]["offerId"]

    res = api(client, "OFFER_RESPOND", {"offerId": offer_id, "applicantResponse": "accepted"}, other)
    assert error_of(res)["code"] == "FORBIDDEN"

    res = api(client, "OFFER_RESPOND", {"offerId": offer_id, "applicantResponse": "maybe"}, cand)
    assert error_of(res)["code"] == "BAD_REQUEST"

    ok_data(api(client, "OFFER_RESPOND", {"offerId": offer_id, "applicantResponse": "rejected"}, cand))
    res = api(client, "OFFER_RESPOND", {"offerId": offer_id, "applicantResponse": "accepted"}, cand)
    assert error_of(res)["code"] == "INVALID_STATE"

    # A declined offer can be closed out without hiring anyone.
    data = ok_data(api(client, "OFFER_FINALIZE", {"offerId": offer_id, "finalStatus": "rejected"}, hr))
    assert "application" not in data

    mine = ok_data(api(client, "OFFER_GET", {}, cand))["items"]
    assert [o["offerId"] for o in mine] == [offer_id]
    assert error_of(api(client, "OFFER_GET", {"offerId": offer_id}, other))["code"] == "FORBIDDEN"


def test_response_after_deadline_is_refused(app_client):
    _app, client = app_client
    hr = staff(client, "hrm@example.com", "HR_MANAGER", "EMP-HRM")
    cand = _candidate(client)
    rid = open_requisition(client, hr, openings=1)
    app_id = ok_data(submit_application(client, hr, "CAN-1", rid))["application"]["applicationId"]
    offer_id = ok_data(_offer(client, hr, app_id))["offer"]["offerId"]

    from models import Offer

    with SessionLocal() as db:
        db.execute(select(Offer).where(Offer.offerId == offer_id)).scalar_one().deadline = "2000-01-01T00:00:00.000Z"
        db.commit()

    res = api(client, "OFFER_RESPOND", {"offerId": offer_id, "applicantResponse": "accepted"}, cand)
    e = error_of(res)
    assert e["code"] == "INVALID_STATE"
    assert "deadline" in e["message"]


def test_employee_created_from_offer_gets_default_onboarding(app_client):
    _app, client = app_client
    hr = staff(client, "hrm@example.com", "HR_MANAGER", "EMP-HRM")
    cand = _candidate(client)
    rid = open_requisition(client, hr, openings=1)
    app_id = ok_data(submit_application(client, hr, "CAN-1", rid))["application"]["applicationId"]
    offer_id = ok_data(_offer(client, hr, app_id))["offer"]["offerId"]

    res = api(client, "OFFER_CREATE_EMPLOYEE", {"offerId": offer_id}, hr)
    assert error_of(res)["code"] == "INVALID_STATE"

    ok_data(api(client, "OFFER_RESPOND", {"offerId": offer_id, "applicantResponse": "accepted"}, cand))
    ok_data(api(client, "OFFER_FINALIZE", {"offerId": offer_id, "finalStatus": "approved"}, hr))

    data = ok_data(
        api(
            client,
            "OFFER_CREATE_EMPLOYEE",
            {"offerId": offer_id, "startDate": days_from_now(20), "workEmail": "casey@corp.example.com"},
            hr,
        )
    )
    emp = data["employee"]
    assert emp["status"] == "PROBATION"
    assert emp["employeeNumber"].startswith("EMP-")

    tasks = data["onboarding"]["tasks"]
    assert len(tasks) == 11
    assert {t["department"] for t in tasks} == {"IT", "Admin", "HR"}
    assert all(t["status"] == "pending" for t in tasks)
    assert data["onboarding"]["completed"] is False

    assert error_of(api(client, "OFFER_CREATE_EMPLOYEE", {"offerId": offer_id}, hr))["code"] == "CONFLICT"

    with SessionLocal() as db:
        usr = db.execute(select(User).where(User.candidateId == "CAN-1")).scalar_one()
        assert usr.role == "EMPLOYEE"
        assert usr.employeeId == emp["employeeId"]
        row = db.execute(select(Employee).where(Employee.employeeId == emp["employeeId"])).scalar_one()
        assert row.offerId == offer_id
        assert row.personalEmail == "cand@example.com"

    # The new employee logs in again and sees their own checklist.
    token = login(client, "cand@example.com")
    mine = ok_data(api(client, "ONBOARDING_GET", {"employeeId": emp["employeeId"]}, token))["onboarding"]
    assert mine["onboardingId"] == data["onboarding"]["onboardingId"]


def test_response_window_closes_at_the_deadline_instant():
    at = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert deadline_passed(at, at)
    assert deadline_passed(at, at + timedelta(seconds=1))
    assert not deadline_passed(at, at - timedelta(seconds=1))
    assert not deadline_passed(None, at)

from __future__ import annotations

from sqlalchemy import select

from db import SessionLocal
from models import NotificationOutbox, Requisition
from support import api, error_of, ok_data, open_requisition, seed_candidate, seed_user, login, staff, submit_application


def _hr(client) -> str:
    return staff(client, "hrm@example.com", "HR_MANAGER", "EMP-HRM")


def _set_status(client, token: str, application_id: str, status: str):
    return api(client, "APPLICATION_STATUS_UPDATE", {"applicationId": application_id, "status": status}, token)


def test_second_application_is_refused_once_the_only_opening_is_filled(app_client):
    _app, client = app_client
    token = _hr(client)
    seed_candidate("CAN-1", email="one@example.com")
    seed_candidate("CAN-2", email="two@example.com")

    rid = open_requisition(client, token, openings=1)
    app_id = ok_data(submit_application(client, token, "CAN-1", rid))["application"]["applicationId"]

    data = ok_data(_set_status(client, token, app_id, "hired"))
    assert data["application"]["status"] == "hired"
    assert data["requisitionClosed"] is True

    res = submit_application(client, token, "CAN-2", rid)
    assert res.status_code == 409
    e = error_of(res)
    assert e["code"] == "CAPACITY_FULL"
    assert e["message"].startswith("All 1 position(s)")

    req = ok_data(api(client, "REQUISITION_GET", {"requisitionId": rid}, token))["requisition"]
    assert req["publishStatus"] == "closed"
    assert req["hiredCount"] == 1
    assert req["progress"] == 100


def test_hires_never_exceed_openings(app_client):
    _app, client = app_client
    token = _hr(client)
    rid = open_requisition(client, token, openings=2)

    app_ids = []
    for i in range(3):
        seed_candidate(f"CAN-{i}", email=f"c{i}@example.com")
        app_ids.append(ok_data(submit_application(client, token, f"CAN-{i}", rid))["application"]["applicationId"])

    ok_data(_set_status(client, token, app_ids[0], "hired"))
    assert ok_data(_set_status(client, token, app_ids[1], "hired"))["requisitionClosed"] is True

    res = _set_status(client, token, app_ids[2], "hired")
    assert error_of(res)["code"] == "CAPACITY_FULL"

    with SessionLocal() as db:
        req = db.execute(select(Requisition).where(Requisition.requisitionId == rid)).scalar_one()
        assert req.hiredCount == 2
        assert req.hiredCount <= req.openings


def test_rejected_and_hired_applications_are_final(app_client):
    _app, client = app_client
    token = _hr(client)
    seed_candidate("CAN-A", email="a@example.com")
    seed_candidate("CAN-B", email="b@example.com")
    rid = open_requisition(client, token, openings=3)

    rejected = ok_data(submit_application(client, token, "CAN-A", rid))["application"]["applicationId"]
    hired = ok_data(submit_application(client, token, "CAN-B", rid))["application"]["applicationId"]

    ok_data(_set_status(client, token, rejected, "rejected"))
    ok_data(_set_status(client, token, hired, "hired"))

    for app_id, target in ((rejected, "in_process"), (rejected, "hired"), (hired, "rejected"), (hired, "offer")):
        res = _set_status(client, token, app_id, target)
        assert res.status_code == 409
        assert error_of(res)["code"] == "INVALID_STATE"

    # Re-sending the current status is a no-op, not an error.
    assert ok_data(_set_status(client, token, rejected, "rejected"))["message"] == "Status unchanged"


def test_status_only_moves_forward_and_derives_stage(app_client):
    _app, client = app_client
    token = _hr(client)
    seed_candidate("CAN-1", email="one@example.com")
    rid = open_requisition(client, token, openings=1)
    app_id = ok_data(submit_application(client, token, "CAN-1", rid))["application"]["applicationId"]

    data = ok_data(_set_status(client, token, app_id, "in_process"))
    assert data["application"]["currentStage"] == "department_interview"

    res = _set_status(client, token, app_id, "submitted")
    assert error_of(res)["code"] == "INVALID_STATE"
    assert "only progress forward" in error_of(res)["message"]

    data = ok_data(_set_status(client, token, app_id, "offer"))
    assert data["application"]["currentStage"] == "offer"

    history = ok_data(api(client, "APPLICATION_HISTORY_GET", {"applicationId": app_id}, token))["items"]
    assert [h["newStatus"] for h in history] == ["submitted", "in_process", "offer"]
    assert history[1]["oldStage"] == "screening"
    assert history[1]["newStage"] == "department_interview"
    assert all(h["changedBy"] for h in history)


def test_apply_checks_duplicates_and_requisition_state(app_client):
    _app, client = app_client
    token = _hr(client)
    seed_candidate("CAN-1", email="one@example.com")

    draft = ok_data(api(client, "REQUISITION_CREATE", {"title": "Analyst", "openings": 1}, token))["requisition"]["requisitionId"]
    assert error_of(submit_application(client, token, "CAN-1", draft))["code"] == "INVALID_STATE"

    rid = open_requisition(client, token, openings=2)
    ok_data(submit_application(client, token, "CAN-1", rid))
    res = submit_application(client, token, "CAN-1", rid)
    assert res.status_code == 409
    assert error_of(res)["code"] == "CONFLICT"

    ok_data(api(client, "REQUISITION_STATUS_UPDATE", {"requisitionId": rid, "status": "closed"}, token))
    seed_candidate("CAN-2", email="two@example.com")
    assert "closed" in error_of(submit_application(client, token, "CAN-2", rid))["message"]

    res = api(client, "APPLICATION_SUBMIT", {"candidateId": "CAN-2", "requisitionId": draft}, token)
    assert error_of(res)["code"] == "BAD_REQUEST"


def test_openings_must_be_a_real_positive_integer(app_client):
    _app, client = app_client
    token = _hr(client)
    for openings in (True, 0, -2, 1.5, "many", None):
        res = api(client, "REQUISITION_CREATE", {"title": "Analyst", "openings": openings}, token)
        assert error_of(res) == {"code": "BAD_REQUEST", "message": "Openings must be a positive integer"}
    data = ok_data(api(client, "REQUISITION_CREATE", {"title": "Analyst", "openings": "3"}, token))
    assert data["requisition"]["openings"] == 3


def test_expired_requisition_refuses_applications(app_client):
    _app, client = app_client
    token = _hr(client)
    seed_candidate("CAN-1", email="one@example.com")
    data = ok_data(api(client, "REQUISITION_CREATE", {"title": "Ops", "openings": 1, "expiryDate": "2000-01-01"}, token))
    rid = data["requisition"]["requisitionId"]
    ok_data(api(client, "REQUISITION_PUBLISH", {"requisitionId": rid}, token))

    e = error_of(submit_application(client, token, "CAN-1", rid))
    assert e["code"] == "INVALID_STATE"
    assert "expired" in e["message"]


def test_candidate_applies_for_self_and_is_notified(app_client):
    _app, client = app_client
    hr = _hr(client)
    rid = open_requisition(client, hr, openings=1)

    seed_candidate("CAN-SELF", email="self@example.com", full_name="Sam Self")
    seed_user("self@example.com", "CANDIDATE", candidate_id="CAN-SELF")
    cand = login(client, "self@example.com")

    res = api(client, "APPLICATION_SUBMIT", {"candidateId": "CAN-OTHER", "requisitionId": rid, "consent": True}, cand)
    assert error_of(res)["code"] == "FORBIDDEN"

    app_id = ok_data(api(client, "APPLICATION_SUBMIT", {"requisitionId": rid, "consent": True}, cand))["application"]["applicationId"]
    ok_data(_set_status(client, hr, app_id, "in_process"))

    with SessionLocal() as db:
        rows = db.execute(select(NotificationOutbox).where(NotificationOutbox.entityId == app_id)).scalars().all()
        assert [r.type for r in rows] == ["application_status"]
        assert rows[0].recipient == "self@example.com"
        assert rows[0].status == "PENDING"


def test_candidate_cannot_change_application_status(app_client):
    _app, client = app_client
    hr = _hr(client)
    rid = open_requisition(client, hr, openings=1)
    seed_candidate("CAN-SELF", email="self@example.com")
    seed_user("self@example.com", "CANDIDATE", candidate_id="CAN-SELF")
    cand = login(client, "self@example.com")
    app_id = ok_data(api(client, "APPLICATION_SUBMIT", {"requisitionId": rid, "consent": True}, cand))["application"]["applicationId"]

    res = _set_status(client, cand, app_id, "hired")
    assert res.status_code == 403
    assert error_of(res)["code"] == "FORBIDDEN"


def test_rest_routes_mirror_actions(app_client):
    _app, client = app_client
    token = _hr(client)
    headers = {"Authorization": f"Bearer {token}"}
    seed_candidate("CAN-1", email="one@example.com")

    res = client.post("/api/requisitions", json={"title": "Designer", "openings": 1}, headers=headers)
    rid = ok_data(res)["requisition"]["requisitionId"]
    ok_data(client.post(f"/api/requisitions/{rid}/publish", headers=headers))

    res = client.post(f"/api/requisitions/{rid}/applications", json={"candidateId": "CAN-1", "consent": True}, headers=headers)
    app_id = ok_data(res)["application"]["applicationId"]

    items = ok_data(client.get(f"/api/applications?requisitionId={rid}", headers=headers))["items"]
    assert [i["applicationId"] for i in items] == [app_id]

    res = client.get(f"/api/requisitions/{rid}")
    assert res.status_code == 401
    assert error_of(res)["code"] == "AUTH_INVALID"

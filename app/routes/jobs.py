"""
Job management endpoints for the Celery-backed sweeps.

Callers authenticate either with `X-Internal-Token` (cron) or with a session
whose role may run the underlying action.
"""
from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.tasks import celery_app
from app.tasks.notifications import deliver_notifications
from app.tasks.sweeps import access_sweep, clearance_reminders, onboarding_reminders
from auth import assert_permission, role_or_public, validate_session_token
from db import SessionLocal
from utils import ApiError, err

jobs_bp = Blueprint("jobs", __name__)

_JOBS = {
    "access-sweep": ("ACCESS_SWEEP_RUN", access_sweep),
    "onboarding-reminders": ("ONBOARDING_SEND_REMINDERS", onboarding_reminders),
    "clearance-reminders": ("CLEARANCE_SEND_REMINDERS", clearance_reminders),
    "deliver-notifications": ("NOTIFICATIONS_DELIVER", deliver_notifications),
}


def _authorize(action: str) -> None:
    cfg = current_app.config["CFG"]
    provided = str(request.headers.get("X-Internal-Token") or "").strip()
    if cfg.INTERNAL_CRON_TOKEN and provided == cfg.INTERNAL_CRON_TOKEN:
        return

    authz = str(request.headers.get("Authorization") or "").strip()
    token = authz.split(" ", 1)[1].strip() if authz.lower().startswith("bearer ") else ""
    db = SessionLocal()
    try:
        auth_ctx = validate_session_token(db, token)
        if not auth_ctx.valid:
            raise ApiError("AUTH_INVALID", "Invalid or expired session")
        assert_permission(db, role_or_public(auth_ctx), action)
        db.commit()
    finally:
        db.close()


@jobs_bp.post("/<job_name>")
def enqueue_job(job_name: str):
    """
    Enqueue a sweep on the Celery worker.

    Request body (optional):
        { "force": true }   # reminder sweeps only: ignore the resend interval

    Returns:
        { "ok": true, "data": { "job_id": "...", "status": "queued" } }
    """
    job = _JOBS.get(str(job_name or "").strip().lower())
    if not job:
        return err("NOT_FOUND", f"Unknown job: {job_name}", http_status=404)
    action, task = job

    try:
        _authorize(action)
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)

    body = request.get_json(silent=True) or {}
    kwargs = {"force": bool(body.get("force"))} if job_name in {"onboarding-reminders", "clearance-reminders"} else {}
    result = task.apply_async(kwargs=kwargs)

    return jsonify({"ok": True, "data": {"job_id": result.id, "job": job_name, "status": "queued"}, "error": None}), 202


@jobs_bp.get("/<job_id>")
def get_job_status(job_id: str):
    """Status and result of a background job: PENDING, STARTED, RETRY, SUCCESS or FAILURE."""
    try:
        _authorize("NOTIFICATIONS_DELIVER")
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)

    task = celery_app.AsyncResult(job_id)
    data = {"job_id": job_id, "status": task.state}
    if task.state == "PENDING":
        data["message"] = "Job is queued or unknown"
    elif task.state == "SUCCESS":
        data["result"] = task.result
    elif task.state in {"FAILURE", "RETRY"}:
        data["error"] = str(task.info) if task.info else "Unknown error"
    elif task.state == "REVOKED":
        data["message"] = "Job was cancelled"

    return jsonify({"ok": True, "data": data, "error": None})


@jobs_bp.delete("/<job_id>")
def cancel_job(job_id: str):
    try:
        _authorize("NOTIFICATIONS_DELIVER")
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)

    celery_app.control.revoke(job_id, terminate=True)
    return jsonify({"ok": True, "data": {"job_id": job_id, "status": "revoked"}, "error": None})

from __future__ import annotations

import base64
import logging
import os
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from dotenv import load_dotenv
from flask import Blueprint, Flask, current_app, g, request
from flask_cors import CORS
from sqlalchemy.exc import DBAPIError
from zoneinfo import ZoneInfo

from actions import dispatch
from actions.helpers import SYSTEM_AUTH, append_audit
from auth import ALL_ROLES, STATIC_RBAC_PERMISSIONS, assert_permission, is_public_action, role_or_public, validate_session_token
from config import Config
from db import SessionLocal, init_engine
from models import Permission, Role
from services.notifications import kick_delivery
from utils import ApiError, AuthContext, SimpleRateLimiter, err, iso_utc_now, now_monotonic, ok, parse_json_body, redact_for_audit


rest_api = Blueprint("rest_api", __name__)

logger = logging.getLogger("api")

# Sweeps run by the scheduler thread, the Celery beat and the internal job routes.
SWEEP_ACTIONS = ("ACCESS_SWEEP_RUN", "ONBOARDING_SEND_REMINDERS", "CLEARANCE_SEND_REMINDERS")


def _rest_token() -> str:
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return str(request.headers.get("X-Session-Token") or "").strip() or str(request.args.get("token") or "").strip()


def _internal_auth(cfg: Config) -> Optional[AuthContext]:
    provided = str(request.headers.get("X-Internal-Token") or "").strip()
    expected = str(cfg.INTERNAL_CRON_TOKEN or "").strip()
    if expected and provided and provided == expected:
        return SYSTEM_AUTH
    return None


def _audit_api_call(db, action: str, auth_ctx: Optional[AuthContext], data: Any, stage_tag: str) -> None:
    append_audit(
        db,
        entityType="API",
        entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
        action=action,
        stageTag=stage_tag,
        actor=auth_ctx,
        meta={"data": redact_for_audit(data or {}), "requestId": str(getattr(g, "request_id", "") or "")},
    )


def _write_error_audit(action: str, auth_ctx: Optional[AuthContext], data: Any, err_obj: ApiError) -> None:
    db2 = SessionLocal()
    try:
        append_audit(
            db2,
            entityType="API",
            entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
            action=str(action or "").upper() or "UNKNOWN",
            stageTag="API_ERROR",
            actor=auth_ctx,
            remark=f"{err_obj.code}: {err_obj.message}",
            meta={
                "data": redact_for_audit(data or {}),
                "error": {"code": err_obj.code, "message": err_obj.message},
                "requestId": str(getattr(g, "request_id", "") or ""),
            },
        )
        db2.commit()
    except Exception:
        db2.rollback()
        logger.warning("could not write error audit for action=%s", action, exc_info=True)
    finally:
        db2.close()


def _db_error_message(cfg: Config, e: DBAPIError) -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    orig = re.sub(r"\s+", " ", str(getattr(e, "orig", "") or "")).strip()
    if len(orig) > 300:
        orig = orig[:300] + "..."
    if cfg.IS_PRODUCTION or not orig:
        return f"Database error (requestId: {request_id})" if request_id else "Database error"
    return f"Database error: {orig} (requestId: {request_id})" if request_id else f"Database error: {orig}"


def _rest_handle(action: str, data: dict, *, allow_internal: bool = False):
    cfg: Config = current_app.config["CFG"]
    action_u = str(action or "").upper().strip()

    db = None
    auth_ctx = None
    try:
        db = SessionLocal()

        if allow_internal:
            auth_ctx = _internal_auth(cfg)
        if auth_ctx is None:
            auth_ctx = validate_session_token(db, _rest_token())
        if not auth_ctx or not auth_ctx.valid:
            raise ApiError("AUTH_INVALID", "Invalid or expired session")

        assert_permission(db, role_or_public(auth_ctx), action_u)

        out = dispatch(action_u, data or {}, auth_ctx, db, cfg)
        _audit_api_call(db, action_u, auth_ctx, data, "API_CALL_REST")
        db.commit()
    except ApiError as e:
        if db is not None:
            db.rollback()
        _write_error_audit(action_u, auth_ctx, data, e)
        return err(e.code, e.message, http_status=e.http_status)
    except DBAPIError as e:
        if db is not None:
            db.rollback()
        api_err = ApiError("INTERNAL", _db_error_message(cfg, e))
        _write_error_audit(action_u, auth_ctx, data, api_err)
        logger.exception("rest action=%s", action_u)
        return err(api_err.code, api_err.message, http_status=api_err.http_status)
    except Exception:
        if db is not None:
            db.rollback()
        api_err = ApiError("INTERNAL", "Unexpected error")
        _write_error_audit(action_u, auth_ctx, data, api_err)
        logger.exception("rest action=%s", action_u)
        return err(api_err.code, api_err.message, http_status=api_err.http_status)
    finally:
        if db is not None:
            db.close()

    kick_delivery(cfg)
    return ok(out)


def _body() -> dict:
    body = request.get_json(silent=True)
    return dict(body) if isinstance(body, dict) else {}


def _with(extra: dict[str, Any], source: Optional[dict] = None) -> dict:
    data = dict(source if source is not None else _body())
    data.update(extra)
    return data


def run_sweep(action: str, cfg: Config, data: Optional[dict] = None) -> dict:
    """Run one sweep action in its own transaction as the system principal."""
    db = SessionLocal()
    try:
        out = dispatch(action, data or {}, SYSTEM_AUTH, db, cfg)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    kick_delivery(cfg)
    return out


def _maybe_start_internal_scheduler(cfg: Config):
    """
    Daily in-process scheduler for the lifecycle sweeps.

    Multi-instance deployments should use the Celery beat (app.tasks) or call
    `POST /api/jobs/<sweep>` with `X-Internal-Token` = `INTERNAL_CRON_TOKEN`
    from a single cron instead. Enable with ENABLE_SCHEDULER=1; the run time is
    SCHEDULER_HOUR:SCHEDULER_MINUTE in APP_TIMEZONE.
    """

    if not cfg.ENABLE_SCHEDULER:
        return

    try:
        tz = ZoneInfo(cfg.APP_TIMEZONE)
    except Exception:
        tz = timezone.utc

    sched_log = logging.getLogger("scheduler")

    def _loop():
        while True:
            now_local = datetime.now(tz)
            next_run = datetime(now_local.year, now_local.month, now_local.day, cfg.SCHEDULER_HOUR, cfg.SCHEDULER_MINUTE, 0, tzinfo=tz)
            if next_run <= now_local:
                next_run = next_run + timedelta(days=1)
            time.sleep(max(1.0, (next_run - now_local).total_seconds()))

            for action in SWEEP_ACTIONS:
                try:
                    out = run_sweep(action, cfg)
                    sched_log.info("%s ok: %s", action, {k: v for k, v in out.items() if k != "message"})
                except Exception:
                    sched_log.exception("%s failed", action)

    t = threading.Thread(target=_loop, name="scheduler", daemon=True)
    t.start()
    sched_log.info("in-process scheduler enabled at %02d:%02d %s", cfg.SCHEDULER_HOUR, cfg.SCHEDULER_MINUTE, cfg.APP_TIMEZONE)


# --- Recruitment ---


@rest_api.get("/api/me")
def rest_get_me():
    return _rest_handle("GET_ME", {})


@rest_api.post("/api/requisitions")
def rest_requisition_create():
    return _rest_handle("REQUISITION_CREATE", _body())


@rest_api.get("/api/requisitions")
def rest_requisition_list():
    return _rest_handle("REQUISITION_LIST", dict(request.args))


@rest_api.get("/api/requisitions/<requisition_id>")
def rest_requisition_get(requisition_id: str):
    return _rest_handle("REQUISITION_GET", {"requisitionId": requisition_id})


@rest_api.post("/api/requisitions/<requisition_id>/publish")
def rest_requisition_publish(requisition_id: str):
    return _rest_handle("REQUISITION_PUBLISH", {"requisitionId": requisition_id})


@rest_api.post("/api/requisitions/<requisition_id>/status")
def rest_requisition_status(requisition_id: str):
    return _rest_handle("REQUISITION_STATUS_UPDATE", _with({"requisitionId": requisition_id}))


@rest_api.post("/api/requisitions/<requisition_id>/applications")
def rest_application_submit(requisition_id: str):
    return _rest_handle("APPLICATION_SUBMIT", _with({"requisitionId": requisition_id}))


@rest_api.get("/api/requisitions/<requisition_id>/ranked")
def rest_application_ranked(requisition_id: str):
    return _rest_handle("APPLICATION_RANKED", {"requisitionId": requisition_id})


@rest_api.get("/api/applications")
def rest_application_list():
    return _rest_handle("APPLICATION_LIST", dict(request.args))


@rest_api.post("/api/applications/<application_id>/status")
def rest_application_status(application_id: str):
    return _rest_handle("APPLICATION_STATUS_UPDATE", _with({"applicationId": application_id}))


@rest_api.get("/api/applications/<application_id>/history")
def rest_application_history(application_id: str):
    return _rest_handle("APPLICATION_HISTORY_GET", {"applicationId": application_id})


@rest_api.post("/api/applications/<application_id>/interviews")
def rest_interview_schedule(application_id: str):
    return _rest_handle("INTERVIEW_SCHEDULE", _with({"applicationId": application_id}))


@rest_api.post("/api/applications/<application_id>/offer")
def rest_offer_create(application_id: str):
    return _rest_handle("OFFER_CREATE", _with({"applicationId": application_id}))


@rest_api.get("/api/applications/<application_id>/offer")
def rest_offer_for_application(application_id: str):
    return _rest_handle("OFFER_GET", {"applicationId": application_id})


@rest_api.get("/api/candidates/<candidate_id>/referrals")
def rest_referral_list(candidate_id: str):
    return _rest_handle("REFERRAL_LIST", {"candidateId": candidate_id})


@rest_api.post("/api/candidates/<candidate_id>/referrals")
def rest_referral_tag(candidate_id: str):
    return _rest_handle("REFERRAL_TAG", _with({"candidateId": candidate_id}))


@rest_api.get("/api/candidates/<candidate_id>/offers")
def rest_offers_for_candidate(candidate_id: str):
    return _rest_handle("OFFER_GET", {"candidateId": candidate_id})


@rest_api.post("/api/interviews/<interview_id>/status")
def rest_interview_status(interview_id: str):
    return _rest_handle("INTERVIEW_STATUS_UPDATE", _with({"interviewId": interview_id}))


@rest_api.post("/api/interviews/<interview_id>/feedback")
def rest_interview_feedback_submit(interview_id: str):
    return _rest_handle("INTERVIEW_FEEDBACK_SUBMIT", _with({"interviewId": interview_id}))


@rest_api.get("/api/interviews/<interview_id>/feedback")
def rest_interview_feedback_get(interview_id: str):
    return _rest_handle("INTERVIEW_FEEDBACK_GET", {"interviewId": interview_id})


@rest_api.get("/api/interviews/<interview_id>/score")
def rest_interview_score(interview_id: str):
    return _rest_handle("INTERVIEW_SCORE_GET", {"interviewId": interview_id})


@rest_api.get("/api/offers/<offer_id>")
def rest_offer_get(offer_id: str):
    return _rest_handle("OFFER_GET", {"offerId": offer_id})


@rest_api.post("/api/offers/<offer_id>/respond")
def rest_offer_respond(offer_id: str):
    return _rest_handle("OFFER_RESPOND", _with({"offerId": offer_id}))


@rest_api.post("/api/offers/<offer_id>/finalize")
def rest_offer_finalize(offer_id: str):
    return _rest_handle("OFFER_FINALIZE", _with({"offerId": offer_id}))


@rest_api.post("/api/offers/<offer_id>/employee")
def rest_offer_create_employee(offer_id: str):
    return _rest_handle("OFFER_CREATE_EMPLOYEE", _with({"offerId": offer_id}))


# --- Onboarding ---


@rest_api.post("/api/onboarding")
def rest_onboarding_create():
    return _rest_handle("ONBOARDING_CREATE", _body())


@rest_api.get("/api/onboarding")
def rest_onboarding_list():
    return _rest_handle("ONBOARDING_LIST", dict(request.args))


@rest_api.get("/api/onboarding/stats")
def rest_onboarding_stats():
    return _rest_handle("ONBOARDING_STATS", {})


@rest_api.get("/api/onboarding/<onboarding_id>")
def rest_onboarding_get(onboarding_id: str):
    return _rest_handle("ONBOARDING_GET", {"onboardingId": onboarding_id})


@rest_api.post("/api/onboarding/<onboarding_id>/tasks")
def rest_onboarding_task_add(onboarding_id: str):
    return _rest_handle("ONBOARDING_TASK_ADD", _with({"onboardingId": onboarding_id}))


@rest_api.post("/api/onboarding/<onboarding_id>/tasks/<int:task_index>")
def rest_onboarding_task_update(onboarding_id: str, task_index: int):
    return _rest_handle("ONBOARDING_TASK_UPDATE", _with({"onboardingId": onboarding_id, "taskIndex": task_index}))


@rest_api.delete("/api/onboarding/<onboarding_id>/tasks/<int:task_index>")
def rest_onboarding_task_remove(onboarding_id: str, task_index: int):
    return _rest_handle("ONBOARDING_TASK_REMOVE", {"onboardingId": onboarding_id, "taskIndex": task_index})


@rest_api.post("/api/onboarding/<onboarding_id>/tasks/<int:task_index>/document")
def rest_onboarding_task_upload(onboarding_id: str, task_index: int):
    up = request.files.get("file")
    if not up:
        return err("BAD_REQUEST", "Missing file", http_status=400)
    blob = up.read() or b""
    return _rest_handle(
        "ONBOARDING_TASK_UPLOAD",
        {
            "onboardingId": onboarding_id,
            "taskIndex": task_index,
            "fileName": str(up.filename or "").strip() or "document",
            "mimeType": str(up.mimetype or "").strip(),
            "fileBase64": base64.b64encode(blob).decode("ascii"),
        },
    )


@rest_api.get("/api/employees/<employee_id>/onboarding")
def rest_onboarding_for_employee(employee_id: str):
    return _rest_handle("ONBOARDING_GET", {"employeeId": employee_id})


_ONBOARDING_MUTATORS = {
    "provision-access": "ONBOARDING_PROVISION_ACCESS",
    "reserve-equipment": "ONBOARDING_RESERVE_EQUIPMENT",
    "schedule-access": "ONBOARDING_SCHEDULE_ACCESS",
    "payroll": "ONBOARDING_TRIGGER_PAYROLL",
    "signing-bonus": "ONBOARDING_PROCESS_BONUS",
    "cancel": "ONBOARDING_CANCEL",
}


@rest_api.post("/api/employees/<employee_id>/onboarding/<operation>")
def rest_onboarding_mutator(employee_id: str, operation: str):
    action = _ONBOARDING_MUTATORS.get(str(operation or "").strip().lower())
    if not action:
        return err("NOT_FOUND", f"Unknown onboarding operation: {operation}", http_status=404)
    return _rest_handle(action, _with({"employeeId": employee_id}))


# --- Offboarding ---


@rest_api.post("/api/terminations")
def rest_termination_create():
    return _rest_handle("TERMINATION_CREATE", _body())


@rest_api.get("/api/terminations")
def rest_termination_list():
    return _rest_handle("TERMINATION_LIST", dict(request.args))


@rest_api.get("/api/terminations/mine")
def rest_termination_my_list():
    return _rest_handle("TERMINATION_MY_LIST", {})


@rest_api.get("/api/terminations/<termination_id>")
def rest_termination_get(termination_id: str):
    return _rest_handle("TERMINATION_GET", {"terminationId": termination_id})


@rest_api.post("/api/terminations/<termination_id>/status")
def rest_termination_status(termination_id: str):
    return _rest_handle("TERMINATION_STATUS_UPDATE", _with({"terminationId": termination_id}))


@rest_api.patch("/api/terminations/<termination_id>")
def rest_termination_details(termination_id: str):
    return _rest_handle("TERMINATION_DETAILS_UPDATE", _with({"terminationId": termination_id}))


@rest_api.post("/api/terminations/<termination_id>/clearance")
def rest_clearance_create(termination_id: str):
    return _rest_handle("CLEARANCE_CREATE", {"terminationId": termination_id})


@rest_api.post("/api/terminations/<termination_id>/final-settlement")
def rest_final_settlement(termination_id: str):
    return _rest_handle("FINAL_SETTLEMENT_TRIGGER", {"terminationId": termination_id})


@rest_api.get("/api/employees/<employee_id>/appraisal/latest")
def rest_appraisal_latest(employee_id: str):
    return _rest_handle("APPRAISAL_LATEST_GET", {"employeeId": employee_id})


@rest_api.get("/api/clearance")
def rest_clearance_list():
    return _rest_handle("CLEARANCE_LIST", dict(request.args))


@rest_api.get("/api/employees/<employee_id>/clearance")
def rest_clearance_for_employee(employee_id: str):
    return _rest_handle("CLEARANCE_GET_BY_EMPLOYEE", {"employeeId": employee_id})


@rest_api.post("/api/clearance/<checklist_id>/items/<department>")
def rest_clearance_item_update(checklist_id: str, department: str):
    return _rest_handle("CLEARANCE_ITEM_UPDATE", _with({"checklistId": checklist_id, "department": department}))


@rest_api.post("/api/clearance/<checklist_id>/complete")
def rest_clearance_complete(checklist_id: str):
    return _rest_handle("CLEARANCE_COMPLETE", {"checklistId": checklist_id})


@rest_api.post("/api/employees/<employee_id>/revoke-access")
def rest_access_revoke(employee_id: str):
    return _rest_handle("ACCESS_REVOKE", _with({"employeeId": employee_id}))


# --- Internal jobs (cron callers use X-Internal-Token) ---


_JOB_ACTIONS = {
    "onboarding-reminders": "ONBOARDING_SEND_REMINDERS",
    "clearance-reminders": "CLEARANCE_SEND_REMINDERS",
    "access-sweep": "ACCESS_SWEEP_RUN",
    "deliver-notifications": "NOTIFICATIONS_DELIVER",
}


@rest_api.post("/api/jobs/<job_name>")
def rest_run_job(job_name: str):
    action = _JOB_ACTIONS.get(str(job_name or "").strip().lower())
    if not action:
        return err("NOT_FOUND", f"Unknown job: {job_name}", http_status=404)
    return _rest_handle(action, _body(), allow_internal=True)


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _seed_roles_and_permissions(db):
    now = iso_utc_now()
    actor = "SYSTEM_INIT"

    existing_roles = {str(r.roleCode or "").upper() for r in db.query(Role).all()}
    for rc in ALL_ROLES:
        if rc in existing_roles:
            continue
        db.add(
            Role(
                roleCode=rc,
                roleName=rc.replace("_", " ").title(),
                status="ACTIVE",
                createdAt=now,
                createdBy=actor,
                updatedAt=now,
                updatedBy=actor,
            )
        )

    # Only missing keys are inserted so edited rules survive restarts.
    existing_perm = {
        (str(p.permType or "").upper().strip(), str(p.permKey or "").upper().strip())
        for p in db.query(Permission).all()
    }
    for action, roles in STATIC_RBAC_PERMISSIONS.items():
        if ("ACTION", action.upper()) in existing_perm:
            continue
        db.add(
            Permission(
                permType="ACTION",
                permKey=action.upper(),
                rolesCsv=",".join(roles),
                enabled=True,
                updatedAt=now,
                updatedBy=actor,
            )
        )


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL, pool_size=cfg.DB_POOL_SIZE, max_overflow=cfg.DB_MAX_OVERFLOW)

    from models import Base  # imported after engine init

    Base.metadata.create_all(bind=engine)

    app = Flask(__name__)
    app.config["CFG"] = cfg
    app.config["MAX_CONTENT_LENGTH"] = cfg.MAX_UPLOAD_BYTES * 2

    CORS(app, origins=cfg.ALLOWED_ORIGINS, supports_credentials=False)
    app.register_blueprint(rest_api)

    from app.routes.core import core_bp
    from app.routes.jobs import jobs_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(jobs_bp, url_prefix="/api/v1/jobs")

    limiter = SimpleRateLimiter()

    db0 = SessionLocal()
    try:
        _seed_roles_and_permissions(db0)
        db0.commit()
    finally:
        db0.close()

    @app.before_request
    def _before():
        g.request_id = str(request.headers.get("X-Request-ID") or "").strip()[:64] or os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.get("/")
    def index():
        return ok(
            {
                "status": "ok",
                "message": "HR lifecycle service is running. Use /health for a quick check and POST /api for actions.",
                "endpoints": {"health": "/health", "ready": "/ready", "api": "/api"},
            }
        )

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed", http_status=405)

    @app.errorhandler(413)
    def too_large(_e):
        return err("BAD_REQUEST", "Request body too large", http_status=413)

    @app.post("/api")
    def api_route():
        cfg2: Config = app.config["CFG"]
        db = None
        auth_ctx = None
        action_u = ""
        data: Any = {}

        try:
            body = parse_json_body(request.get_data(as_text=True))
            action_u = str(body.get("action") or "").upper().strip()
            token = body.get("token") or _rest_token()
            data = body.get("data") or {}
            if not isinstance(data, dict):
                raise ApiError("BAD_REQUEST", "data must be an object")

            if not action_u:
                raise ApiError("BAD_REQUEST", "Missing action")

            ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
            if action_u == "LOGIN_EXCHANGE":
                limiter.check(f"{ip}:LOGIN", cfg2.RATE_LIMIT_LOGIN)
            else:
                limiter.check(f"{ip}:GLOBAL", cfg2.RATE_LIMIT_GLOBAL)
                limiter.check(f"{ip}:API:{action_u}", cfg2.RATE_LIMIT_DEFAULT)

            db = SessionLocal()

            if not is_public_action(action_u):
                auth_ctx = validate_session_token(db, token)
                if not auth_ctx.valid:
                    raise ApiError("AUTH_INVALID", "Invalid or expired session")

            assert_permission(db, role_or_public(auth_ctx), action_u)

            out = dispatch(action_u, data, auth_ctx, db, cfg2)
            _audit_api_call(db, action_u, auth_ctx, data, "API_CALL")
            db.commit()
        except ApiError as e:
            if db is not None:
                db.rollback()
            _write_error_audit(action_u, auth_ctx, data, e)
            return err(e.code, e.message, http_status=e.http_status)
        except DBAPIError as e:
            if db is not None:
                db.rollback()
            api_err = ApiError("INTERNAL", _db_error_message(cfg2, e))
            _write_error_audit(action_u, auth_ctx, data, api_err)
            logger.exception("request_id=%s action=%s", g.request_id, action_u)
            return err(api_err.code, api_err.message, http_status=api_err.http_status)
        except Exception as e:
            if db is not None:
                db.rollback()
            if cfg2.IS_PRODUCTION:
                msg = f"Unexpected error (requestId: {g.request_id})"
            else:
                msg = f"Unexpected error: {type(e).__name__} (requestId: {g.request_id})"
            api_err = ApiError("INTERNAL", msg)
            _write_error_audit(action_u, auth_ctx, data, api_err)
            logger.exception("request_id=%s action=%s", g.request_id, action_u)
            return err(api_err.code, api_err.message, http_status=api_err.http_status)
        finally:
            if db is not None:
                db.close()

        kick_delivery(cfg2)

        latency_ms = int((now_monotonic() - g.start_ts) * 1000)
        logger.info(
            "request_id=%s action=%s user=%s role=%s latency_ms=%s",
            g.request_id,
            action_u,
            (auth_ctx.userId if auth_ctx else "PUBLIC"),
            (auth_ctx.role if auth_ctx else "PUBLIC"),
            latency_ms,
        )
        return ok(out)

    _maybe_start_internal_scheduler(cfg)
    return app


if __name__ == "__main__":
    app = create_app()
    cfg = app.config["CFG"]

    os.makedirs(cfg.UPLOAD_DIR, exist_ok=True)
    app.run(host=cfg.HOST, port=cfg.PORT)

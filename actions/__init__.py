"""
Action dispatch for `POST /api` and the REST routes.

Every handler has the signature `handler(data, auth, db, cfg) -> dict`. The
caller owns the transaction: it commits on success and rolls back when an
ApiError (or anything else) escapes.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from utils import ApiError, AuthContext


Handler = Callable[[dict, Optional[AuthContext], Any, Any], dict]

_HANDLERS: dict[str, Handler] = {}


def _notifications_deliver(data, auth, db, cfg):
    from services.notifications import deliver_pending

    limit = (data or {}).get("limit")
    out = deliver_pending(db, cfg=cfg, limit=int(limit) if limit else None)
    out["message"] = f"Delivered {out['sent']} notification(s)"
    return out


def _access_sweep(data, auth, db, cfg):
    from actions.access_revocation import run_access_sweep

    out = run_access_sweep(db, cfg, auth=auth)
    out["message"] = "Access sweep completed"
    return out


def _build() -> dict[str, Handler]:
    # Imported here: several action modules import services that import actions.helpers.
    from actions import (
        access_revocation,
        applications,
        auth_actions,
        clearance,
        interviews,
        offers,
        onboarding,
        requisitions,
        termination,
    )

    return {
        "LOGIN_EXCHANGE": auth_actions.login_exchange,
        "SESSION_VALIDATE": auth_actions.session_validate,
        "GET_ME": auth_actions.get_me,
        # Recruitment
        "REQUISITION_CREATE": requisitions.requisition_create,
        "REQUISITION_PUBLISH": requisitions.requisition_publish,
        "REQUISITION_STATUS_UPDATE": requisitions.requisition_status_update,
        "REQUISITION_GET": requisitions.requisition_get,
        "REQUISITION_LIST": requisitions.requisition_list,
        "APPLICATION_SUBMIT": applications.application_submit,
        "APPLICATION_STATUS_UPDATE": applications.application_status_update,
        "APPLICATION_LIST": applications.application_list,
        "APPLICATION_HISTORY_GET": applications.application_history_get,
        "APPLICATION_RANKED": interviews.application_ranked,
        "REFERRAL_TAG": applications.referral_tag,
        "REFERRAL_LIST": applications.referral_list,
        "INTERVIEW_SCHEDULE": interviews.interview_schedule,
        "INTERVIEW_STATUS_UPDATE": interviews.interview_status_update,
        "INTERVIEW_FEEDBACK_SUBMIT": interviews.interview_feedback_submit,
        "INTERVIEW_FEEDBACK_GET": interviews.interview_feedback_get,
        "INTERVIEW_SCORE_GET": interviews.interview_score_get,
        "OFFER_CREATE": offers.offer_create,
        "OFFER_RESPOND": offers.offer_respond,
        "OFFER_FINALIZE": offers.offer_finalize,
        "OFFER_GET": offers.offer_get,
        "OFFER_CREATE_EMPLOYEE": offers.offer_create_employee,
        # Onboarding
        "ONBOARDING_CREATE": onboarding.onboarding_create,
        "ONBOARDING_GET": onboarding.onboarding_get,
        "ONBOARDING_LIST": onboarding.onboarding_list,
        "ONBOARDING_STATS": onboarding.onboarding_stats,
        "ONBOARDING_TASK_UPDATE": onboarding.onboarding_task_update,
        "ONBOARDING_TASK_ADD": onboarding.onboarding_task_add,
        "ONBOARDING_TASK_REMOVE": onboarding.onboarding_task_remove,
        "ONBOARDING_TASK_UPLOAD": onboarding.onboarding_task_upload,
        "ONBOARDING_SEND_REMINDERS": onboarding.onboarding_send_reminders,
        "ONBOARDING_PROVISION_ACCESS": onboarding.onboarding_provision_access,
        "ONBOARDING_RESERVE_EQUIPMENT": onboarding.onboarding_reserve_equipment,
        "ONBOARDING_SCHEDULE_ACCESS": onboarding.onboarding_schedule_access,
        "ONBOARDING_TRIGGER_PAYROLL": onboarding.onboarding_trigger_payroll,
        "ONBOARDING_PROCESS_BONUS": onboarding.onboarding_process_bonus,
        "ONBOARDING_CANCEL": onboarding.onboarding_cancel,
        # Offboarding
        "TERMINATION_CREATE": termination.termination_create,
        "TERMINATION_MY_LIST": termination.termination_my_list,
        "TERMINATION_LIST": termination.termination_list,
        "TERMINATION_GET": termination.termination_get,
        "TERMINATION_STATUS_UPDATE": termination.termination_status_update,
        "TERMINATION_DETAILS_UPDATE": termination.termination_details_update,
        "APPRAISAL_LATEST_GET": termination.appraisal_latest_get,
        "CLEARANCE_CREATE": clearance.clearance_create,
        "CLEARANCE_GET_BY_EMPLOYEE": clearance.clearance_get_by_employee,
        "CLEARANCE_LIST": clearance.clearance_list,
        "CLEARANCE_ITEM_UPDATE": clearance.clearance_item_update,
        "CLEARANCE_COMPLETE": clearance.clearance_complete,
        "CLEARANCE_SEND_REMINDERS": clearance.clearance_send_reminders,
        "FINAL_SETTLEMENT_TRIGGER": clearance.final_settlement_trigger,
        "ACCESS_REVOKE": access_revocation.access_revoke,
        "ACCESS_SWEEP_RUN": _access_sweep,
        # Operations
        "NOTIFICATIONS_DELIVER": _notifications_deliver,
    }


def handlers() -> dict[str, Handler]:
    if not _HANDLERS:
        _HANDLERS.update(_build())
    return _HANDLERS


def dispatch(action: str, data: dict, auth: Optional[AuthContext], db, cfg) -> dict:
    key = str(action or "").upper().strip()
    fn = handlers().get(key)
    if fn is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {key}")
    return fn(data or {}, auth, db, cfg)

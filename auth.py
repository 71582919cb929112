from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from sqlalchemy import select

from cache_layer import cache_get, cache_set
from models import Permission, Role, Session as DbSession, User
from utils import ApiError, AuthContext, normalize_role, parse_datetime_maybe, parse_roles_csv, sha256_hex, iso_utc_now, new_uuid, to_iso_utc


PUBLIC_ACTIONS = {
    "LOGIN_EXCHANGE",
}


ALL_ROLES = [
    "SYSTEM_ADMIN",
    "HR_MANAGER",
    "HR_EMPLOYEE",
    "HR_ADMIN",
    "RECRUITER",
    "DEPARTMENT_HEAD",
    "FINANCE_STAFF",
    "PAYROLL_MANAGER",
    "PAYROLL_SPECIALIST",
    "EMPLOYEE",
    "CANDIDATE",
]

_HR = ["HR_EMPLOYEE", "HR_MANAGER", "SYSTEM_ADMIN"]
_HR_LEADS = ["HR_MANAGER", "SYSTEM_ADMIN"]
_STAFF = [r for r in ALL_ROLES if r != "CANDIDATE"]
_CLEARANCE_DESK = _HR + ["HR_ADMIN", "DEPARTMENT_HEAD", "FINANCE_STAFF", "PAYROLL_MANAGER", "PAYROLL_SPECIALIST"]


STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "LOGIN_EXCHANGE": ["PUBLIC"],
    "SESSION_VALIDATE": list(ALL_ROLES),
    "GET_ME": list(ALL_ROLES),
    # Recruitment
    "REQUISITION_CREATE": _HR_LEADS,
    "REQUISITION_PUBLISH": _HR,
    "REQUISITION_STATUS_UPDATE": _HR_LEADS,
    "REQUISITION_GET": list(ALL_ROLES),
    "REQUISITION_LIST": list(ALL_ROLES),
    "APPLICATION_SUBMIT": ["CANDIDATE"] + _HR,
    "APPLICATION_STATUS_UPDATE": _HR,
    "APPLICATION_LIST": _HR + ["RECRUITER"],
    "APPLICATION_HISTORY_GET": _HR + ["RECRUITER"],
    "APPLICATION_RANKED": _HR,
    "REFERRAL_TAG": _HR,
    "REFERRAL_LIST": _HR,
    "INTERVIEW_SCHEDULE": _HR + ["RECRUITER"],
    "INTERVIEW_STATUS_UPDATE": _HR + ["RECRUITER"],
    "INTERVIEW_FEEDBACK_SUBMIT": _STAFF,
    "INTERVIEW_FEEDBACK_GET": _STAFF,
    "INTERVIEW_SCORE_GET": _STAFF,
    "OFFER_CREATE": _HR,
    "OFFER_RESPOND": ["CANDIDATE"],
    "OFFER_FINALIZE": _HR_LEADS,
    "OFFER_GET": _HR + ["CANDIDATE"],
    "OFFER_CREATE_EMPLOYEE": _HR_LEADS,
    # Onboarding
    "ONBOARDING_CREATE": _HR,
    "ONBOARDING_GET": _HR + ["EMPLOYEE"],
    "ONBOARDING_LIST": _HR,
    "ONBOARDING_STATS": _HR,
    "ONBOARDING_TASK_UPDATE": _HR,
    "ONBOARDING_TASK_ADD": _HR,
    "ONBOARDING_TASK_REMOVE": _HR,
    "ONBOARDING_TASK_UPLOAD": _HR + ["EMPLOYEE"],
    "ONBOARDING_SEND_REMINDERS": _HR,
    "ONBOARDING_PROVISION_ACCESS": _HR,
    "ONBOARDING_RESERVE_EQUIPMENT": _HR,
    "ONBOARDING_SCHEDULE_ACCESS": _HR,
    "ONBOARDING_TRIGGER_PAYROLL": _HR_LEADS,
    "ONBOARDING_PROCESS_BONUS": _HR_LEADS,
    "ONBOARDING_CANCEL": _HR_LEADS,
    # Offboarding
    "TERMINATION_CREATE": _STAFF,
    "TERMINATION_MY_LIST": _STAFF,
    "TERMINATION_LIST": ["HR_MANAGER"],
    "TERMINATION_GET": ["HR_MANAGER"],
    "TERMINATION_STATUS_UPDATE": ["HR_MANAGER"],
    "TERMINATION_DETAILS_UPDATE": ["HR_MANAGER"],
    "APPRAISAL_LATEST_GET": ["HR_MANAGER"],
    "CLEARANCE_CREATE": ["HR_MANAGER"],
    "CLEARANCE_GET_BY_EMPLOYEE": ["HR_MANAGER"],
    "CLEARANCE_LIST": _CLEARANCE_DESK,
    "CLEARANCE_ITEM_UPDATE": _STAFF,
    "CLEARANCE_COMPLETE": ["HR_MANAGER"],
    "CLEARANCE_SEND_REMINDERS": _HR_LEADS,
    "FINAL_SETTLEMENT_TRIGGER": ["HR_MANAGER"],
    "ACCESS_REVOKE": ["SYSTEM_ADMIN"],
    "ACCESS_SWEEP_RUN": ["SYSTEM_ADMIN"],
    # Operations
    "NOTIFICATIONS_DELIVER": ["SYSTEM_ADMIN"],
}


_RBAC_CACHE_PREFIX = "RBAC:"
_RBAC_ROLES_INDEX_KEY = f"{_RBAC_CACHE_PREFIX}ROLES_INDEX"
_RBAC_RULE_PREFIX = f"{_RBAC_CACHE_PREFIX}RULE:"
_RBAC_PERMS_FOR_ROLE_PREFIX = f"{_RBAC_CACHE_PREFIX}PERMS_FOR_ROLE:"

_INVALID = AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def verify_google_id_token(id_token: str, google_client_id: str, allow_test_tokens: bool = False) -> dict[str, Any]:
    if not google_client_id:
        raise ApiError("INTERNAL", "Missing GOOGLE_CLIENT_ID")
    if not id_token or not isinstance(id_token, str):
        raise ApiError("BAD_REQUEST", "Missing idToken")

    if allow_test_tokens and id_token.startswith("TEST:"):
        email = id_token.split(":", 1)[1].strip().lower()
        if not email:
            raise ApiError("AUTH_INVALID", "Invalid test token")
        return {"email": email, "fullName": "Test User", "picture": "", "sub": "TEST", "exp": 0}

    try:
        req = google_requests.Request()
        payload = google_id_token.verify_oauth2_token(id_token, req, audience=google_client_id)
    except Exception:
        raise ApiError("AUTH_INVALID", "Invalid Google ID token")

    if payload.get("aud") != google_client_id:
        raise ApiError("AUTH_INVALID", "Google token audience mismatch")

    if str(payload.get("email_verified", "")).lower() != "true":
        raise ApiError("AUTH_INVALID", "Google email not verified")

    return {
        "email": str(payload.get("email", "")).lower(),
        "fullName": payload.get("name", "") or "",
        "picture": payload.get("picture", "") or "",
        "sub": payload.get("sub", "") or "",
        "exp": payload.get("exp", 0) or 0,
    }


def issue_session_token(db, *, user_id: str, email: str, role: str, session_ttl_minutes: int) -> dict[str, str]:
    token = "ST-" + uuid_hex_32() + uuid_hex_32()
    now = datetime.now(timezone.utc)
    issued_at = to_iso_utc(now)
    expires_at = to_iso_utc(now + timedelta(minutes=session_ttl_minutes))

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user_id or ""),
            email=str(email or ""),
            role=str(normalize_role(role) or ""),
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
            revokedBy="",
        )
    )
    return {"sessionToken": token, "expiresAt": expires_at}


def uuid_hex_32() -> str:
    return new_uuid().replace("-", "")


def revoke_user_sessions(db, *, user_id: str, revoked_by: str) -> int:
    """
    Revoke all active sessions for a user.

    Used when an employee's access is revoked so remembered tokens stop working
    immediately.
    """

    uid = str(user_id or "").strip()
    if not uid:
        return 0

    now = iso_utc_now()
    rows = db.execute(select(DbSession).where(DbSession.userId == uid).where(DbSession.revokedAt == "")).scalars().all()
    for s in rows:
        s.revokedAt = now
        s.revokedBy = str(revoked_by or "")
    return len(rows)


def validate_session_token(db, token: Any) -> AuthContext:
    if not token or not isinstance(token, str):
        return _INVALID

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses:
        return _INVALID

    expires_at = getattr(ses, "expiresAt", "") or ""
    exp_dt = parse_datetime_maybe(expires_at)
    if exp_dt and exp_dt < datetime.now(timezone.utc):
        return _INVALID

    if getattr(ses, "revokedAt", ""):
        return _INVALID

    role_u = str(normalize_role(getattr(ses, "role", "")) or "")
    user_id = str(getattr(ses, "userId", "") or "").strip()

    usr = db.execute(select(User).where(User.userId == user_id)).scalar_one_or_none()
    if not usr:
        return _INVALID
    if str(getattr(usr, "status", "") or "").upper().strip() != "ACTIVE":
        raise ApiError("FORBIDDEN", "User is disabled", http_status=403)

    # Avoid writing on every request: update lastSeenAt at most once per interval.
    try:
        interval_s = int(str(os.getenv("SESSION_LAST_SEEN_UPDATE_SECONDS", "300") or "300"))
    except ValueError:
        interval_s = 300

    if interval_s <= 0:
        ses.lastSeenAt = iso_utc_now()
    else:
        last_dt = parse_datetime_maybe(getattr(ses, "lastSeenAt", "") or "")
        if not last_dt or (datetime.now(timezone.utc) - last_dt).total_seconds() >= interval_s:
            ses.lastSeenAt = iso_utc_now()

    return AuthContext(
        valid=True,
        userId=user_id,
        email=str(getattr(ses, "email", "") or ""),
        role=role_u,
        expiresAt=expires_at,
    )


def get_permission_rule(db, perm_type: str, perm_key: str) -> Optional[dict[str, Any]]:
    perm_type_u = str(perm_type or "").upper().strip()
    perm_key_u = str(perm_key or "").upper().strip()
    if not perm_type_u or not perm_key_u:
        return None

    cache_key = f"{_RBAC_RULE_PREFIX}{perm_type_u}:{perm_key_u}"
    cached = cache_get(cache_key)
    if cached is False:
        return None
    if isinstance(cached, dict):
        return cached

    row = (
        db.execute(select(Permission).where(Permission.permType == perm_type_u).where(Permission.permKey == perm_key_u))
        .scalars()
        .first()
    )
    if not row:
        cache_set(cache_key, False)
        return None
    out = {
        "enabled": bool(row.enabled),
        "roles": parse_roles_csv(row.rolesCsv or ""),
        "rolesCsv": row.rolesCsv or "",
    }
    cache_set(cache_key, out)
    return out


def _roles_index(db) -> dict[str, dict[str, Any]]:
    cached = cache_get(_RBAC_ROLES_INDEX_KEY)
    if isinstance(cached, dict):
        return cached

    rows = db.execute(select(Role)).scalars().all()
    out: dict[str, dict[str, Any]] = {}
    if not rows:
        for rc in ALL_ROLES:
            out[rc] = {"roleCode": rc, "roleName": rc, "status": "ACTIVE"}
        cache_set(_RBAC_ROLES_INDEX_KEY, out)
        return out
    for r in rows:
        code = normalize_role(r.roleCode)
        if not code:
            continue
        out[code] = {
            "roleCode": code,
            "roleName": str(r.roleName or code),
            "status": str(r.status or "ACTIVE").upper(),
        }
    cache_set(_RBAC_ROLES_INDEX_KEY, out)
    return out


def is_role_active(db, role: str) -> bool:
    r = normalize_role(role)
    if not r:
        return False
    it = _roles_index(db).get(r)
    if not it:
        return False
    return str(it.get("status", "")).upper() == "ACTIVE"


def assert_permission(db, role: str, action: str) -> None:
    role_u = normalize_role(role) or ""
    action_u = str(action or "").upper().strip()

    if is_public_action(action_u):
        return

    allowed_static = STATIC_RBAC_PERMISSIONS.get(action_u)
    rule = get_permission_rule(db, "ACTION", action_u)
    has_dyn = bool(rule and rule.get("enabled") is True)

    if not allowed_static and not has_dyn:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")

    if not role_u:
        raise ApiError("AUTH_INVALID", "Login required")
    if not is_role_active(db, role_u):
        raise ApiError("FORBIDDEN", f"Inactive or unknown role: {role_u}")

    # The app shell needs these for every ACTIVE role, including ones added later.
    if action_u in {"SESSION_VALIDATE", "GET_ME"}:
        return

    if has_dyn:
        roles = rule.get("roles") or []
        allowed = "PUBLIC" in roles or role_u in roles
    else:
        allowed = role_u in (allowed_static or [])

    if not allowed:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role_u}")


def permissions_for_role(db, role: str) -> dict[str, Any]:
    role_u = normalize_role(role)
    if not role_u:
        raise ApiError("AUTH_INVALID", "Login required")

    cache_key = f"{_RBAC_PERMS_FOR_ROLE_PREFIX}{role_u}"
    cached = cache_get(cache_key)
    if isinstance(cached, dict):
        return cached

    action_keys: list[str] = []
    overridden: set[str] = set()

    rows = (
        db.execute(select(Permission).where(Permission.enabled == True).where(Permission.permType == "ACTION"))  # noqa: E712
        .scalars()
        .all()
    )
    for row in rows:
        perm_key = str(row.permKey or "").upper().strip()
        if not perm_key:
            continue
        overridden.add(perm_key)
        roles = parse_roles_csv(row.rolesCsv or "")
        if role_u in roles or "PUBLIC" in roles:
            action_keys.append(perm_key)

    # Static actions count unless an enabled DB rule overrides them.
    for action_key, static_roles in STATIC_RBAC_PERMISSIONS.items():
        if action_key in overridden:
            continue
        if "PUBLIC" in static_roles or role_u in static_roles:
            action_keys.append(action_key)

    out = {"role": role_u, "actionKeys": sorted(set(action_keys))}
    cache_set(cache_key, out)
    return out


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"

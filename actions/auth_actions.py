from __future__ import annotations

from sqlalchemy import func, select

from actions.helpers import append_audit
from auth import issue_session_token, permissions_for_role, verify_google_id_token
from models import User
from services.directory import find_employee, serialize_employee_brief
from utils import ApiError, AuthContext, iso_utc_now, normalize_role


def _find_user_by_email(db, email: str):
    email_lc = str(email or "").strip().lower()
    if not email_lc or "@" not in email_lc:
        return None
    return db.execute(select(User).where(func.lower(User.email) == email_lc)).scalars().first()


def _me(db, user: User) -> dict:
    out = {
        "userId": user.userId,
        "email": str(user.email or ""),
        "fullName": str(user.fullName or user.email or ""),
        "role": normalize_role(user.role),
        "employeeId": str(user.employeeId or ""),
        "candidateId": str(user.candidateId or ""),
    }
    if out["employeeId"]:
        out["employee"] = serialize_employee_brief(find_employee(db, out["employeeId"]))
    return out


def login_exchange(data, auth: AuthContext | None, db, cfg):
    id_token = (data or {}).get("idToken")
    google_user = verify_google_id_token(
        id_token,
        google_client_id=cfg.GOOGLE_CLIENT_ID,
        allow_test_tokens=bool(cfg.ALLOW_TEST_TOKENS),
    )

    email = str(google_user.get("email") or "").strip().lower()
    user = _find_user_by_email(db, email)
    if not user:
        raise ApiError("AUTH_INVALID", "User not found in Users")
    if str(user.status or "").upper() != "ACTIVE":
        raise ApiError("AUTH_INVALID", "User is disabled")

    # Separated employees keep their User row but must not get a new session.
    if str(user.employeeId or "").strip():
        emp = find_employee(db, user.employeeId)
        if emp and str(emp.status or "").upper() == "INACTIVE":
            raise ApiError("FORBIDDEN", "Employee account is not ACTIVE")

    user.lastLoginAt = iso_utc_now()
    if not str(user.fullName or "").strip() and str(google_user.get("fullName") or "").strip():
        user.fullName = str(google_user.get("fullName")).strip()

    ses = issue_session_token(
        db,
        user_id=user.userId,
        email=user.email,
        role=user.role,
        session_ttl_minutes=cfg.SESSION_TTL_MINUTES,
    )

    append_audit(
        db,
        entityType="AUTH",
        entityId=str(user.userId),
        action="LOGIN_EXCHANGE",
        stageTag="AUTH_LOGIN",
        actor=AuthContext(valid=True, userId=user.userId, email=user.email, role=normalize_role(user.role) or "", expiresAt=ses["expiresAt"]),
    )

    return {"sessionToken": ses["sessionToken"], "expiresAt": ses["expiresAt"], "me": _me(db, user)}


def session_validate(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    return {
        "valid": True,
        "expiresAt": auth.expiresAt,
        "me": {"userId": auth.userId, "email": auth.email, "role": normalize_role(auth.role)},
    }


def get_me(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")

    user = db.execute(select(User).where(User.userId == auth.userId)).scalar_one_or_none()
    if not user:
        raise ApiError("AUTH_INVALID", "User missing")
    if str(user.status or "").upper() != "ACTIVE":
        raise ApiError("AUTH_INVALID", "User is disabled")

    return {"me": _me(db, user), "permissions": permissions_for_role(db, user.role)["actionKeys"]}

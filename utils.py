from __future__ import annotations

import hashlib
import json
import re
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from flask import jsonify


_HTTP_BY_CODE = {
    "BAD_REQUEST": 400,
    "AUTH_INVALID": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "INVALID_STATE": 409,
    "CAPACITY_FULL": 409,
    "RATE_LIMITED": 429,
    "INTERNAL": 500,
}


class ApiError(Exception):
    """
    Error surfaced to the caller as `{"ok": false, "error": {"code", "message"}}`.

    Codes used by the workflow actions:
      BAD_REQUEST    malformed input (bad id/date/format)
      NOT_FOUND      referenced entity absent
      CONFLICT       duplicate application/offer/onboarding/checklist
      INVALID_STATE  operation not valid for the current lifecycle state
      CAPACITY_FULL  requisition openings exhausted
      FORBIDDEN      actor lacks role or ownership
    """

    def __init__(self, code: str, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL")
        self.message = str(message or "")
        self.http_status = int(http_status or _HTTP_BY_CODE.get(self.code, 400))


@dataclass
class AuthContext:
    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str


def ok(data: Any):
    return jsonify({"ok": True, "data": data, "error": None}), 200


def err(code: str, message: str, http_status: int = 400):
    return jsonify({"ok": False, "data": None, "error": {"code": code, "message": message}}), http_status


def iso_utc_now() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    dt = dt.replace(microsecond=(dt.microsecond // 1000) * 1000)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_datetime_maybe(value: Any, app_timezone: str = "UTC") -> Optional[datetime]:
    """
    Parse ISO timestamps or plain dates into an aware UTC datetime.

    Naive values are interpreted in `app_timezone`. Returns None when the
    value is empty or cannot be parsed.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        s = str(value or "").strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None

    if dt.tzinfo is None:
        try:
            tz = ZoneInfo(app_timezone or "UTC")
        except Exception:
            tz = timezone.utc
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


def normalize_role(role: Any) -> str:
    r = str(role or "").strip().upper()
    if not r:
        return ""
    return re.sub(r"[\s\-]+", "_", r)


def parse_roles_csv(value: str) -> list[str]:
    out: list[str] = []
    for part in str(value or "").split(","):
        r = normalize_role(part)
        if r and r not in out:
            out.append(r)
    return out


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()


def new_uuid() -> str:
    return str(uuid.uuid4())


def now_monotonic() -> float:
    return time.monotonic()


def parse_json_body(raw: str) -> dict:
    if not raw or not str(raw).strip():
        raise ApiError("BAD_REQUEST", "Empty body")
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise ApiError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "JSON body must be an object")
    return body


def safe_json_string(value: Any, default: str = "") -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return default


def json_loads_maybe(raw: Any, default: Any):
    s = str(raw or "").strip()
    if not s:
        return default
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        return default


_REDACT_KEYS = {"token", "idtoken", "sessiontoken", "password", "file", "filebase64"}


def redact_for_audit(data: Any) -> Any:
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if str(k).lower() in _REDACT_KEYS:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v)
        return out
    if isinstance(data, list):
        return [redact_for_audit(x) for x in data[:50]]
    if isinstance(data, str) and len(data) > 500:
        return data[:500] + "..."
    return data


def sanitize_filename(name: str) -> str:
    base = re.sub(r"[^A-Za-z0-9._-]+", "_", str(name or "").strip())
    base = base.strip("._") or "file"
    return base[:120]


class SimpleRateLimiter:
    """Fixed-window in-process limiter keyed by caller + action."""

    def __init__(self, window_seconds: int = 60):
        self._window = max(1, int(window_seconds))
        self._hits: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def check(self, key: str, limit: int) -> None:
        if limit <= 0:
            return
        now = time.monotonic()
        with self._lock:
            count, started = self._hits.get(key, (0, now))
            if now - started >= self._window:
                count, started = 0, now
            count += 1
            self._hits[key] = (count, started)
        if count > limit:
            raise ApiError("RATE_LIMITED", "Too many requests")

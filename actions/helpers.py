from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from models import AuditLog, IdCounter, Setting
from utils import ApiError, AuthContext, iso_utc_now, safe_json_string


# Principal used by scheduled sweeps and other work not tied to a request.
SYSTEM_AUTH = AuthContext(valid=True, userId="SYSTEM", email="SYSTEM", role="SYSTEM_ADMIN", expiresAt="")


def actor_id(auth: Optional[AuthContext]) -> str:
    if not auth:
        return "SYSTEM"
    return str(auth.userId or auth.email or "").strip() or "SYSTEM"


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    stageTag: str = "",
    actor: Optional[AuthContext] = None,
    at: str = "",
    fromState: str = "",
    toState: str = "",
    remark: str = "",
    before: Any = None,
    after: Any = None,
    meta: Any = None,
) -> None:
    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            entityType=str(entityType or ""),
            entityId=str(entityId or ""),
            action=str(action or ""),
            fromState=str(fromState or ""),
            toState=str(toState or ""),
            stageTag=str(stageTag or action or ""),
            remark=str(remark or ""),
            actorUserId=actor_id(actor),
            actorRole=str(getattr(actor, "role", "") or "SYSTEM"),
            actorEmail=str(getattr(actor, "email", "") or ""),
            at=at or iso_utc_now(),
            correlationId="",
            beforeJson=safe_json_string(before, "") if before is not None else "",
            afterJson=safe_json_string(after, "") if after is not None else "",
            metaJson=safe_json_string(meta, "") if meta is not None else "",
        )
    )


def next_prefixed_id(db, *, counter_key: str, prefix: str, pad: int = 5, existing_ids: list[str] | None = None) -> str:
    """
    Allocate the next `PREFIX-00001` style id from `id_counters`.

    The counter row is locked for the rest of the transaction. On first use the
    counter starts after the highest numeric suffix found in `existing_ids`.
    """

    row = db.execute(select(IdCounter).where(IdCounter.key == counter_key).with_for_update(of=IdCounter)).scalars().first()
    if not row:
        start = 1
        for eid in existing_ids or []:
            suffix = str(eid or "")[len(prefix) :]
            if suffix.isdigit():
                start = max(start, int(suffix) + 1)
        row = IdCounter(key=counter_key, nextValue=start)
        db.add(row)
        db.flush()

    value = int(row.nextValue or 1)
    row.nextValue = value + 1
    return f"{prefix}{str(value).zfill(pad)}"


def new_entity_id(db, column, kind: str) -> str:
    """`kind` is the id prefix, e.g. "APP" -> APP-2026-00001."""
    year = datetime.now(timezone.utc).strftime("%Y")
    prefix = f"{kind}-{year}-"
    existing = [str(x or "") for x in db.execute(select(column).where(column.like(f"{prefix}%"))).scalars().all()]
    return next_prefixed_id(db, counter_key=f"{kind}_{year}", prefix=prefix, pad=5, existing_ids=existing)


def flush_or_conflict(db, message: str) -> None:
    """Flush pending inserts; a uniqueness violation becomes CONFLICT."""
    try:
        db.flush()
    except IntegrityError:
        raise ApiError("CONFLICT", message)


def setting_int(db, key: str, default: int) -> int:
    k = str(key or "").strip()
    if not k:
        return int(default)
    row = db.execute(select(Setting).where(Setting.key == k)).scalar_one_or_none()
    raw = str(getattr(row, "value", "") or "").strip() if row else ""
    if not raw:
        return int(default)
    try:
        return int(float(raw))
    except ValueError:
        return int(default)


def str_field(data: Any, key: str) -> str:
    return str((data or {}).get(key) or "").strip()


def append_note(existing: str, note: str) -> str:
    cur = str(existing or "")
    return f"{cur}\n{note}" if cur else note


def dumps_compact(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import event, select
from sqlalchemy.orm import Session

from actions.helpers import new_entity_id
from models import Document
from utils import ApiError, iso_utc_now, sanitize_filename


logger = logging.getLogger("documents")

# Session.info key holding file paths to unlink after a successful commit.
_PENDING_UNLINK_KEY = "documents.pending_unlink"


ALLOWED_MIME_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


def store_document(
    db,
    *,
    cfg: Any,
    owner_id: str,
    document_type: str,
    file_bytes: bytes,
    file_name: str,
    mime_type: str,
    uploaded_by: str,
) -> Document:
    mime = str(mime_type or "").strip().lower()
    if mime not in ALLOWED_MIME_TYPES:
        raise ApiError("BAD_REQUEST", "Invalid file type. Allowed: JPEG, PNG, PDF, DOC, DOCX")

    size = len(file_bytes or b"")
    if size <= 0:
        raise ApiError("BAD_REQUEST", "Empty file")
    max_bytes = int(getattr(cfg, "MAX_UPLOAD_BYTES", 5 * 1024 * 1024) or 5 * 1024 * 1024)
    if size > max_bytes:
        raise ApiError("BAD_REQUEST", f"File size exceeds {max_bytes // (1024 * 1024)}MB limit")

    upload_dir = str(getattr(cfg, "UPLOAD_DIR", "./uploads") or "./uploads")
    os.makedirs(upload_dir, exist_ok=True)

    doc_id = new_entity_id(db, Document.documentId, "DOC")
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    stored_name = f"{doc_id}_{stamp}_{sanitize_filename(file_name or 'document')}"
    path = os.path.join(upload_dir, stored_name)
    with open(path, "wb") as fh:
        fh.write(file_bytes)

    row = Document(
        documentId=doc_id,
        ownerId=str(owner_id or ""),
        documentType=str(document_type or "").strip().lower(),
        fileName=str(file_name or ""),
        mimeType=mime,
        sizeBytes=size,
        storagePath=path,
        uploadedAt=iso_utc_now(),
        uploadedBy=str(uploaded_by or ""),
    )
    db.add(row)
    return row


def get_document(db, document_id: str) -> Optional[Document]:
    did = str(document_id or "").strip()
    if not did:
        return None
    return db.execute(select(Document).where(Document.documentId == did)).scalar_one_or_none()


def delete_document(db, document_id: str) -> str:
    """Delete the row now; the stored file goes only once the transaction commits."""
    row = get_document(db, document_id)
    if not row:
        return ""
    path = str(row.storagePath or "")
    db.delete(row)
    if path:
        db.info.setdefault(_PENDING_UNLINK_KEY, []).append(path)
    return path


@event.listens_for(Session, "after_commit")
def _unlink_after_commit(session) -> None:
    for path in session.info.pop(_PENDING_UNLINK_KEY, []):
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError:
            logger.warning("could not remove stored document path=%s", path, exc_info=True)


@event.listens_for(Session, "after_rollback")
def _forget_after_rollback(session) -> None:
    session.info.pop(_PENDING_UNLINK_KEY, None)

"""Attachments (x-rays, invoices) stored on the local disk under UPLOAD_DIR/<org_id>/."""
from __future__ import annotations

import logging
import uuid
from pathlib import Path, PurePath

from sqlalchemy import select

from . import config
from .auth_service import CurrentUser
from .db import db_session
from .errors import NotFoundError
from .models import Attachment, Patient

logger = logging.getLogger(__name__)


def _path(storage_key: str) -> Path:
    return Path(config.UPLOAD_DIR) / storage_key


def _attachment_dict(a: Attachment) -> dict:
    return {
        "id": a.id,
        "patient_id": a.patient_id,
        "file_name": a.file_name,
        "content_type": a.content_type,
        "size": a.size,
        "created_at": a.created_at.isoformat(),
    }


def _get_attachment(s, org_id: str, attachment_id: str) -> Attachment:
    a = s.execute(
        select(Attachment).where(Attachment.id == attachment_id, Attachment.org_id == org_id)
    ).scalar_one_or_none()
    if a is None:
        raise NotFoundError("Attachment")
    return a


def save_attachment(
    user: CurrentUser,
    file_name: str,
    content_type: str | None,
    data: bytes,
    patient_id: str | None = None,
) -> dict:
    if not data:
        raise ValueError("Empty file.")
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise ValueError(f"File exceeds {config.MAX_UPLOAD_BYTES} bytes.")

    # only the base name is kept, never a client path
    name = PurePath(file_name or "file").name or "file"
    storage_key = f"{user.org_id}/{uuid.uuid4().hex}{PurePath(name).suffix.lower()}"

    with db_session() as s:
        if patient_id:
            found = s.execute(
                select(Patient.id).where(
                    Patient.id == patient_id, Patient.org_id == user.org_id, Patient.deleted_at.is_(None)
                )
            ).first()
            if found is None:
                raise NotFoundError("Patient")

        path = _path(storage_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

        a = Attachment(
            org_id=user.org_id,
            patient_id=patient_id,
            file_name=name,
            content_type=content_type or "application/octet-stream",
            size=len(data),
            storage_key=storage_key,
            created_by=user.id,
        )
        s.add(a)
        s.flush()
        logger.info("Stored attachment %s (%d bytes)", a.id, a.size)
        return _attachment_dict(a)


def list_attachments(org_id: str, patient_id: str | None = None) -> list[dict]:
    with db_session() as s:
        q = select(Attachment).where(Attachment.org_id == org_id)
        if patient_id:
            q = q.where(Attachment.patient_id == patient_id)
        return [_attachment_dict(a) for a in s.scalars(q.order_by(Attachment.created_at.desc()))]


def open_attachment(org_id: str, attachment_id: str) -> tuple[dict, Path]:
    with db_session() as s:
        a = _get_attachment(s, org_id, attachment_id)
        path = _path(a.storage_key)
        if not path.is_file():
            raise NotFoundError("Attachment file")
        return _attachment_dict(a), path


def delete_attachment(org_id: str, attachment_id: str) -> bool:
    with db_session() as s:
        a = _get_attachment(s, org_id, attachment_id)
        _path(a.storage_key).unlink(missing_ok=True)
        s.delete(a)
        return True

"""
Attachment store — files on disk, metadata in ``attachment_files``.

Layout under ATTACHMENT_ROOT:
    <business_type>/<business_id>/<uuid>_<secure filename>

Only the relative path is persisted so the root can move between hosts.
"""

from __future__ import annotations

import logging
import os
import uuid

from flask import current_app
from werkzeug.utils import secure_filename

from backoffice.core.exceptions import NotFoundError, ValidationError
from backoffice.models import db
from backoffice.models.attachment import AttachmentFile

logger = logging.getLogger(__name__)


def _root() -> str:
    return current_app.config["ATTACHMENT_ROOT"]


def _extension(filename: str) -> str:
    return filename.rsplit(".", 1)[-1].lower() if "." in filename else ""


def store_file(business_type: str, business_id, file_storage, uploaded_by: int | None = None) -> dict:
    """Persist an uploaded ``werkzeug.datastructures.FileStorage``.

    Raises:
        ValidationError: no file, disallowed extension or file too large.
    """
    if file_storage is None or not file_storage.filename:
        raise ValidationError("A file is required", details={"file": "required"})

    original_name = file_storage.filename
    safe_name = secure_filename(original_name) or "upload"
    extension = _extension(original_name)
    allowed = current_app.config["ATTACHMENT_ALLOWED_EXTENSIONS"]
    if extension not in allowed:
        raise ValidationError(
            f"File type '.{extension}' is not allowed",
            details={"file": f"allowed: {', '.join(sorted(allowed))}"},
        )

    content = file_storage.read()
    max_bytes = current_app.config["ATTACHMENT_MAX_BYTES"]
    if len(content) > max_bytes:
        raise ValidationError(
            f"File exceeds the {max_bytes // (1024 * 1024)} MB limit",
            details={"file": "too large"},
        )

    business_id = str(business_id)
    relative_dir = os.path.join(secure_filename(business_type) or "misc", secure_filename(business_id) or "0")
    stored_name = f"{uuid.uuid4().hex}_{safe_name}"
    absolute_dir = os.path.join(_root(), relative_dir)
    os.makedirs(absolute_dir, exist_ok=True)
    with open(os.path.join(absolute_dir, stored_name), "wb") as fh:
        fh.write(content)

    record = AttachmentFile(
        business_type=business_type,
        business_id=business_id,
        original_name=original_name,
        stored_name=stored_name,
        content_type=file_storage.mimetype or "application/octet-stream",
        size_bytes=len(content),
        storage_path=os.path.join(relative_dir, stored_name),
        uploaded_by=uploaded_by,
    )
    db.session.add(record)
    db.session.commit()
    logger.info("Attachment stored id=%s %s/%s size=%d",
                record.id, business_type, business_id, record.size_bytes,
                extra={"business_type": business_type, "business_id": business_id})
    return record.to_dict()


def list_files(business_type: str, business_id) -> list[dict]:
    rows = (
        AttachmentFile.query
        .filter_by(business_type=business_type, business_id=str(business_id))
        .order_by(AttachmentFile.id.asc())
        .all()
    )
    return [r.to_dict() for r in rows]


def count_files(business_type: str, business_id) -> int:
    if business_id in (None, ""):
        return 0
    return AttachmentFile.query.filter_by(business_type=business_type, business_id=str(business_id)).count()


def get_file_record(attachment_id: int) -> AttachmentFile:
    record = db.session.get(AttachmentFile, attachment_id)
    if record is None:
        raise NotFoundError(resource="AttachmentFile", resource_id=attachment_id)
    return record


def open_file(attachment_id: int) -> tuple[AttachmentFile, str]:
    """Return the record and the absolute path of its content."""
    record = get_file_record(attachment_id)
    path = os.path.join(_root(), record.storage_path)
    if not os.path.isfile(path):
        logger.error("Attachment %s metadata exists but file is missing: %s", attachment_id, path)
        raise NotFoundError(resource="AttachmentFile content", resource_id=attachment_id)
    return record, path


def delete_file(attachment_id: int, commit: bool = True) -> None:
    record = get_file_record(attachment_id)
    path = os.path.join(_root(), record.storage_path)
    if os.path.isfile(path):
        os.remove(path)
    db.session.delete(record)
    if commit:
        db.session.commit()
    logger.info("Attachment deleted id=%s", attachment_id)


def delete_all(business_type: str, business_id) -> int:
    """Delete every attachment of a business object; caller commits."""
    rows = AttachmentFile.query.filter_by(business_type=business_type, business_id=str(business_id)).all()
    for record in rows:
        delete_file(record.id, commit=False)
    return len(rows)

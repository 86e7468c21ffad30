"""
AttachmentFile — metadata for files stored on disk under ATTACHMENT_ROOT.

Attachments are polymorphic: ``business_type`` + ``business_id`` identify
the owning record (e.g. EXPENSE + application id).
"""

from datetime import datetime, timezone

from backoffice.models import db


class AttachmentFile(db.Model):
    __tablename__ = "attachment_files"

    id = db.Column(db.Integer, primary_key=True)
    business_type = db.Column(db.String(50), nullable=False)
    business_id = db.Column(db.String(64), nullable=False)
    original_name = db.Column(db.String(255), nullable=False)
    stored_name = db.Column(db.String(300), nullable=False)
    content_type = db.Column(db.String(100), nullable=True)
    size_bytes = db.Column(db.Integer, nullable=False, default=0)
    storage_path = db.Column(db.String(500), nullable=False, comment="Relative to ATTACHMENT_ROOT")
    uploaded_by = db.Column(db.Integer, nullable=True)
    uploaded_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_attachment_business", "business_type", "business_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_type": self.business_type,
            "business_id": self.business_id,
            "original_name": self.original_name,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }

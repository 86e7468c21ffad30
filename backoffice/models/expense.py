"""
Expense reimbursement — ExpenseApplication and ExpenseItem.

An application is a header (applicant, dates, totals) with one or more
line items. Its status mirrors the approval workflow:

    DRAFT ──submit──▶ SUBMITTED ──workflow started──▶ IN_APPROVAL
    IN_APPROVAL ──completed──▶ APPROVED
    IN_APPROVAL ──rejected───▶ REJECTED
    IN_APPROVAL ──returned to applicant──▶ RETURNED ──edit/submit──▶ ...
"""

from datetime import datetime, timezone
from decimal import Decimal

from backoffice.models import db

STATUS_DRAFT = "DRAFT"
STATUS_SUBMITTED = "SUBMITTED"
STATUS_IN_APPROVAL = "IN_APPROVAL"
STATUS_APPROVED = "APPROVED"
STATUS_REJECTED = "REJECTED"
STATUS_RETURNED = "RETURNED"

APPLICATION_STATUSES = (
    STATUS_DRAFT,
    STATUS_SUBMITTED,
    STATUS_IN_APPROVAL,
    STATUS_APPROVED,
    STATUS_REJECTED,
    STATUS_RETURNED,
)

STATUS_LABELS = {
    STATUS_DRAFT: "Draft",
    STATUS_SUBMITTED: "Submitted",
    STATUS_IN_APPROVAL: "In approval",
    STATUS_APPROVED: "Approved",
    STATUS_REJECTED: "Rejected",
    STATUS_RETURNED: "Returned",
}

EDITABLE_STATUSES = frozenset({STATUS_DRAFT, STATUS_RETURNED})
FINAL_STATUSES = frozenset({STATUS_APPROVED, STATUS_REJECTED})


def _money(value) -> str | None:
    return str(value) if value is not None else None


class ExpenseApplication(db.Model):
    __tablename__ = "expense_applications"

    id = db.Column(db.Integer, primary_key=True)
    application_number = db.Column(db.String(32), nullable=False, unique=True, index=True)
    applicant_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    applicant_name = db.Column(db.String(100), nullable=True)
    department = db.Column(db.String(100), nullable=True)
    company = db.Column(db.String(200), nullable=True)
    apply_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.Text, nullable=True)
    total_amount = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0"))
    currency = db.Column(db.String(3), nullable=False, default="CNY")
    status = db.Column(db.String(20), nullable=False, default=STATUS_DRAFT, index=True)
    submit_time = db.Column(db.DateTime(timezone=True), nullable=True)
    workflow_instance_id = db.Column(
        db.String(64), nullable=True, index=True,
        comment="Engine process instance id of the current approval run",
    )
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    items = db.relationship(
        "ExpenseItem",
        backref="application",
        cascade="all, delete-orphan",
        order_by="ExpenseItem.sort_order",
    )

    @property
    def is_editable(self) -> bool:
        return self.status in EDITABLE_STATUSES

    @property
    def can_submit(self) -> bool:
        return self.status in EDITABLE_STATUSES

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    def to_dict(self, include_items: bool = False) -> dict:
        d = {
            "id": self.id,
            "application_number": self.application_number,
            "applicant_id": self.applicant_id,
            "applicant_name": self.applicant_name,
            "department": self.department,
            "company": self.company,
            "apply_date": self.apply_date.isoformat() if self.apply_date else None,
            "description": self.description,
            "total_amount": _money(self.total_amount),
            "currency": self.currency,
            "status": self.status,
            "status_label": STATUS_LABELS.get(self.status, self.status),
            "submit_time": self.submit_time.isoformat() if self.submit_time else None,
            "workflow_instance_id": self.workflow_instance_id,
            "editable": self.is_editable,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d


class ExpenseItem(db.Model):
    __tablename__ = "expense_items"

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer,
        db.ForeignKey("expense_applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    expense_category = db.Column(db.String(100), nullable=False)
    purpose = db.Column(db.String(500), nullable=False)
    amount = db.Column(db.Numeric(15, 2), nullable=False)
    expense_date = db.Column(db.Date, nullable=True)
    remark = db.Column(db.Text, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    receipt_required = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "application_id": self.application_id,
            "expense_category": self.expense_category,
            "purpose": self.purpose,
            "amount": _money(self.amount),
            "expense_date": self.expense_date.isoformat() if self.expense_date else None,
            "remark": self.remark,
            "sort_order": self.sort_order,
            "receipt_required": self.receipt_required,
        }

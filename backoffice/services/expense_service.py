"""
Expense application service.

Owns expense CRUD, numbering and status; hands approval to the workflow
orchestration at submit time and follows the run through the EXPENSE status
listener:

    workflow RUNNING    → IN_APPROVAL
    workflow COMPLETED  → APPROVED
    workflow REJECTED   → REJECTED
    workflow RETURNED   → RETURNED (editable and submittable again)

Application numbers are ``EXP-<year>-<6-digit sequence>``; the sequence
restarts every year.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select

from backoffice.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from backoffice.models import db
from backoffice.models.expense import (
    APPLICATION_STATUSES,
    STATUS_APPROVED,
    STATUS_DRAFT,
    STATUS_IN_APPROVAL,
    STATUS_REJECTED,
    STATUS_RETURNED,
    STATUS_SUBMITTED,
    ExpenseApplication,
    ExpenseItem,
)
from backoffice.models.workflow import (
    INSTANCE_COMPLETED,
    INSTANCE_REJECTED,
    INSTANCE_RETURNED,
    INSTANCE_RUNNING,
)
from backoffice.services import attachment_service
from backoffice.services import directory_service as directory
from backoffice.services import workflow_service
from backoffice.utils.helpers import page_dict, paginate_query, parse_date, parse_decimal, utcnow

logger = logging.getLogger(__name__)

BUSINESS_TYPE = "EXPENSE"
NUMBER_PREFIX = "EXP"

EXPENSE_CATEGORIES = (
    "Transportation",
    "Accommodation",
    "Meals",
    "Office supplies",
    "Communication",
    "Training",
    "Meetings",
    "Business travel",
    "Equipment purchase",
    "Maintenance",
    "Consulting",
    "Other",
)

_WORKFLOW_TO_APPLICATION_STATUS = {
    INSTANCE_RUNNING: STATUS_IN_APPROVAL,
    INSTANCE_COMPLETED: STATUS_APPROVED,
    INSTANCE_REJECTED: STATUS_REJECTED,
    INSTANCE_RETURNED: STATUS_RETURNED,
}


def expense_categories() -> list[str]:
    return list(EXPENSE_CATEGORIES)


# ── Numbering ─────────────────────────────────────────────────────────────────


def next_application_number(today: date | None = None) -> str:
    year = (today or date.today()).year
    prefix = f"{NUMBER_PREFIX}-{year}-"
    latest = db.session.execute(
        select(func.max(ExpenseApplication.application_number))
        .where(ExpenseApplication.application_number.like(f"{prefix}%"))
    ).scalar()
    sequence = int(latest[len(prefix):]) + 1 if latest else 1
    return f"{prefix}{sequence:06d}"


# ── Validation ────────────────────────────────────────────────────────────────


def _parse_items(raw_items) -> tuple[list[dict], dict]:
    errors = {}
    items = []
    if not isinstance(raw_items, list) or not raw_items:
        return [], {"items": "at least one expense item is required"}

    for idx, raw in enumerate(raw_items):
        prefix = f"items[{idx}]"
        if not isinstance(raw, dict):
            errors[prefix] = "must be an object"
            continue
        category = (raw.get("expense_category") or "").strip()
        purpose = (raw.get("purpose") or "").strip()
        if not category:
            errors[f"{prefix}.expense_category"] = "required"
        if not purpose:
            errors[f"{prefix}.purpose"] = "required"
        try:
            amount = parse_decimal(raw.get("amount"))
            if amount <= 0:
                errors[f"{prefix}.amount"] = "must be greater than 0"
        except ValueError as exc:
            errors[f"{prefix}.amount"] = str(exc)
            amount = None
        expense_date = None
        if raw.get("expense_date"):
            expense_date = parse_date(raw.get("expense_date"))
            if expense_date is None:
                errors[f"{prefix}.expense_date"] = "invalid date"
        items.append({
            "expense_category": category,
            "purpose": purpose,
            "amount": amount,
            "expense_date": expense_date,
            "remark": raw.get("remark"),
            "receipt_required": bool(raw.get("receipt_required", True)),
        })
    return items, errors


def _apply_items(application: ExpenseApplication, items: list[dict]) -> None:
    application.items.clear()
    for order, item in enumerate(items, 1):
        application.items.append(ExpenseItem(sort_order=order, **item))
    application.total_amount = sum((i["amount"] for i in items), Decimal("0"))


# ── CRUD ──────────────────────────────────────────────────────────────────────


def _get_application_or_404(application_id: int) -> ExpenseApplication:
    application = db.session.get(ExpenseApplication, application_id)
    if application is None:
        raise NotFoundError(resource="ExpenseApplication", resource_id=application_id)
    return application


def create_application(data: dict) -> dict:
    """Create a DRAFT application with its items.

    Raises:
        ValidationError: field-level problems, collected in ``details``.
        NotFoundError: applicant not in the directory.
    """
    errors = {}
    applicant_id = data.get("applicant_id")
    if not applicant_id:
        errors["applicant_id"] = "required"
    apply_date = parse_date(data.get("apply_date")) if data.get("apply_date") else date.today()
    if apply_date is None:
        errors["apply_date"] = "invalid date"
    items, item_errors = _parse_items(data.get("items"))
    errors.update(item_errors)
    if errors:
        raise ValidationError("Expense application is invalid", details=errors)

    applicant = directory.get_user(applicant_id)
    if applicant is None:
        raise NotFoundError(resource="User", resource_id=applicant_id)

    application = ExpenseApplication(
        application_number=next_application_number(),
        applicant_id=applicant.id,
        applicant_name=applicant.user_name,
        department=data.get("department") or applicant.department,
        company=data.get("company"),
        apply_date=apply_date,
        description=data.get("description"),
        currency=(data.get("currency") or "CNY").upper(),
        status=STATUS_DRAFT,
    )
    _apply_items(application, items)
    db.session.add(application)
    db.session.commit()
    logger.info("Expense application created %s total=%s",
                application.application_number, application.total_amount,
                extra={"application_id": application.id, "user_id": applicant.id})
    return application.to_dict(include_items=True)


def update_application(application_id: int, data: dict) -> dict:
    application = _get_application_or_404(application_id)
    if not application.is_editable:
        raise ValidationError(
            f"Application in status {application.status} cannot be edited",
            details={"status": application.status},
        )

    errors = {}
    if "apply_date" in data:
        apply_date = parse_date(data.get("apply_date"))
        if apply_date is None:
            errors["apply_date"] = "invalid date"
        else:
            application.apply_date = apply_date
    items = None
    if "items" in data:
        items, item_errors = _parse_items(data.get("items"))
        errors.update(item_errors)
    if errors:
        db.session.rollback()
        raise ValidationError("Expense application is invalid", details=errors)

    for attr in ("description", "company", "department"):
        if attr in data:
            setattr(application, attr, data.get(attr))
    if data.get("currency"):
        application.currency = data["currency"].upper()
    if items is not None:
        _apply_items(application, items)

    db.session.commit()
    logger.info("Expense application updated %s", application.application_number,
                extra={"application_id": application.id})
    return application.to_dict(include_items=True)


def delete_application(application_id: int) -> None:
    application = _get_application_or_404(application_id)
    if not application.is_editable:
        raise ValidationError(
            f"Application in status {application.status} cannot be deleted",
            details={"status": application.status},
        )
    attachment_service.delete_all(BUSINESS_TYPE, application.id)
    db.session.delete(application)
    db.session.commit()
    logger.info("Expense application deleted %s", application.application_number,
                extra={"application_id": application_id})


def get_application_detail(application_id: int) -> dict:
    application = _get_application_or_404(application_id)
    d = application.to_dict(include_items=True)
    d["attachments"] = attachment_service.list_files(BUSINESS_TYPE, application.id)
    instance = workflow_service.get_instance_by_business_key(BUSINESS_TYPE, application.application_number)
    d["workflow"] = instance.to_dict() if instance else None
    return d


def find_applications(filters: dict | None = None, page: int = 1, per_page: int = 20) -> dict:
    """Filter by applicant, status, department/number substring and apply-date range."""
    filters = filters or {}
    q = ExpenseApplication.query
    if filters.get("applicant_id"):
        q = q.filter(ExpenseApplication.applicant_id == int(filters["applicant_id"]))
    if filters.get("status"):
        q = q.filter(ExpenseApplication.status == str(filters["status"]).upper())
    if filters.get("department"):
        q = q.filter(ExpenseApplication.department.ilike(f"%{filters['department']}%"))
    if filters.get("application_number"):
        q = q.filter(ExpenseApplication.application_number.ilike(f"%{filters['application_number']}%"))
    start_date = parse_date(filters.get("start_date"))
    if start_date:
        q = q.filter(ExpenseApplication.apply_date >= start_date)
    end_date = parse_date(filters.get("end_date"))
    if end_date:
        q = q.filter(ExpenseApplication.apply_date <= end_date)

    rows, total = paginate_query(
        q.order_by(ExpenseApplication.created_at.desc(), ExpenseApplication.id.desc()), page, per_page,
    )
    return page_dict([r.to_dict() for r in rows], total, page, per_page)


def applicant_history(applicant_id: int, page: int = 1, per_page: int = 10) -> dict:
    return find_applications({"applicant_id": applicant_id}, page=page, per_page=per_page)


def expense_statistics(applicant_id: int | None = None, department: str | None = None,
                       start_date=None, end_date=None) -> dict:
    q = db.session.query(
        ExpenseApplication.status,
        func.count(ExpenseApplication.id),
        func.coalesce(func.sum(ExpenseApplication.total_amount), 0),
    )
    if applicant_id:
        q = q.filter(ExpenseApplication.applicant_id == applicant_id)
    if department:
        q = q.filter(ExpenseApplication.department == department)
    start = parse_date(start_date)
    if start:
        q = q.filter(ExpenseApplication.apply_date >= start)
    end = parse_date(end_date)
    if end:
        q = q.filter(ExpenseApplication.apply_date <= end)

    by_status = {status: {"count": 0, "amount": Decimal("0")} for status in APPLICATION_STATUSES}
    for status, count, amount in q.group_by(ExpenseApplication.status).all():
        by_status.setdefault(status, {"count": 0, "amount": Decimal("0")})
        by_status[status] = {"count": count, "amount": Decimal(str(amount))}

    total = sum(v["count"] for v in by_status.values())
    total_amount = sum((v["amount"] for v in by_status.values()), Decimal("0"))
    approved = by_status[STATUS_APPROVED]
    return {
        "total_applications": total,
        "draft_applications": by_status[STATUS_DRAFT]["count"],
        "pending_applications": by_status[STATUS_SUBMITTED]["count"] + by_status[STATUS_IN_APPROVAL]["count"],
        "approved_applications": approved["count"],
        "rejected_applications": by_status[STATUS_REJECTED]["count"],
        "returned_applications": by_status[STATUS_RETURNED]["count"],
        "total_amount": str(total_amount),
        "approved_amount": str(approved["amount"]),
        "average_amount": str((total_amount / total).quantize(Decimal("0.01"))) if total else "0.00",
    }


# ── Attachments ───────────────────────────────────────────────────────────────


def _require_editable(application: ExpenseApplication, action: str) -> None:
    if not application.is_editable:
        raise ValidationError(
            f"Cannot {action} attachments while the application is {application.status}",
            details={"status": application.status},
        )


def add_attachment(application_id: int, file_storage, uploaded_by: int | None = None) -> dict:
    application = _get_application_or_404(application_id)
    _require_editable(application, "add")
    return attachment_service.store_file(BUSINESS_TYPE, application.id, file_storage, uploaded_by)


def list_attachments(application_id: int) -> list[dict]:
    application = _get_application_or_404(application_id)
    return attachment_service.list_files(BUSINESS_TYPE, application.id)


def remove_attachment(attachment_id: int) -> None:
    record = attachment_service.get_file_record(attachment_id)
    if record.business_type == BUSINESS_TYPE:
        _require_editable(_get_application_or_404(int(record.business_id)), "remove")
    attachment_service.delete_file(attachment_id)


def application_number_for(application_id: int) -> str:
    return _get_application_or_404(application_id).application_number


# ── Submission & workflow callbacks ───────────────────────────────────────────


def _validate_for_submission(application: ExpenseApplication) -> None:
    errors = {}
    if not application.items:
        errors["items"] = "at least one expense item is required"
    if application.total_amount is None or Decimal(application.total_amount) <= 0:
        errors["total_amount"] = "must be greater than 0"
    if not application.applicant_id:
        errors["applicant_id"] = "required"
    if not application.apply_date:
        errors["apply_date"] = "required"
    if errors:
        raise ValidationError("Application is not ready for submission", details=errors)


def submit_for_approval(application_id: int, operator_id=None) -> dict:
    """Submit a DRAFT/RETURNED application and start its approval run.

    Raises:
        ValidationError: wrong status or incomplete application.
        AuthorizationError: someone other than the applicant submits.
        WorkflowError / ConflictError: the run could not start; status is restored.
    """
    application = _get_application_or_404(application_id)
    if operator_id is not None and str(operator_id) != str(application.applicant_id):
        raise AuthorizationError(
            f"Only the applicant can submit application {application.application_number}",
            user_id=operator_id,
        )
    if not application.can_submit:
        raise ValidationError(
            f"Application in status {application.status} cannot be submitted",
            details={"status": application.status},
        )
    _validate_for_submission(application)

    previous_status = application.status
    application.status = STATUS_SUBMITTED
    application.submit_time = utcnow()
    db.session.commit()

    try:
        instance = workflow_service.start_workflow(
            business_type=BUSINESS_TYPE,
            business_id=application.application_number,
            applicant_id=application.applicant_id,
            title=f"Expense approval - {application.application_number}",
            amount=application.total_amount,
            variables={
                "applicationId": application.id,
                "applicationNumber": application.application_number,
                "description": application.description,
                "currency": application.currency,
                "company": application.company,
                "applyDate": application.apply_date.isoformat(),
            },
        )
    except Exception:
        application = _get_application_or_404(application_id)
        application.status = previous_status
        application.submit_time = None
        db.session.commit()
        logger.warning("Submission of %s failed; status restored to %s",
                       application.application_number, previous_status,
                       extra={"application_id": application_id})
        raise

    application = _get_application_or_404(application_id)
    application.workflow_instance_id = instance["process_instance_id"]
    if application.status == STATUS_SUBMITTED:
        application.status = _WORKFLOW_TO_APPLICATION_STATUS.get(instance["status"], STATUS_IN_APPROVAL)
    db.session.commit()
    logger.info("Expense application submitted %s", application.application_number,
                extra={"application_id": application.id, "instance_id": instance["id"]})
    return application.to_dict(include_items=True)


def update_application_status(workflow_instance_id: str, status: str) -> dict:
    """Set the status of the application tied to an engine process instance."""
    status = (status or "").upper()
    if status not in APPLICATION_STATUSES:
        raise ValidationError(f"Unknown application status '{status}'", details={"status": status})
    application = ExpenseApplication.query.filter_by(workflow_instance_id=workflow_instance_id).first()
    if application is None:
        raise NotFoundError(resource="ExpenseApplication", resource_id=workflow_instance_id)
    application.status = status
    db.session.commit()
    logger.info("Expense application %s status -> %s", application.application_number, status,
                extra={"application_id": application.id})
    return application.to_dict()


def on_workflow_status_changed(business_id: str, instance_status: str, comment: str | None = None) -> None:
    """EXPENSE status listener; runs inside the orchestration transaction."""
    new_status = _WORKFLOW_TO_APPLICATION_STATUS.get(instance_status)
    if new_status is None:
        logger.debug("Workflow status %s has no expense counterpart", instance_status)
        return
    application = ExpenseApplication.query.filter_by(application_number=business_id).first()
    if application is None:
        logger.warning("Workflow status %s for unknown expense %s", instance_status, business_id)
        return
    application.status = new_status
    logger.info("Expense application %s follows workflow: %s", business_id, new_status,
                extra={"application_id": application.id, "business_id": business_id})


def register_workflow_listener() -> None:
    workflow_service.register_status_listener(BUSINESS_TYPE, on_workflow_status_changed)

"""
Dynamic approver resolution.

Turns an applicant (and an amount) into the user ids that fill the
``${...}`` assignee expressions of approval chains. Every role walks a
fallback ladder and ends at the configured system administrator; only when
that account is missing too does resolution fail.

    managerId            direct manager → department manager → admin
    functionalHeadId     department's C-level head → COO → admin
    financeManagerId     Finance manager → finance director email
    complianceManagerId  Compliance manager → compliance director email
    executiveId          CEO (large amounts) or COO → any C-level → admin
"""

from __future__ import annotations

import logging
from decimal import Decimal

from flask import current_app

from backoffice.core.exceptions import ApproverNotFoundError
from backoffice.models.directory import User
from backoffice.services import directory_service as directory

logger = logging.getLogger(__name__)

# Department name → position code of its functional head
FUNCTIONAL_HEAD_POSITIONS = {
    "IT": "CTO",
    "Finance": "CFO",
    "HR": "COO",
    "Trading": "CEO",
    "Risk": "CRO",
    "Compliance": "CCO",
}
DEFAULT_FUNCTIONAL_HEAD = "COO"

EXECUTIVE_FALLBACK_POSITIONS = ("CEO", "COO", "CFO", "CTO")

FINANCE_DEPARTMENT = "Finance"
COMPLIANCE_DEPARTMENT = "Compliance"


def _admin_id(role: str) -> int:
    email = current_app.config["WORKFLOW_DEFAULT_APPROVER_EMAIL"]
    admin = directory.get_user_by_email(email)
    if admin and admin.is_active:
        logger.warning("Approver for %s falls back to system admin %s", role, email)
        return admin.id
    raise ApproverNotFoundError(role, f"default approver {email} is not an active user")


def _first_active_in_position(position: str) -> User | None:
    return next((u for u in directory.list_users_by_position(position) if u.is_active), None)


def manager_id(applicant: User) -> int:
    """Direct manager if active, else the department's first manager, else admin."""
    if applicant.manager_id:
        manager = directory.get_user(applicant.manager_id)
        if manager and manager.is_active:
            return manager.id
        logger.info("Direct manager %s of user %s is unavailable", applicant.manager_id, applicant.id)

    if applicant.department:
        managers = [
            m for m in directory.list_users_by_department_and_type(applicant.department, "manager")
            if m.id != applicant.id
        ]
        if managers:
            return managers[0].id

    return _admin_id("manager")


def functional_head_id(applicant: User) -> int:
    position = FUNCTIONAL_HEAD_POSITIONS.get(applicant.department or "", DEFAULT_FUNCTIONAL_HEAD)
    head = _first_active_in_position(position)
    if head:
        return head.id
    if position != DEFAULT_FUNCTIONAL_HEAD:
        head = _first_active_in_position(DEFAULT_FUNCTIONAL_HEAD)
        if head:
            return head.id
    return _admin_id("functional head")


def _department_manager_or_email(department: str, email_key: str, role: str) -> int:
    managers = directory.list_users_by_department_and_type(department, "manager")
    if managers:
        return managers[0].id
    fallback = directory.get_user_by_email(current_app.config[email_key])
    if fallback and fallback.is_active:
        return fallback.id
    raise ApproverNotFoundError(role, f"no manager in {department} and no active {current_app.config[email_key]}")


def finance_manager_id() -> int:
    return _department_manager_or_email(FINANCE_DEPARTMENT, "WORKFLOW_FINANCE_FALLBACK_EMAIL", "finance manager")


def compliance_manager_id() -> int:
    return _department_manager_or_email(
        COMPLIANCE_DEPARTMENT, "WORKFLOW_COMPLIANCE_FALLBACK_EMAIL", "compliance manager",
    )


def executive_id(amount: Decimal) -> int:
    threshold = Decimal(str(current_app.config["WORKFLOW_EXECUTIVE_CEO_THRESHOLD"]))
    preferred = "CEO" if amount > threshold else "COO"
    executive = _first_active_in_position(preferred)
    if executive:
        return executive.id
    for position in EXECUTIVE_FALLBACK_POSITIONS:
        executive = _first_active_in_position(position)
        if executive:
            return executive.id
    return _admin_id("executive")


def build_approver_variables(applicant: User, amount: Decimal) -> dict:
    """All approver ids an approval chain may reference, keyed by variable name."""
    variables = {
        "managerId": manager_id(applicant),
        "financeManagerId": finance_manager_id(),
        "complianceManagerId": compliance_manager_id(),
        "functionalHeadId": functional_head_id(applicant),
        "executiveId": executive_id(amount),
    }
    logger.debug("Approvers resolved for applicant %s: %s", applicant.id, variables)
    return variables

"""
Workflow template service — approval chains and their deployment.

A template is the back office's editable copy of an approval chain. Deploying
it pushes the chain to the BPM engine under ``process_key``; orchestration
then picks a deployed template per business type when an approval starts.

Template lifecycle:
    create (draft, v1) → deploy (active) → update steps (v+1, undeployed)
    → deploy again … → delete (undeploy + soft delete)

Business-type matching (``find_deployed_template_by_business_type``):
    1. exact   type equals business type (case-insensitive), or an
               expense/travel keyword of the business type in name/type
    2. fuzzy   any ``_``-separated keyword longer than 2 characters of the
               business type found in name or description
    3. any     the first deployed template
"""

from __future__ import annotations

import logging
import uuid

from flask import current_app

from backoffice.core.exceptions import (
    ConflictError,
    NotFoundError,
    TemplateNotAvailableError,
    ValidationError,
)
from backoffice.integrations.bpm_gateway import get_bpm_engine, normalize_steps
from backoffice.models import db
from backoffice.models.workflow import TEMPLATE_ACTIVE, TEMPLATE_DRAFT, WorkflowTemplate
from backoffice.utils.helpers import utcnow

logger = logging.getLogger(__name__)

EXPENSE_TYPE = "expense"
_MATCH_KEYWORDS = ("expense", "travel")

DEFAULT_SINGLE_STEP = [
    {"key": "approval", "name": "Approval", "assignee": "${applicantId}"},
]


def default_expense_steps() -> list[dict]:
    """Standard expense chain; the executive step is amount-gated."""
    return [
        {"key": "manager_approval", "name": "Manager approval", "assignee": "${managerId}"},
        {"key": "finance_approval", "name": "Finance approval", "assignee": "${financeManagerId}"},
        {"key": "compliance_approval", "name": "Compliance review", "assignee": "${complianceManagerId}"},
        {"key": "functional_head_approval", "name": "Functional head approval",
         "assignee": "${functionalHeadId}"},
        {"key": "executive_approval", "name": "Executive approval", "assignee": "${executiveId}",
         "min_amount": str(current_app.config["WORKFLOW_EXECUTIVE_STEP_MIN_AMOUNT"])},
    ]


# ── Queries ───────────────────────────────────────────────────────────────────


def _live_templates():
    return WorkflowTemplate.query.filter_by(is_deleted=False)


def list_templates() -> list[dict]:
    return [t.to_dict() for t in _live_templates().order_by(WorkflowTemplate.id.asc()).all()]


def _get_template_or_404(template_id: int) -> WorkflowTemplate:
    template = db.session.get(WorkflowTemplate, template_id)
    if template is None or template.is_deleted:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
    return template


def get_template(template_id: int) -> dict:
    return _get_template_or_404(template_id).to_dict()


def _deployed_templates() -> list[WorkflowTemplate]:
    return (
        _live_templates()
        .filter_by(is_deployed=True, status=TEMPLATE_ACTIVE)
        .order_by(WorkflowTemplate.id.asc())
        .all()
    )


# ── CRUD ──────────────────────────────────────────────────────────────────────


def create_template(data: dict) -> dict:
    """Create a draft template.

    Raises:
        ValidationError: missing name or malformed steps.
        ConflictError: process_key already used.
    """
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Template name is required", details={"name": "required"})

    process_key = (data.get("process_key") or "").strip() or f"process_{uuid.uuid4().hex}"
    if WorkflowTemplate.query.filter_by(process_key=process_key).first():
        raise ConflictError(resource="WorkflowTemplate", field="process_key", value=process_key)

    steps = normalize_steps(data.get("steps") or DEFAULT_SINGLE_STEP)

    template = WorkflowTemplate(
        name=name,
        description=data.get("description"),
        process_key=process_key,
        type=(data.get("type") or "").strip() or None,
        status=TEMPLATE_DRAFT,
        steps=steps,
        config_data=data.get("config_data"),
        template_version=1,
        is_deployed=False,
    )
    db.session.add(template)
    db.session.commit()
    logger.info("Workflow template created id=%s key=%s", template.id, process_key)
    return template.to_dict()


def update_template(template_id: int, data: dict) -> dict:
    """Update metadata; changing the steps bumps the version and undeploys."""
    template = _get_template_or_404(template_id)

    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Template name cannot be empty", details={"name": "required"})
        template.name = name
    if "description" in data:
        template.description = data.get("description")
    if "type" in data:
        template.type = (data.get("type") or "").strip() or None
    if "config_data" in data:
        template.config_data = data.get("config_data")

    if "steps" in data:
        steps = normalize_steps(data.get("steps"))
        if steps != (template.steps or []):
            template.steps = steps
            template.template_version = (template.template_version or 1) + 1
            if template.is_deployed:
                get_bpm_engine().undeploy(template.deployment_id)
            template.is_deployed = False
            template.deployment_id = None
            template.deployed_at = None
            template.status = TEMPLATE_DRAFT

    db.session.commit()
    logger.info("Workflow template updated id=%s version=%s", template.id, template.template_version)
    return template.to_dict()


def delete_template(template_id: int) -> None:
    template = _get_template_or_404(template_id)
    if template.is_deployed and template.deployment_id:
        get_bpm_engine().undeploy(template.deployment_id)
        template.is_deployed = False
    template.is_deleted = True
    template.status = TEMPLATE_DRAFT
    db.session.commit()
    logger.info("Workflow template deleted id=%s", template_id)


# ── Deployment ────────────────────────────────────────────────────────────────


def deploy_template(template_id: int) -> dict:
    template = _get_template_or_404(template_id)
    if not template.steps:
        raise ValidationError("Template has no approval steps to deploy", details={"steps": "empty"})

    engine = get_bpm_engine()
    if template.is_deployed and template.deployment_id:
        engine.undeploy(template.deployment_id)

    template.deployment_id = engine.deploy(
        template.process_key, template.name, template.steps, category=template.type,
    )
    template.is_deployed = True
    template.deployed_at = utcnow()
    template.status = TEMPLATE_ACTIVE
    db.session.commit()
    logger.info("Workflow template deployed id=%s key=%s deployment=%s",
                template.id, template.process_key, template.deployment_id)
    return template.to_dict()


def undeploy_template(template_id: int) -> dict:
    template = _get_template_or_404(template_id)
    if not template.is_deployed or not template.deployment_id:
        raise ValidationError("Template is not deployed", details={"is_deployed": False})

    get_bpm_engine().undeploy(template.deployment_id)
    template.is_deployed = False
    template.deployment_id = None
    template.deployed_at = None
    template.status = TEMPLATE_DRAFT
    db.session.commit()
    logger.info("Workflow template undeployed id=%s", template.id)
    return template.to_dict()


# ── Business-type matching ────────────────────────────────────────────────────


def _exact_match(template: WorkflowTemplate, business_type: str) -> bool:
    bt = business_type.lower()
    if (template.type or "").lower() == bt:
        return True
    haystack = f"{template.name or ''} {template.type or ''}".lower()
    return any(kw in bt and kw in haystack for kw in _MATCH_KEYWORDS)


def _fuzzy_match(template: WorkflowTemplate, business_type: str) -> bool:
    haystack = f"{template.name or ''} {template.description or ''}".lower()
    keywords = [k for k in business_type.lower().split("_") if len(k) > 2]
    return any(k in haystack for k in keywords)


def find_deployed_template_by_business_type(business_type: str) -> WorkflowTemplate | None:
    deployed = _deployed_templates()
    if not deployed:
        return None
    business_type = business_type or ""

    for template in deployed:
        if _exact_match(template, business_type):
            return template
    for template in deployed:
        if _fuzzy_match(template, business_type):
            logger.info("Fuzzy template match for %s: %s", business_type, template.process_key)
            return template

    logger.warning("No template matches business type %s; using %s",
                   business_type, deployed[0].process_key)
    return deployed[0]


def default_expense_template() -> WorkflowTemplate | None:
    return next(
        (t for t in _deployed_templates() if (t.type or "").lower() == EXPENSE_TYPE),
        None,
    )


def is_template_available(process_key: str | None) -> bool:
    """True if ``process_key`` (or the fallback key) has an active definition."""
    engine = get_bpm_engine()
    if process_key and engine.is_definition_active(process_key):
        return True
    return engine.is_definition_active(current_app.config["WORKFLOW_FALLBACK_PROCESS_KEY"])


def resolve_process_key(business_type: str) -> str:
    """Pick the process definition key an approval for ``business_type`` runs on.

    Raises:
        TemplateNotAvailableError: nothing deployed can serve the request.
    """
    engine = get_bpm_engine()
    fallback_key = current_app.config["WORKFLOW_FALLBACK_PROCESS_KEY"]

    template = find_deployed_template_by_business_type(business_type)
    if template is not None:
        if engine.is_definition_active(template.process_key):
            return template.process_key
        if engine.is_definition_active(fallback_key):
            return fallback_key

    if "expense" in (business_type or "").lower():
        template = default_expense_template()
        if template is not None and engine.is_definition_active(template.process_key):
            return template.process_key

    for template in _deployed_templates():
        if engine.is_definition_active(template.process_key):
            return template.process_key

    if engine.is_definition_active(fallback_key):
        return fallback_key

    total = _live_templates().count()
    deployed = len(_deployed_templates())
    raise TemplateNotAvailableError(
        business_type,
        f"{total} templates defined, {deployed} deployed; deploy one or seed '{fallback_key}'",
    )


def ensure_default_expense_template() -> dict:
    """Create and deploy the standard expense chain under the fallback key if missing."""
    fallback_key = current_app.config["WORKFLOW_FALLBACK_PROCESS_KEY"]
    template = WorkflowTemplate.query.filter_by(process_key=fallback_key).first()
    if template is None:
        template = WorkflowTemplate(
            name="Expense approval",
            description="Standard expense reimbursement approval chain",
            process_key=fallback_key,
            type=EXPENSE_TYPE,
            status=TEMPLATE_DRAFT,
            steps=normalize_steps(default_expense_steps()),
            template_version=1,
        )
        db.session.add(template)
        db.session.flush()
    elif template.is_deleted:
        template.is_deleted = False

    if template.is_deployed and get_bpm_engine().is_definition_active(fallback_key):
        db.session.commit()
        return template.to_dict()
    return deploy_template(template.id)

"""
Approval orchestration service.

Translates business actions into BPM engine calls and keeps the shadow
tables (WorkflowInstance / WorkflowNode) in step with the engine:

    start_workflow   placeholder CREATED → engine start → RUNNING + first node
    approve          node COMPLETED → engine complete → next node or COMPLETED
    reject           node REJECTED → engine delete → instance REJECTED
    return_to        node RETURNED → engine move back → new node for the target
                     (target "applicant": engine delete → instance RETURNED)
    batch_approve    approve/reject per node, failures collected

Business modules subscribe to instance status changes through
``register_status_listener(business_type, callback)``; callbacks run in the
same transaction as the orchestration change.

The service owns ``db.session.commit()``. Engine calls only flush, so engine
state and shadow rows commit or roll back together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable

from backoffice.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from backoffice.integrations.bpm_gateway import TaskView, get_bpm_engine, step_applies
from backoffice.models import db
from backoffice.models.workflow import (
    INSTANCE_COMPLETED,
    INSTANCE_CREATED,
    INSTANCE_REJECTED,
    INSTANCE_RETURNED,
    INSTANCE_RUNNING,
    INSTANCE_STATUS_TEXT,
    INSTANCE_SUSPENDED,
    INSTANCE_TERMINATED,
    NODE_COMPLETED,
    NODE_PENDING,
    NODE_REJECTED,
    NODE_RETURNED,
    WorkflowInstance,
    WorkflowNode,
)
from backoffice.services import approver_resolution
from backoffice.services import attachment_service
from backoffice.services import directory_service as directory
from backoffice.services import workflow_template_service as templates
from backoffice.utils.helpers import (
    as_utc,
    iso,
    normalize_page,
    page_dict,
    paginate_query,
    parse_decimal,
    utcnow,
)

logger = logging.getLogger(__name__)

# Pseudo step key: return the task to the applicant and end the run
RETURN_TO_APPLICANT = "applicant"

RETURN_COMMENT_PREFIX = "Returned: "

BATCH_ACTIONS = frozenset({"approve", "reject"})

_NODE_TO_TASK_STATUS = {
    "PENDING": "pending",
    "ASSIGNED": "pending",
    "RETURNED": "pending",
    "IN_PROGRESS": "in-progress",
    "ACTIVE": "in-progress",
    "COMPLETED": "approved",
    "REJECTED": "rejected",
}

_TRACKER_INSTANCE_STATUS = {
    INSTANCE_CREATED: "pending",
    INSTANCE_RUNNING: "in-progress",
    INSTANCE_COMPLETED: "completed",
    INSTANCE_REJECTED: "rejected",
    INSTANCE_RETURNED: "returned",
    INSTANCE_SUSPENDED: "suspended",
    INSTANCE_TERMINATED: "terminated",
}

_TRACKER_NODE_STATUS = {
    NODE_COMPLETED: "completed",
    NODE_PENDING: "active",
    NODE_REJECTED: "rejected",
    NODE_RETURNED: "returned",
}

_HISTORY_OPERATIONS = {
    NODE_COMPLETED: "COMPLETE",
    NODE_REJECTED: "REJECT",
    NODE_RETURNED: "RETURN",
    NODE_PENDING: "PENDING",
}


def status_text(status: str | None) -> str:
    return INSTANCE_STATUS_TEXT.get(status, status or "Unknown")


def map_node_status_to_task_status(status: str | None) -> str:
    return _NODE_TO_TASK_STATUS.get((status or "").upper(), "pending")


# ── Status listeners ──────────────────────────────────────────────────────────

StatusListener = Callable[[str, str, "str | None"], None]

_status_listeners: dict[str, list[StatusListener]] = {}


def register_status_listener(business_type: str, callback: StatusListener) -> None:
    """Call ``callback(business_id, instance_status, comment)`` on status changes."""
    listeners = _status_listeners.setdefault(business_type.upper(), [])
    if callback not in listeners:
        listeners.append(callback)


def _notify(instance: WorkflowInstance, comment: str | None = None) -> None:
    for callback in _status_listeners.get(instance.business_type.upper(), []):
        callback(instance.business_id, instance.status, comment)


# ── Batch result ──────────────────────────────────────────────────────────────


@dataclass
class BatchResult:
    total: int = 0
    success_ids: list = field(default_factory=list)
    failure_ids: list = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.success_ids)

    @property
    def failure_count(self) -> int:
        return len(self.failure_ids)

    @property
    def all_success(self) -> bool:
        return self.failure_count == 0

    def add_success(self, item_id) -> None:
        self.success_ids.append(item_id)

    def add_failure(self, item_id, error: str) -> None:
        self.failure_ids.append(item_id)
        self.errors.append(f"{item_id}: {error}")

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "all_success": self.all_success,
            "success_ids": self.success_ids,
            "failure_ids": self.failure_ids,
            "errors": self.errors,
        }


# ── Internal lookups ──────────────────────────────────────────────────────────


def _instance_by_pid(process_instance_id: str) -> WorkflowInstance | None:
    return WorkflowInstance.query.filter_by(process_instance_id=process_instance_id).first()


def _node_by_task(task_id: str) -> WorkflowNode | None:
    return WorkflowNode.query.filter_by(task_id=task_id).first()


def _get_instance_or_404(instance_id: int) -> WorkflowInstance:
    instance = db.session.get(WorkflowInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    return instance


def _int_or_none(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _log_extra(instance: WorkflowInstance, task_id: str | None = None) -> dict:
    return {
        "instance_id": instance.id,
        "process_instance_id": instance.process_instance_id,
        "task_id": task_id,
        "business_type": instance.business_type,
        "business_id": instance.business_id,
    }


def _active_task_context(task_id: str, operator_id) -> tuple[TaskView, WorkflowInstance, WorkflowNode]:
    """Load the active task, its instance and node; enforce who may act on it."""
    task = get_bpm_engine().get_task(task_id)
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)
    instance = _instance_by_pid(task.process_instance_id)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=task.process_instance_id)
    node = _node_by_task(task_id)
    if node is None:
        raise NotFoundError(resource="WorkflowNode", resource_id=task_id)
    if node.status != NODE_PENDING:
        raise ValidationError(f"Task {task_id} was already handled", details={"status": node.status})

    if operator_id is not None:
        allowed = {str(task.assignee)}
        if node.proxy_id is not None:
            allowed.add(str(node.proxy_id))
        if str(operator_id) not in allowed:
            raise AuthorizationError(
                f"User {operator_id} is not the assignee of task {task_id}", user_id=_int_or_none(operator_id),
            )
    return task, instance, node


def _ensure_node(instance: WorkflowInstance, task: TaskView) -> WorkflowNode:
    """Create the shadow node for an engine task once."""
    node = _node_by_task(task.id)
    if node is not None:
        return node
    assignee_id = _int_or_none(task.assignee)
    node = WorkflowNode(
        instance_id=instance.id,
        task_id=task.id,
        node_key=task.task_key,
        node_name=task.name,
        status=NODE_PENDING,
        assignee_id=assignee_id,
        assignee_name=directory.user_display_name(assignee_id),
        execution_id=task.process_instance_id,
    )
    db.session.add(node)
    db.session.flush()
    return node


def _record_current_task(instance: WorkflowInstance, task: TaskView) -> WorkflowNode:
    instance.current_node_name = task.name
    instance.current_assignee = task.assignee
    return _ensure_node(instance, task)


def _close_instance(instance: WorkflowInstance, status: str) -> None:
    instance.status = status
    instance.end_time = utcnow()
    instance.current_node_name = None
    instance.current_assignee = None


def _refresh_instance(instance: WorkflowInstance, next_task: TaskView | None) -> None:
    engine = get_bpm_engine()
    if engine.is_process_ended(instance.process_instance_id):
        _close_instance(instance, INSTANCE_COMPLETED)
        _notify(instance)
        return
    task = next_task or engine.current_task(instance.process_instance_id)
    if task is not None:
        _record_current_task(instance, task)


# ═════════════════════════════════════════════════════════════════════════════
# START
# ═════════════════════════════════════════════════════════════════════════════


def _build_variables(
    applicant,
    business_type: str,
    business_id: str,
    title: str | None,
    amount: Decimal,
    extras: dict | None,
) -> dict:
    variables = dict(extras or {})
    variables.update({
        "applicantId": applicant.id,
        "applicantName": applicant.user_name,
        "department": applicant.department,
        "amount": str(amount),
        "businessType": business_type,
        "businessId": business_id,
        "title": title,
    })
    variables.update(approver_resolution.build_approver_variables(applicant, amount))
    return variables


def start_workflow(
    business_type: str,
    business_id,
    applicant_id: int,
    title: str | None = None,
    amount=None,
    variables: dict | None = None,
) -> dict:
    """Start an approval run for a business object.

    Args:
        business_type: e.g. "EXPENSE"; selects the template and the listener.
        business_id:   business key (expense: the application number).
        applicant_id:  directory user id of the requester.
        title:         display title of the run.
        amount:        amount driving executive routing and gated steps.
        variables:     extra process variables; core keys cannot be overridden.

    Raises:
        ValidationError: bad business type or amount.
        ConflictError: a RUNNING instance already exists for the business key.
        NotFoundError: applicant unknown.
        WorkflowError: no template / approver / engine failure.
    """
    business_type = (business_type or "").strip()
    business_id = str(business_id or "").strip()
    if not business_type or not business_id:
        raise ValidationError("business_type and business_id are required",
                              details={"business_type": business_type, "business_id": business_id})
    try:
        amount = parse_decimal(amount) if amount not in (None, "") else Decimal("0")
    except ValueError as exc:
        raise ValidationError(str(exc), details={"amount": "invalid"}) from exc

    running = WorkflowInstance.query.filter_by(
        business_type=business_type, business_id=business_id, status=INSTANCE_RUNNING,
    ).first()
    if running is not None:
        raise ConflictError(resource="WorkflowInstance", field="business_key",
                            value=f"{business_type}:{business_id}")

    instance = WorkflowInstance(
        business_type=business_type,
        business_id=business_id,
        title=title,
        status=INSTANCE_CREATED,
        applicant_id=applicant_id,
        start_time=utcnow(),
    )
    db.session.add(instance)
    db.session.commit()
    placeholder_id = instance.id

    try:
        applicant = directory.get_user(applicant_id)
        if applicant is None:
            raise NotFoundError(resource="User", resource_id=applicant_id)

        process_variables = _build_variables(applicant, business_type, business_id, title, amount, variables)
        process_key = templates.resolve_process_key(business_type)

        engine = get_bpm_engine()
        pid = engine.start_process(process_key, business_id, process_variables)

        instance.process_instance_id = pid
        instance.process_key = process_key
        instance.applicant_name = applicant.user_name
        instance.variables = process_variables
        instance.status = INSTANCE_RUNNING
        _notify(instance)

        task = engine.current_task(pid)
        if task is not None:
            _record_current_task(instance, task)
        else:
            _close_instance(instance, INSTANCE_COMPLETED)
            _notify(instance)
        db.session.commit()
    except Exception:
        db.session.rollback()
        placeholder = db.session.get(WorkflowInstance, placeholder_id)
        if placeholder is not None:
            db.session.delete(placeholder)
            db.session.commit()
        logger.warning("Workflow start failed for %s:%s; placeholder %s removed",
                       business_type, business_id, placeholder_id, exc_info=True)
        raise

    logger.info("Workflow started key=%s for %s:%s", instance.process_key, business_type, business_id,
                extra=_log_extra(instance))
    return instance.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# APPROVE / REJECT / RETURN
# ═════════════════════════════════════════════════════════════════════════════


def approve(task_id: str, comment: str | None = None, operator_id=None) -> dict:
    """Approve the active task and advance the run.

    Raises:
        NotFoundError: task not active, or no shadow instance/node.
        AuthorizationError: operator is neither assignee nor proxy.
    """
    task, instance, node = _active_task_context(task_id, operator_id)
    engine = get_bpm_engine()
    comment = (comment or "").strip() or None

    if comment:
        engine.add_comment(task_id, task.process_instance_id, comment)
    node.status = NODE_COMPLETED
    node.comment = comment
    node.approved_time = utcnow()

    next_task = engine.complete_task(task_id)
    _refresh_instance(instance, next_task)
    db.session.commit()

    logger.info("Task approved %s (%s) by %s", task.name, task_id, operator_id or task.assignee,
                extra=_log_extra(instance, task_id))
    return {"instance": instance.to_dict(), "node": node.to_dict()}


def reject(task_id: str, comment: str, operator_id=None) -> dict:
    """Reject the active task; the whole run ends REJECTED.

    Raises:
        ValidationError: empty comment.
    """
    comment = (comment or "").strip()
    if not comment:
        raise ValidationError("A comment is required to reject", details={"comment": "required"})

    task, instance, node = _active_task_context(task_id, operator_id)
    engine = get_bpm_engine()

    engine.add_comment(task_id, task.process_instance_id, comment)
    node.status = NODE_REJECTED
    node.comment = comment
    node.approved_time = utcnow()

    engine.delete_process(task.process_instance_id, f"rejected: {comment}")
    _close_instance(instance, INSTANCE_REJECTED)
    _notify(instance, comment)
    db.session.commit()

    logger.info("Task rejected %s (%s) by %s", task.name, task_id, operator_id or task.assignee,
                extra=_log_extra(instance, task_id))
    return {"instance": instance.to_dict(), "node": node.to_dict()}


def return_to(task_id: str, target_node_key: str, comment: str, operator_id=None) -> dict:
    """Send the run back to an earlier step, or to the applicant.

    A step target must be a completed step of this run before the current
    node. ``RETURN_TO_APPLICANT`` ends the run as RETURNED so the business
    object can be edited and submitted again.

    Raises:
        ValidationError: empty comment/target or a target that was never completed.
    """
    comment = (comment or "").strip()
    target_node_key = (target_node_key or "").strip()
    if not comment:
        raise ValidationError("A comment is required to return", details={"comment": "required"})
    if not target_node_key:
        raise ValidationError("A target node is required to return", details={"target_node_key": "required"})

    task, instance, node = _active_task_context(task_id, operator_id)
    engine = get_bpm_engine()

    if target_node_key != RETURN_TO_APPLICANT:
        returnable = {n["node_key"] for n in _returnable_nodes(node)}
        if target_node_key not in returnable:
            raise ValidationError(
                f"Cannot return to '{target_node_key}': not a completed earlier step",
                details={"target_node_key": target_node_key, "returnable": sorted(returnable)},
            )

    engine.add_comment(task_id, task.process_instance_id, f"{RETURN_COMMENT_PREFIX}{comment}")
    node.status = NODE_RETURNED
    node.is_returned = True
    node.comment = f"{RETURN_COMMENT_PREFIX}{comment}"
    node.approved_time = utcnow()

    if target_node_key == RETURN_TO_APPLICANT:
        engine.delete_process(task.process_instance_id, f"returned to applicant: {comment}")
        _close_instance(instance, INSTANCE_RETURNED)
        _notify(instance, comment)
    else:
        new_task = engine.move_activity(task.process_instance_id, task.task_key, target_node_key)
        _record_current_task(instance, new_task)
    db.session.commit()

    logger.info("Task returned %s (%s) to %s", task.name, task_id, target_node_key,
                extra=_log_extra(instance, task_id))
    return {"instance": instance.to_dict(), "node": node.to_dict()}


def batch_approve(items: list[dict], operator_id=None) -> BatchResult:
    """Approve or reject many nodes; one failure never aborts the rest.

    Each item: ``{"node_id": int, "action": "approve" | "reject", "comment": str}``.
    """
    result = BatchResult(total=len(items or []))
    for idx, item in enumerate(items or []):
        if not isinstance(item, dict):
            result.add_failure(f"items[{idx}]", "item must be an object")
            continue
        node_id = item.get("node_id", item.get("task_id"))
        action = str(item.get("action") or "approve").strip().lower()
        comment = item.get("comment")
        node_pk = _int_or_none(node_id)
        if node_pk is None:
            result.add_failure(node_id, "node_id must be an integer")
            continue
        if action not in BATCH_ACTIONS:
            result.add_failure(node_id, f"Unsupported action '{action}'")
            continue
        try:
            node = db.session.get(WorkflowNode, node_pk)
            if node is None:
                raise NotFoundError(resource="WorkflowNode", resource_id=node_pk)
            if action == "approve":
                approve(node.task_id, comment, operator_id=operator_id)
            else:
                reject(node.task_id, comment, operator_id=operator_id)
            result.add_success(node_pk)
        except (NotFoundError, ValidationError, AuthorizationError, ConflictError, WorkflowError) as exc:
            db.session.rollback()
            result.add_failure(node_pk, str(exc))
        except Exception as exc:
            db.session.rollback()
            logger.exception("Batch item %s failed unexpectedly", node_pk)
            result.add_failure(node_pk, str(exc))

    logger.info("Batch processed total=%d ok=%d failed=%d",
                result.total, result.success_count, result.failure_count)
    return result


# ═════════════════════════════════════════════════════════════════════════════
# TASK LISTS
# ═════════════════════════════════════════════════════════════════════════════


def _amount_fields(variables: dict) -> dict:
    raw = variables.get("amount")
    try:
        value = float(Decimal(str(raw))) if raw not in (None, "") else 0.0
    except ArithmeticError:
        value = 0.0
    return {"amount": value, "amount_text": str(raw) if raw is not None else None}


def _attachment_key(instance: WorkflowInstance, variables: dict):
    return variables.get("applicationId") or instance.business_id


def _pending_task_dict(task: TaskView, user_id) -> dict:
    instance = _instance_by_pid(task.process_instance_id)
    node = _node_by_task(task.id)
    variables = get_bpm_engine().get_variables(task.process_instance_id)
    applicant_id = variables.get("applicantId") or (instance.applicant_id if instance else None)

    d = {
        "task_id": task.id,
        "node_id": node.id if node else None,
        "task_key": task.task_key,
        "task_name": task.name,
        "process_instance_id": task.process_instance_id,
        "create_time": iso(task.start_time),
        "submit_time": iso(instance.start_time) if instance else None,
        "applicant_id": applicant_id,
        "applicant_name": variables.get("applicantName") or directory.user_display_name(applicant_id),
        "department": variables.get("department") or directory.user_department(applicant_id),
        "business_type": variables.get("businessType") or (instance.business_type if instance else None),
        "business_id": task.business_key,
        "application_id": variables.get("applicationId"),
        "application_number": variables.get("applicationNumber") or task.business_key,
        "instance_id": instance.id if instance else None,
        "title": instance.title if instance else variables.get("title"),
        "description": instance.title if instance else variables.get("title"),
        "status": map_node_status_to_task_status(node.status if node else None),
        "priority": "medium",
        "delegated": bool(node and node.proxy_id is not None and str(node.proxy_id) == str(user_id)),
        "assignee": task.assignee,
        "assignee_name": directory.user_display_name(task.assignee),
        "attachment_count": attachment_service.count_files(
            instance.business_type, _attachment_key(instance, variables),
        ) if instance else 0,
    }
    d.update(_amount_fields(variables))
    return d


def _matches(task: dict, filters: dict) -> bool:
    for key in ("status", "business_type", "priority"):
        wanted = filters.get(key)
        if wanted and str(task.get(key) or "").lower() != str(wanted).lower():
            return False
    return True


def get_pending_tasks(user_id, page: int = 1, per_page: int = 20, filters: dict | None = None) -> dict:
    """Active tasks assigned to ``user_id``, newest first, enriched for the inbox.

    ``filters`` may hold ``status``, ``business_type`` and ``priority``; they
    apply to the enriched tasks, so a filtered call enriches the whole inbox.
    """
    page, per_page = normalize_page(page, per_page)
    if user_id in (None, ""):
        return page_dict([], 0, page, per_page)
    engine = get_bpm_engine()
    filters = {k: v for k, v in (filters or {}).items() if v}

    if not filters:
        total = engine.count_tasks_for_user(str(user_id))
        tasks = engine.list_tasks_for_user(str(user_id), offset=(page - 1) * per_page, limit=per_page)
        return page_dict([_pending_task_dict(t, user_id) for t in tasks], total, page, per_page)

    everything = engine.list_tasks_for_user(str(user_id), offset=0,
                                            limit=engine.count_tasks_for_user(str(user_id)))
    matching = [d for d in (_pending_task_dict(t, user_id) for t in everything) if _matches(d, filters)]
    start = (page - 1) * per_page
    return page_dict(matching[start:start + per_page], len(matching), page, per_page)


def _handled_task_dict(task: TaskView) -> dict:
    instance = _instance_by_pid(task.process_instance_id)
    node = _node_by_task(task.id)
    variables = (instance.variables or {}) if instance else {}
    if instance is not None and instance.status == INSTANCE_RUNNING:
        variables = get_bpm_engine().get_variables(task.process_instance_id)
    d = {
        "task_id": task.id,
        "node_id": node.id if node else None,
        "task_key": task.task_key,
        "task_name": task.name,
        "process_instance_id": task.process_instance_id,
        "start_time": iso(task.start_time),
        "end_time": iso(task.end_time),
        "duration_ms": task.duration_ms,
        "delete_reason": task.delete_reason,
        "instance_id": instance.id if instance else None,
        "instance_status": instance.status if instance else None,
        "title": instance.title if instance else None,
        "business_type": instance.business_type if instance else None,
        "business_id": task.business_key,
        "applicant_name": instance.applicant_name if instance else None,
        "application_id": variables.get("applicationId"),
        "node_status": node.status if node else None,
        "status": map_node_status_to_task_status(node.status if node else None),
        "comment": node.comment if node else None,
    }
    d.update(_amount_fields(variables))
    return d


def get_handled_tasks(user_id, page: int = 1, per_page: int = 20) -> dict:
    """Tasks ``user_id`` has finished, most recently ended first."""
    page, per_page = normalize_page(page, per_page)
    if user_id in (None, ""):
        return page_dict([], 0, page, per_page)
    engine = get_bpm_engine()
    total = engine.count_finished_tasks_for_user(str(user_id))
    tasks = engine.list_finished_tasks_for_user(str(user_id), offset=(page - 1) * per_page, limit=per_page)
    return page_dict([_handled_task_dict(t) for t in tasks], total, page, per_page)


def approval_statistics(user_id) -> dict:
    """Inbox counters for one approver."""
    engine = get_bpm_engine()
    by_status = dict(
        db.session.query(WorkflowNode.status, db.func.count(WorkflowNode.id))
        .filter(WorkflowNode.assignee_id == _int_or_none(user_id))
        .group_by(WorkflowNode.status)
        .all()
    )
    return {
        "pending_count": engine.count_tasks_for_user(str(user_id)),
        "handled_count": engine.count_finished_tasks_for_user(str(user_id)),
        "approved_count": by_status.get(NODE_COMPLETED, 0),
        "rejected_count": by_status.get(NODE_REJECTED, 0),
        "returned_count": by_status.get(NODE_RETURNED, 0),
    }


# ═════════════════════════════════════════════════════════════════════════════
# INSTANCE QUERIES
# ═════════════════════════════════════════════════════════════════════════════


def get_workflow_instance(instance_id: int) -> dict:
    instance = _get_instance_or_404(instance_id)
    d = instance.to_dict()
    if instance.status == INSTANCE_RUNNING and instance.process_instance_id:
        d["variables"] = get_bpm_engine().get_variables(instance.process_instance_id)
    d["nodes"] = [n.to_dict() for n in instance.nodes]
    return d


def list_instances(
    status: str | None = None,
    applicant_id: int | None = None,
    business_type: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    q = WorkflowInstance.query
    if status:
        q = q.filter(WorkflowInstance.status == status.upper())
    if applicant_id:
        q = q.filter(WorkflowInstance.applicant_id == applicant_id)
    if business_type:
        q = q.filter(WorkflowInstance.business_type == business_type)
    rows, total = paginate_query(
        q.order_by(WorkflowInstance.start_time.desc(), WorkflowInstance.id.desc()), page, per_page,
    )
    return page_dict([r.to_dict() for r in rows], total, page, per_page)


def assert_task_in_instance(instance_id: int, task_id: str) -> None:
    """Raise NotFoundError unless ``task_id`` belongs to run ``instance_id``."""
    _get_instance_or_404(instance_id)
    node = _node_by_task(task_id)
    if node is None or node.instance_id != instance_id:
        raise NotFoundError(resource="Task", resource_id=task_id)


def get_instance_by_business_key(business_type: str, business_id) -> WorkflowInstance | None:
    """Latest run for a business object."""
    return (
        WorkflowInstance.query
        .filter_by(business_type=business_type, business_id=str(business_id))
        .order_by(WorkflowInstance.id.desc())
        .first()
    )


def get_detailed_history(instance_id: int) -> list[dict]:
    """Engine task history of a run, joined with shadow nodes and the directory."""
    instance = _get_instance_or_404(instance_id)
    if not instance.process_instance_id:
        return []
    engine = get_bpm_engine()
    history = []
    for task in engine.historic_tasks(instance.process_instance_id):
        node = _node_by_task(task.id)
        comments = engine.task_comments(task.id)
        history.append({
            "task_id": task.id,
            "task_key": task.task_key,
            "task_name": task.name,
            "assignee": task.assignee,
            "assignee_name": directory.user_display_name(task.assignee),
            "assignee_department": directory.user_department(task.assignee),
            "start_time": iso(task.start_time),
            "end_time": iso(task.end_time),
            "duration_ms": task.duration_ms,
            "delete_reason": task.delete_reason,
            "comment": comments[0] if comments else None,
            "node_id": node.id if node else None,
            "node_status": node.status if node else None,
            "node_comment": node.comment if node else None,
            "approved_time": iso(node.approved_time) if node else None,
        })
    return history


def _step_index(instance: WorkflowInstance) -> dict[str, int]:
    if instance is None or not instance.process_instance_id:
        return {}
    steps = get_bpm_engine().definition_steps(instance.process_instance_id)
    return {step["key"]: idx for idx, step in enumerate(steps)}


def _returnable_nodes(node: WorkflowNode) -> list[dict]:
    rows = (
        WorkflowNode.query
        .filter(
            WorkflowNode.instance_id == node.instance_id,
            WorkflowNode.status == NODE_COMPLETED,
            WorkflowNode.id < node.id,
        )
        .order_by(WorkflowNode.id.asc())
        .all()
    )
    # Only steps defined before the current one; after a return, later steps stay closed
    step_index = _step_index(node.instance)
    current = step_index.get(node.node_key)
    if current is not None:
        rows = [r for r in rows if step_index.get(r.node_key, current) < current]

    # A step approved twice (after a return) is offered once, latest approval wins
    by_key: dict[str, WorkflowNode] = {}
    for row in rows:
        by_key.pop(row.node_key, None)
        by_key[row.node_key] = row
    return [
        {
            "node_id": n.id,
            "node_key": n.node_key,
            "node_name": n.node_name,
            "assignee_id": n.assignee_id,
            "assignee_name": n.assignee_name,
            "approved_time": iso(n.approved_time),
        }
        for n in by_key.values()
    ]


def get_returnable_nodes(node_id: int) -> list[dict]:
    node = db.session.get(WorkflowNode, node_id)
    if node is None:
        raise NotFoundError(resource="WorkflowNode", resource_id=node_id)
    return _returnable_nodes(node)


# ═════════════════════════════════════════════════════════════════════════════
# TRACKER
# ═════════════════════════════════════════════════════════════════════════════


def get_tracker(business_type: str, business_id) -> dict:
    """Step-by-step progress of the latest run for a business object."""
    instance = get_instance_by_business_key(business_type, business_id)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=f"{business_type}:{business_id}")

    steps = get_bpm_engine().definition_steps(instance.process_instance_id) if instance.process_instance_id else []
    variables = instance.variables or {}

    latest_node: dict[str, WorkflowNode] = {}
    for node in instance.nodes:
        latest_node[node.node_key] = node

    # Steps after the open task are still ahead, even if approved before a return
    active_idx = None
    if instance.status == INSTANCE_RUNNING:
        for idx, step in enumerate(steps):
            node = latest_node.get(step["key"])
            if node is not None and node.status == NODE_PENDING:
                active_idx = idx
                break

    tracker_steps = []
    completed = applicable = 0
    current_step = None
    for idx, step in enumerate(steps):
        node = latest_node.get(step["key"])
        if not step_applies(step, variables):
            status = "skipped"
        else:
            applicable += 1
            status = _TRACKER_NODE_STATUS.get(node.status, "pending") if node else "pending"
            if status == "active" and instance.status != INSTANCE_RUNNING:
                status = "pending"
            if active_idx is not None and idx > active_idx:
                status = "pending"
        if status == "completed":
            completed += 1
        if status == "active" and current_step is None:
            current_step = idx
        tracker_steps.append({
            "index": idx,
            "key": step["key"],
            "name": step.get("name") or step["key"],
            "status": status,
            "assignee_id": node.assignee_id if node else None,
            "assignee_name": node.assignee_name if node else None,
            "started_at": iso(node.created_at) if node else None,
            "completed_at": iso(node.approved_time) if node else None,
            "comment": node.comment if node else None,
        })

    if instance.status == INSTANCE_COMPLETED:
        progress = 100
    else:
        progress = completed * 100 // applicable if applicable else 0

    return {
        "instance_id": instance.id,
        "process_instance_id": instance.process_instance_id,
        "business_type": instance.business_type,
        "business_id": instance.business_id,
        "title": instance.title,
        "applicant_id": instance.applicant_id,
        "applicant_name": instance.applicant_name,
        "start_time": iso(instance.start_time),
        "end_time": iso(instance.end_time),
        "status": _TRACKER_INSTANCE_STATUS.get(instance.status, instance.status.lower()),
        "status_text": instance.status_text,
        "current_step": current_step,
        "progress": progress,
        "steps": tracker_steps,
    }


def get_workflow_history(business_type: str, business_id) -> list[dict]:
    """Chronological operations across every run of a business object."""
    instances = (
        WorkflowInstance.query
        .filter_by(business_type=business_type, business_id=str(business_id))
        .order_by(WorkflowInstance.id.asc())
        .all()
    )
    history = []
    for instance in instances:
        for node in instance.nodes:
            started = as_utc(node.created_at)
            finished = as_utc(node.approved_time)
            duration = None
            if started and finished:
                duration = int((finished - started).total_seconds() // 60)
            history.append({
                "instance_id": instance.id,
                "node_id": node.id,
                "task_name": node.node_name,
                "operation": _HISTORY_OPERATIONS.get(node.status, node.status),
                "operator_id": node.assignee_id,
                "operator_name": node.assignee_name,
                "operation_time": iso(finished or started),
                "duration_minutes": duration,
                "comment": node.comment,
            })
    return history

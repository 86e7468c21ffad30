"""Embedded SQL-backed BPM engine.

Runs linear chains of user tasks in the application database
(``backoffice.models.bpm``). Supports what the approval workflows use and
nothing more: sequential steps, ``${variable}`` assignees, amount-gated
steps, comments, deletion with a reason and moving the active task back to
an earlier step.

All methods work on ``db.session`` and flush; committing is the caller's job.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import func, select

from backoffice.core.exceptions import WorkflowError
from backoffice.integrations.bpm_gateway import (
    ASSIGNEE_EXPRESSION,
    BpmEngine,
    ProcessView,
    TaskView,
    normalize_steps,
    step_applies,
)
from backoffice.models import db
from backoffice.models.bpm import (
    BpmComment,
    BpmProcessDefinition,
    BpmProcessInstance,
    BpmTask,
)
from backoffice.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


def _to_task_view(task: BpmTask, business_key: str | None = None) -> TaskView:
    return TaskView(
        id=task.id,
        process_instance_id=task.process_instance_id,
        task_key=task.task_key,
        name=task.name,
        assignee=task.assignee,
        start_time=as_utc(task.start_time),
        end_time=as_utc(task.end_time),
        delete_reason=task.delete_reason,
        business_key=business_key,
    )


class EmbeddedBpmEngine(BpmEngine):
    """Sequential user-task engine persisted through SQLAlchemy."""

    # ── Definitions ──────────────────────────────────────────────────────────

    def deploy(self, key, name, steps, category=None):
        steps = normalize_steps(steps)
        latest = db.session.execute(
            select(func.max(BpmProcessDefinition.version)).where(BpmProcessDefinition.key == key)
        ).scalar()
        for previous in BpmProcessDefinition.query.filter_by(key=key, is_active=True).all():
            previous.is_active = False

        definition = BpmProcessDefinition(
            deployment_id=_new_id(),
            key=key,
            name=name,
            category=category,
            version=(latest or 0) + 1,
            steps=steps,
            is_active=True,
        )
        db.session.add(definition)
        db.session.flush()
        logger.info("Process definition deployed key=%s version=%s deployment=%s",
                    key, definition.version, definition.deployment_id)
        return definition.deployment_id

    def undeploy(self, deployment_id):
        definition = BpmProcessDefinition.query.filter_by(deployment_id=deployment_id).first()
        if not definition:
            raise WorkflowError(f"Deployment {deployment_id} does not exist")
        definition.is_active = False
        db.session.flush()
        logger.info("Process definition undeployed key=%s deployment=%s", definition.key, deployment_id)

    def is_definition_active(self, key):
        return self._active_definition(key) is not None

    def definition_steps(self, process_instance_id):
        instance = self._instance_or_error(process_instance_id)
        return list(instance.definition.steps or [])

    def _active_definition(self, key: str) -> BpmProcessDefinition | None:
        if not key:
            return None
        return (
            BpmProcessDefinition.query
            .filter_by(key=key, is_active=True)
            .order_by(BpmProcessDefinition.version.desc())
            .first()
        )

    # ── Process instances ────────────────────────────────────────────────────

    def start_process(self, key, business_key, variables):
        definition = self._active_definition(key)
        if definition is None:
            raise WorkflowError(f"No active process definition for key '{key}'")

        instance = BpmProcessInstance(
            id=_new_id(),
            definition_id=definition.id,
            business_key=business_key,
            variables=dict(variables or {}),
            start_time=utcnow(),
        )
        db.session.add(instance)
        db.session.flush()

        steps = definition.steps or []
        first = self._next_step_index(steps, -1, instance.variables)
        if first is None:
            instance.end_time = utcnow()
            logger.info("Process %s started with no applicable step; ended immediately", instance.id)
        else:
            self._create_task(instance, steps[first])
        db.session.flush()
        logger.info("Process started key=%s pid=%s business_key=%s", key, instance.id, business_key)
        return instance.id

    def get_process(self, process_instance_id):
        instance = db.session.get(BpmProcessInstance, process_instance_id)
        if instance is None:
            return None
        return ProcessView(
            id=instance.id,
            process_key=instance.definition.key,
            business_key=instance.business_key,
            start_time=as_utc(instance.start_time),
            end_time=as_utc(instance.end_time),
            delete_reason=instance.delete_reason,
        )

    def is_process_ended(self, process_instance_id):
        instance = db.session.get(BpmProcessInstance, process_instance_id)
        return instance is None or instance.end_time is not None

    def get_variables(self, process_instance_id):
        instance = self._instance_or_error(process_instance_id)
        return dict(instance.variables or {})

    def delete_process(self, process_instance_id, reason):
        instance = self._instance_or_error(process_instance_id)
        if instance.end_time is not None:
            raise WorkflowError(f"Process {process_instance_id} has already ended")
        now = utcnow()
        for task in self._active_tasks(process_instance_id):
            task.end_time = now
            task.delete_reason = reason
        instance.end_time = now
        instance.delete_reason = reason
        db.session.flush()
        logger.info("Process deleted pid=%s reason=%s", process_instance_id, reason)

    def move_activity(self, process_instance_id, from_key, to_key):
        instance = self._instance_or_error(process_instance_id)
        if instance.end_time is not None:
            raise WorkflowError(f"Process {process_instance_id} has already ended")
        steps = instance.definition.steps or []
        target = next((s for s in steps if s["key"] == to_key), None)
        if target is None:
            raise WorkflowError(f"Step '{to_key}' is not part of process {process_instance_id}")

        active = [t for t in self._active_tasks(process_instance_id) if t.task_key == from_key]
        if not active:
            raise WorkflowError(f"No active task '{from_key}' in process {process_instance_id}")
        now = utcnow()
        for task in active:
            task.end_time = now
            task.delete_reason = f"moved to {to_key}"

        new_task = self._create_task(instance, target)
        db.session.flush()
        logger.info("Activity moved pid=%s %s -> %s", process_instance_id, from_key, to_key)
        return _to_task_view(new_task, instance.business_key)

    # ── Tasks ────────────────────────────────────────────────────────────────

    def get_task(self, task_id):
        task = db.session.get(BpmTask, task_id)
        if task is None or task.end_time is not None:
            return None
        return _to_task_view(task, self._business_key(task.process_instance_id))

    def current_task(self, process_instance_id):
        task = (
            BpmTask.query
            .filter(BpmTask.process_instance_id == process_instance_id, BpmTask.end_time.is_(None))
            .order_by(BpmTask.seq.desc())
            .first()
        )
        if task is None:
            return None
        return _to_task_view(task, self._business_key(process_instance_id))

    def complete_task(self, task_id, variables=None):
        task = db.session.get(BpmTask, task_id)
        if task is None or task.end_time is not None:
            raise WorkflowError(f"Task {task_id} is not active")
        instance = self._instance_or_error(task.process_instance_id)

        if variables:
            merged = dict(instance.variables or {})
            merged.update(variables)
            instance.variables = merged

        task.end_time = utcnow()

        steps = instance.definition.steps or []
        current_idx = next((i for i, s in enumerate(steps) if s["key"] == task.task_key), len(steps))
        next_idx = self._next_step_index(steps, current_idx, instance.variables)
        if next_idx is None:
            instance.end_time = utcnow()
            db.session.flush()
            logger.info("Process completed pid=%s", instance.id)
            return None

        next_task = self._create_task(instance, steps[next_idx])
        db.session.flush()
        return _to_task_view(next_task, instance.business_key)

    def list_tasks_for_user(self, user_id, offset=0, limit=20):
        rows = (
            self._user_tasks_query(user_id, finished=False)
            .order_by(BpmTask.start_time.desc(), BpmTask.seq.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [_to_task_view(t, self._business_key(t.process_instance_id)) for t in rows]

    def count_tasks_for_user(self, user_id):
        return self._user_tasks_query(user_id, finished=False).count()

    def list_finished_tasks_for_user(self, user_id, offset=0, limit=20):
        rows = (
            self._user_tasks_query(user_id, finished=True)
            .order_by(BpmTask.end_time.desc(), BpmTask.seq.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [_to_task_view(t, self._business_key(t.process_instance_id)) for t in rows]

    def count_finished_tasks_for_user(self, user_id):
        return self._user_tasks_query(user_id, finished=True).count()

    def historic_tasks(self, process_instance_id):
        business_key = self._business_key(process_instance_id)
        rows = (
            BpmTask.query
            .filter_by(process_instance_id=process_instance_id)
            .order_by(BpmTask.seq.asc())
            .all()
        )
        return [_to_task_view(t, business_key) for t in rows]

    # ── Comments ─────────────────────────────────────────────────────────────

    def add_comment(self, task_id, process_instance_id, message):
        db.session.add(BpmComment(
            task_id=task_id,
            process_instance_id=process_instance_id,
            message=message,
        ))
        db.session.flush()

    def task_comments(self, task_id):
        rows = BpmComment.query.filter_by(task_id=task_id).order_by(BpmComment.id.asc()).all()
        return [c.message for c in rows]

    # ── Internals ────────────────────────────────────────────────────────────

    def _instance_or_error(self, process_instance_id: str) -> BpmProcessInstance:
        instance = db.session.get(BpmProcessInstance, process_instance_id)
        if instance is None:
            raise WorkflowError(f"Process instance {process_instance_id} does not exist")
        return instance

    def _business_key(self, process_instance_id: str) -> str | None:
        instance = db.session.get(BpmProcessInstance, process_instance_id)
        return instance.business_key if instance else None

    def _active_tasks(self, process_instance_id: str) -> list[BpmTask]:
        return (
            BpmTask.query
            .filter(BpmTask.process_instance_id == process_instance_id, BpmTask.end_time.is_(None))
            .all()
        )

    def _user_tasks_query(self, user_id, finished: bool):
        q = BpmTask.query.filter(BpmTask.assignee == str(user_id))
        if finished:
            return q.filter(BpmTask.end_time.isnot(None))
        return q.filter(BpmTask.end_time.is_(None))

    def _create_task(self, instance: BpmProcessInstance, step: dict) -> BpmTask:
        seq = db.session.execute(
            select(func.max(BpmTask.seq)).where(BpmTask.process_instance_id == instance.id)
        ).scalar()
        task = BpmTask(
            id=_new_id(),
            process_instance_id=instance.id,
            task_key=step["key"],
            name=step.get("name") or step["key"],
            assignee=self._resolve_assignee(step, instance.variables or {}),
            start_time=utcnow(),
            seq=(seq or 0) + 1,
        )
        db.session.add(task)
        db.session.flush()
        logger.debug("Task created pid=%s key=%s assignee=%s", instance.id, task.task_key, task.assignee)
        return task

    @staticmethod
    def _resolve_assignee(step: dict, variables: dict) -> str:
        expr = step["assignee"]
        match = ASSIGNEE_EXPRESSION.match(expr)
        if not match:
            return expr
        value = variables.get(match.group(1))
        if value in (None, ""):
            raise WorkflowError(
                f"Cannot resolve assignee {expr} for step '{step['key']}': "
                f"variable '{match.group(1)}' is not set"
            )
        return str(value)

    def _next_step_index(self, steps: list[dict], after: int, variables: dict) -> int | None:
        for idx in range(after + 1, len(steps)):
            if step_applies(steps[idx], variables):
                return idx
        return None

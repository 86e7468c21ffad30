"""BPM engine adapter interface.

Orchestration (``backoffice.services.workflow_service``) drives the engine
only through ``BpmEngine``. The engine owns execution state: which task is
active, who it is assigned to, what happens after completion. The back
office owns the business view of it (WorkflowInstance / WorkflowNode).

Process definitions are linear chains of user tasks:

    [
        {"key": "manager_approval", "name": "Manager approval",
         "assignee": "${managerId}"},
        {"key": "executive_approval", "name": "Executive approval",
         "assignee": "${executiveId}", "min_amount": "10000"},
    ]

``assignee`` is a literal user id or a ``${variable}`` expression resolved
from process variables when the task is created. A step with
``min_amount`` is skipped when the ``amount`` variable is below it.

Engine write methods flush but never commit; the calling service commits
engine and shadow-table changes together.

Usage:
    from backoffice.integrations.bpm_gateway import get_bpm_engine
    engine = get_bpm_engine()
    pid = engine.start_process("expenseApproval", "EXP-2026-000001", variables)
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

from flask import current_app

from backoffice.core.exceptions import ValidationError

ASSIGNEE_EXPRESSION = re.compile(r"^\$\{(\w+)\}$")
STEP_KEY = re.compile(r"^[A-Za-z][\w-]{0,99}$")


# ── Value objects ─────────────────────────────────────────────────────────────


@dataclass
class TaskView:
    """Snapshot of a user task, active or historic."""

    id: str
    process_instance_id: str
    task_key: str
    name: str | None
    assignee: str | None
    start_time: datetime | None
    end_time: datetime | None = None
    delete_reason: str | None = None
    business_key: str | None = None

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    @property
    def duration_ms(self) -> int | None:
        if self.start_time is None or self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)


@dataclass
class ProcessView:
    """Snapshot of a process instance."""

    id: str
    process_key: str
    business_key: str | None
    start_time: datetime | None
    end_time: datetime | None = None
    delete_reason: str | None = None

    @property
    def ended(self) -> bool:
        return self.end_time is not None


# ── Step definitions ──────────────────────────────────────────────────────────


def normalize_steps(steps) -> list[dict]:
    """Validate a step chain and return a cleaned copy.

    Raises:
        ValidationError: empty chain, missing fields, duplicate keys or a
            non-numeric ``min_amount``.
    """
    if not isinstance(steps, list) or not steps:
        raise ValidationError("A workflow needs at least one approval step",
                              details={"steps": "non-empty list required"})

    cleaned = []
    seen = set()
    for idx, raw in enumerate(steps, 1):
        if not isinstance(raw, dict):
            raise ValidationError(f"Step {idx} must be an object", details={"steps": f"step {idx}"})
        key = str(raw.get("key") or "").strip()
        assignee = str(raw.get("assignee") or "").strip()
        if not STEP_KEY.match(key):
            raise ValidationError(f"Step {idx} has an invalid key {key!r}",
                                  details={"steps": f"step {idx}: key"})
        if key in seen:
            raise ValidationError(f"Duplicate step key {key!r}", details={"steps": key})
        if not assignee:
            raise ValidationError(f"Step {key!r} has no assignee", details={"steps": f"{key}: assignee"})
        seen.add(key)

        step = {"key": key, "name": (raw.get("name") or key).strip(), "assignee": assignee}
        min_amount = raw.get("min_amount")
        if min_amount not in (None, ""):
            try:
                step["min_amount"] = str(Decimal(str(min_amount)))
            except InvalidOperation as exc:
                raise ValidationError(f"Step {key!r} has a non-numeric min_amount",
                                      details={"steps": f"{key}: min_amount"}) from exc
        cleaned.append(step)
    return cleaned


def step_applies(step: dict, variables: dict) -> bool:
    """False when the step is amount-gated and the ``amount`` variable is below the gate."""
    threshold = step.get("min_amount")
    if threshold is None:
        return True
    try:
        amount = Decimal(str(variables.get("amount") or "0"))
    except InvalidOperation:
        amount = Decimal("0")
    return amount >= Decimal(str(threshold))


# ── Adapter interface ─────────────────────────────────────────────────────────


class BpmEngine(ABC):
    """What orchestration needs from a BPM engine."""

    # Definitions

    @abstractmethod
    def deploy(self, key: str, name: str, steps: list[dict], category: str | None = None) -> str:
        """Deploy a new version of ``key``; returns the deployment id."""

    @abstractmethod
    def undeploy(self, deployment_id: str) -> None:
        """Deactivate a deployment. Running instances keep their definition."""

    @abstractmethod
    def is_definition_active(self, key: str) -> bool:
        ...

    @abstractmethod
    def definition_steps(self, process_instance_id: str) -> list[dict]:
        """Step chain of the definition a process instance runs on."""

    # Process instances

    @abstractmethod
    def start_process(self, key: str, business_key: str, variables: dict) -> str:
        """Start the newest active definition of ``key``; returns the process instance id."""

    @abstractmethod
    def get_process(self, process_instance_id: str) -> ProcessView | None:
        ...

    @abstractmethod
    def is_process_ended(self, process_instance_id: str) -> bool:
        ...

    @abstractmethod
    def get_variables(self, process_instance_id: str) -> dict:
        ...

    @abstractmethod
    def delete_process(self, process_instance_id: str, reason: str) -> None:
        """End the process and any active task with ``reason``."""

    @abstractmethod
    def move_activity(self, process_instance_id: str, from_key: str, to_key: str) -> TaskView:
        """End the active ``from_key`` task and open a task for step ``to_key``."""

    # Tasks

    @abstractmethod
    def get_task(self, task_id: str) -> TaskView | None:
        """Active task by id, or None when missing or already finished."""

    @abstractmethod
    def current_task(self, process_instance_id: str) -> TaskView | None:
        ...

    @abstractmethod
    def complete_task(self, task_id: str, variables: dict | None = None) -> TaskView | None:
        """Complete a task; returns the next task or None when the process ended."""

    @abstractmethod
    def list_tasks_for_user(self, user_id: str, offset: int = 0, limit: int = 20) -> list[TaskView]:
        """Active tasks assigned to the user, newest first."""

    @abstractmethod
    def count_tasks_for_user(self, user_id: str) -> int:
        ...

    @abstractmethod
    def list_finished_tasks_for_user(self, user_id: str, offset: int = 0, limit: int = 20) -> list[TaskView]:
        """Finished tasks of the user, most recently ended first."""

    @abstractmethod
    def count_finished_tasks_for_user(self, user_id: str) -> int:
        ...

    @abstractmethod
    def historic_tasks(self, process_instance_id: str) -> list[TaskView]:
        """All tasks of a process (active included) in creation order."""

    # Comments

    @abstractmethod
    def add_comment(self, task_id: str, process_instance_id: str, message: str) -> None:
        ...

    @abstractmethod
    def task_comments(self, task_id: str) -> list[str]:
        ...


def get_bpm_engine() -> BpmEngine:
    """Return the engine registered on the current app by ``init_bpm_engine``."""
    return current_app.extensions["bpm_engine"]


def init_bpm_engine(app, engine: BpmEngine | None = None) -> BpmEngine:
    if engine is None:
        from backoffice.integrations.embedded_bpm import EmbeddedBpmEngine
        engine = EmbeddedBpmEngine()
    app.extensions["bpm_engine"] = engine
    app.logger.debug("BPM engine registered: %s", type(engine).__name__)
    return engine

"""
Approval orchestration — WorkflowTemplate, WorkflowInstance, WorkflowNode.

The BPM engine owns runtime execution; these tables are the back office's
shadow of it, keyed by the engine's process-instance and task ids:

    WorkflowTemplate   deployable approval chain (steps JSON) per business type
    WorkflowInstance   one approval run for one business object
    WorkflowNode       one approval step as experienced by one assignee

Invariants:
    - At most one RUNNING instance per (business_type, business_id).
    - task_id is unique across nodes; a node leaves PENDING exactly once.
    - Terminal instances (COMPLETED / REJECTED / RETURNED / TERMINATED)
      carry end_time.
"""

from datetime import datetime, timezone

from backoffice.models import db

# ── Instance statuses ─────────────────────────────────────────────────────────

INSTANCE_CREATED = "CREATED"
INSTANCE_RUNNING = "RUNNING"
INSTANCE_COMPLETED = "COMPLETED"
INSTANCE_REJECTED = "REJECTED"
INSTANCE_RETURNED = "RETURNED"
INSTANCE_SUSPENDED = "SUSPENDED"
INSTANCE_TERMINATED = "TERMINATED"

TERMINAL_INSTANCE_STATUSES = frozenset({
    INSTANCE_COMPLETED,
    INSTANCE_REJECTED,
    INSTANCE_RETURNED,
    INSTANCE_TERMINATED,
})

INSTANCE_STATUS_TEXT = {
    INSTANCE_CREATED: "Created",
    INSTANCE_RUNNING: "In progress",
    INSTANCE_COMPLETED: "Completed",
    INSTANCE_REJECTED: "Rejected",
    INSTANCE_RETURNED: "Returned",
    INSTANCE_SUSPENDED: "Suspended",
    INSTANCE_TERMINATED: "Terminated",
}

# ── Node statuses ─────────────────────────────────────────────────────────────

NODE_PENDING = "PENDING"
NODE_COMPLETED = "COMPLETED"
NODE_REJECTED = "REJECTED"
NODE_RETURNED = "RETURNED"

# ── Template statuses ─────────────────────────────────────────────────────────

TEMPLATE_DRAFT = "draft"
TEMPLATE_ACTIVE = "active"


def _iso(value):
    return value.isoformat() if value else None


class WorkflowTemplate(db.Model):
    """Deployable approval chain.

    ``steps`` is an ordered list of ``{key, name, assignee, min_amount?}``
    where ``assignee`` is a user id or a ``${variable}`` expression.
    """

    __tablename__ = "workflow_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    process_key = db.Column(db.String(100), nullable=False, unique=True)
    type = db.Column(db.String(50), nullable=True, comment="Business type served, e.g. expense")
    status = db.Column(db.String(20), nullable=False, default=TEMPLATE_DRAFT)
    steps = db.Column(db.JSON, nullable=False, default=list)
    config_data = db.Column(db.JSON, nullable=True)
    deployment_id = db.Column(db.String(64), nullable=True)
    template_version = db.Column(db.Integer, nullable=False, default=1)
    is_deployed = db.Column(db.Boolean, nullable=False, default=False)
    deployed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "process_key": self.process_key,
            "type": self.type,
            "status": self.status,
            "steps": self.steps or [],
            "config_data": self.config_data,
            "deployment_id": self.deployment_id,
            "template_version": self.template_version,
            "is_deployed": self.is_deployed,
            "deployed_at": _iso(self.deployed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class WorkflowInstance(db.Model):
    __tablename__ = "workflow_instances"

    id = db.Column(db.Integer, primary_key=True)
    process_instance_id = db.Column(
        db.String(64), nullable=True, unique=True,
        comment="Engine process instance id; NULL only while CREATED",
    )
    process_key = db.Column(db.String(100), nullable=True)
    business_type = db.Column(db.String(50), nullable=False)
    business_id = db.Column(db.String(64), nullable=False)
    title = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=INSTANCE_CREATED, index=True)
    applicant_id = db.Column(db.Integer, nullable=False, index=True)
    applicant_name = db.Column(db.String(100), nullable=True)
    start_time = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    end_time = db.Column(db.DateTime(timezone=True), nullable=True)
    variables = db.Column(db.JSON, nullable=True, comment="Snapshot of process variables at start")
    current_node_name = db.Column(db.String(200), nullable=True)
    current_assignee = db.Column(db.String(100), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    nodes = db.relationship(
        "WorkflowNode",
        backref="instance",
        cascade="all, delete-orphan",
        order_by="WorkflowNode.id",
    )

    __table_args__ = (
        db.Index("ix_workflow_instance_business", "business_type", "business_id"),
    )

    @property
    def status_text(self) -> str:
        return INSTANCE_STATUS_TEXT.get(self.status, self.status)

    def to_dict(self, include_variables: bool = False) -> dict:
        d = {
            "id": self.id,
            "process_instance_id": self.process_instance_id,
            "process_key": self.process_key,
            "business_type": self.business_type,
            "business_id": self.business_id,
            "title": self.title,
            "status": self.status,
            "status_text": self.status_text,
            "applicant_id": self.applicant_id,
            "applicant_name": self.applicant_name,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "current_node_name": self.current_node_name,
            "current_assignee": self.current_assignee,
        }
        if include_variables:
            d["variables"] = self.variables or {}
        return d


class WorkflowNode(db.Model):
    __tablename__ = "workflow_nodes"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    task_id = db.Column(db.String(64), nullable=False, unique=True)
    node_key = db.Column(db.String(100), nullable=False)
    node_name = db.Column(db.String(200), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=NODE_PENDING, index=True)
    assignee_id = db.Column(db.Integer, nullable=True, index=True)
    assignee_name = db.Column(db.String(100), nullable=True)
    proxy_id = db.Column(db.Integer, nullable=True, comment="Delegate acting for the assignee")
    proxy_name = db.Column(db.String(100), nullable=True)
    approved_time = db.Column(db.DateTime(timezone=True), nullable=True)
    comment = db.Column(db.Text, nullable=True)
    is_returned = db.Column(db.Boolean, nullable=False, default=False)
    execution_id = db.Column(db.String(64), nullable=True)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "task_id": self.task_id,
            "node_key": self.node_key,
            "node_name": self.node_name,
            "status": self.status,
            "assignee_id": self.assignee_id,
            "assignee_name": self.assignee_name,
            "proxy_id": self.proxy_id,
            "proxy_name": self.proxy_name,
            "approved_time": _iso(self.approved_time),
            "comment": self.comment,
            "is_returned": self.is_returned,
            "due_date": _iso(self.due_date),
            "created_at": _iso(self.created_at),
        }

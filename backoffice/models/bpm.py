"""
Tables of the embedded BPM engine (``backoffice.integrations.embedded_bpm``).

Only the engine reads or writes these; orchestration goes through the
``BpmEngine`` adapter and never queries them directly.

    bpm_process_definitions   deployed step chains, versioned per key
    bpm_process_instances     runtime + history of process instances
    bpm_tasks                 runtime + history of user tasks
    bpm_comments              comments attached to tasks
"""

from datetime import datetime, timezone

from backoffice.models import db


def _now():
    return datetime.now(timezone.utc)


class BpmProcessDefinition(db.Model):
    __tablename__ = "bpm_process_definitions"

    id = db.Column(db.Integer, primary_key=True)
    deployment_id = db.Column(db.String(64), nullable=False, unique=True)
    key = db.Column(db.String(100), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=True)
    category = db.Column(db.String(50), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    steps = db.Column(db.JSON, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    deployed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)


class BpmProcessInstance(db.Model):
    __tablename__ = "bpm_process_instances"

    id = db.Column(db.String(64), primary_key=True)
    definition_id = db.Column(
        db.Integer, db.ForeignKey("bpm_process_definitions.id"), nullable=False,
    )
    business_key = db.Column(db.String(100), nullable=True, index=True)
    variables = db.Column(db.JSON, nullable=False, default=dict)
    start_time = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    end_time = db.Column(db.DateTime(timezone=True), nullable=True)
    delete_reason = db.Column(db.String(500), nullable=True)

    definition = db.relationship("BpmProcessDefinition")


class BpmTask(db.Model):
    __tablename__ = "bpm_tasks"

    id = db.Column(db.String(64), primary_key=True)
    process_instance_id = db.Column(
        db.String(64), db.ForeignKey("bpm_process_instances.id"), nullable=False, index=True,
    )
    task_key = db.Column(db.String(100), nullable=False)
    name = db.Column(db.String(200), nullable=True)
    assignee = db.Column(db.String(64), nullable=True, index=True)
    start_time = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    end_time = db.Column(db.DateTime(timezone=True), nullable=True)
    delete_reason = db.Column(db.String(500), nullable=True)
    seq = db.Column(db.Integer, nullable=False, default=0, comment="Creation order within the process")


class BpmComment(db.Model):
    __tablename__ = "bpm_comments"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.String(64), nullable=False, index=True)
    process_instance_id = db.Column(db.String(64), nullable=False, index=True)
    message = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)

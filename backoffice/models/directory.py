"""
Organisation directory — Department, Position, User.

The directory is owned by the identity side of the company; the back office
keeps a local copy and only reads it. Approver resolution walks these
tables:

    User.manager_id         → direct line manager
    User.department         → department name (denormalised, as imported)
    User.position           → job position code/name (CEO, CFO, ...)
    User.user_type          → employee | manager | executive | admin
"""

from datetime import datetime, timezone

from backoffice.models import db


class Department(db.Model):
    """Organisational unit; departments nest through ``parent_id``."""

    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    code = db.Column(db.String(50), nullable=True, unique=True)
    description = db.Column(db.String(255), nullable=True)
    parent_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True,
    )
    manager_id = db.Column(db.Integer, nullable=True, comment="users.id of the department head")
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    children = db.relationship(
        "Department",
        backref=db.backref("parent", remote_side=[id]),
        order_by="Department.sort_order",
    )

    def to_dict(self, include_children: bool = False) -> dict:
        d = {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "description": self.description,
            "parent_id": self.parent_id,
            "manager_id": self.manager_id,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
        }
        if include_children:
            d["children"] = [c.to_dict(include_children=True) for c in self.children if c.is_active]
        return d


class Position(db.Model):
    """Job position, e.g. CEO / CFO / Finance Manager."""

    __tablename__ = "positions"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    code = db.Column(db.String(50), nullable=False, unique=True)
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True,
    )
    level = db.Column(db.Integer, nullable=False, default=0, comment="Higher is more senior")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "department_id": self.department_id,
            "level": self.level,
            "is_active": self.is_active,
        }


class User(db.Model):
    """Employee record as mirrored from the identity provider."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.String(50), nullable=True, unique=True)
    user_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    phone = db.Column(db.String(50), nullable=True)
    department = db.Column(db.String(100), nullable=True, index=True)
    position = db.Column(db.String(100), nullable=True, index=True)
    user_type = db.Column(db.String(20), nullable=False, default="employee")
    status = db.Column(db.String(20), nullable=False, default="active")
    manager_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    manager = db.relationship("User", remote_side=[id])

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "employee_id": self.employee_id,
            "user_name": self.user_name,
            "email": self.email,
            "phone": self.phone,
            "department": self.department,
            "position": self.position,
            "user_type": self.user_type,
            "status": self.status,
            "manager_id": self.manager_id,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.user_name}>"

"""
Directory lookups — read-only access to users and departments.

The back office never edits the directory; these helpers are what approver
resolution, expense creation and task enrichment need from it.
"""

from __future__ import annotations

import logging

from backoffice.models import db
from backoffice.models.directory import Department, Position, User

logger = logging.getLogger(__name__)


def get_user(user_id) -> User | None:
    if user_id in (None, ""):
        return None
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None


def get_user_by_email(email: str | None) -> User | None:
    if not email:
        return None
    return User.query.filter(db.func.lower(User.email) == email.strip().lower()).first()


def list_users_by_department_and_type(department: str, user_type: str) -> list[User]:
    """Active users of ``department`` with ``user_type``, oldest first."""
    return (
        User.query
        .filter_by(department=department, user_type=user_type, status="active")
        .order_by(User.id.asc())
        .all()
    )


def list_users_by_position(position: str) -> list[User]:
    return User.query.filter_by(position=position).order_by(User.id.asc()).all()


def user_display_name(user_id) -> str:
    if user_id in (None, ""):
        return "Unassigned"
    user = get_user(user_id)
    return user.user_name if user else "Unknown user"


def user_department(user_id) -> str | None:
    user = get_user(user_id)
    return user.department if user else None


def department_tree() -> list[dict]:
    """Active root departments with their active children nested."""
    roots = (
        Department.query
        .filter_by(parent_id=None, is_active=True)
        .order_by(Department.sort_order, Department.id)
        .all()
    )
    return [d.to_dict(include_children=True) for d in roots]


def list_positions() -> list[dict]:
    rows = (
        Position.query
        .filter_by(is_active=True)
        .order_by(Position.level.desc(), Position.id.asc())
        .all()
    )
    return [p.to_dict() for p in rows]


def seed_directory() -> int:
    """Create a demo organisation; returns the number of users created.

    Idempotent: skips users whose email already exists.
    """
    departments = [
        ("Executive Office", "EXEC"),
        ("IT", "IT"),
        ("Finance", "FIN"),
        ("HR", "HR"),
        ("Trading", "TRD"),
        ("Risk", "RSK"),
        ("Compliance", "CMP"),
    ]
    for name, code in departments:
        if not Department.query.filter_by(name=name).first():
            db.session.add(Department(name=name, code=code))
    db.session.flush()

    # (name, code, department, level)
    positions = [
        ("CEO", "CEO", "Executive Office", 100),
        ("COO", "COO", "Executive Office", 90),
        ("CFO", "CFO", "Finance", 90),
        ("CTO", "CTO", "IT", 90),
        ("CRO", "CRO", "Risk", 90),
        ("CCO", "CCO", "Compliance", 90),
        ("Finance Manager", "FIN_MGR", "Finance", 50),
        ("Compliance Manager", "CMP_MGR", "Compliance", 50),
        ("IT Manager", "IT_MGR", "IT", 50),
        ("Administrator", "ADMIN", "IT", 10),
        ("Engineer", "ENG", "IT", 10),
        ("Trader", "TRADER", "Trading", 10),
    ]
    for name, code, dept_name, level in positions:
        if not Position.query.filter_by(code=code).first():
            dept = Department.query.filter_by(name=dept_name).first()
            db.session.add(Position(name=name, code=code, department_id=dept.id if dept else None, level=level))
    db.session.flush()

    # (email, name, department, position, user_type, manager email)
    people = [
        ("admin@company.com", "System Admin", "IT", "Administrator", "admin", None),
        ("ceo@company.com", "Chief Executive", "Executive Office", "CEO", "executive", None),
        ("coo@company.com", "Chief Operating Officer", "Executive Office", "COO", "executive", "ceo@company.com"),
        ("cfo@company.com", "Chief Financial Officer", "Finance", "CFO", "executive", "ceo@company.com"),
        ("cto@company.com", "Chief Technology Officer", "IT", "CTO", "executive", "ceo@company.com"),
        ("cro@company.com", "Chief Risk Officer", "Risk", "CRO", "executive", "ceo@company.com"),
        ("cco@company.com", "Chief Compliance Officer", "Compliance", "CCO", "executive", "ceo@company.com"),
        ("finance.manager@company.com", "Finance Manager", "Finance", "Finance Manager", "manager", "cfo@company.com"),
        ("compliance.manager@company.com", "Compliance Manager", "Compliance", "Compliance Manager", "manager", "cco@company.com"),
        ("it.manager@company.com", "IT Manager", "IT", "IT Manager", "manager", "cto@company.com"),
        ("developer@company.com", "Software Developer", "IT", "Engineer", "employee", "it.manager@company.com"),
        ("trader@company.com", "Trader", "Trading", "Trader", "employee", "ceo@company.com"),
    ]
    created = 0
    for email, name, dept, position, user_type, _ in people:
        if get_user_by_email(email):
            continue
        db.session.add(User(
            email=email,
            user_name=name,
            employee_id=email.split("@")[0].upper(),
            department=dept,
            position=position,
            user_type=user_type,
            status="active",
        ))
        created += 1
    db.session.flush()

    for email, _, _, _, _, manager_email in people:
        if manager_email:
            user = get_user_by_email(email)
            manager = get_user_by_email(manager_email)
            if user and manager and user.manager_id is None:
                user.manager_id = manager.id

    for dept in Department.query.all():
        if dept.manager_id is None:
            head = (
                User.query.filter_by(department=dept.name, user_type="manager")
                .order_by(User.id.asc()).first()
            )
            if head:
                dept.manager_id = head.id

    db.session.commit()
    logger.info("Directory seeded: %d new users", created)
    return created

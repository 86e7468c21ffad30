"""
Shared pytest fixtures for the Expense Back Office test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - attachment_root: per-test attachment directory
    - org: seeded demo organisation, users keyed by email local part
    - expense_template: the standard expense chain, deployed
"""

import pytest

from backoffice import create_app
from backoffice.models import db as _db


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture(autouse=True)
def attachment_root(app, tmp_path, monkeypatch):
    """Keep uploaded files inside the test's tmp dir."""
    root = tmp_path / "attachments"
    monkeypatch.setitem(app.config, "ATTACHMENT_ROOT", str(root))
    return root


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def org():
    """Seeded users keyed by email local part (``org["developer"]``)."""
    from backoffice.models.directory import User
    from backoffice.services.directory_service import seed_directory

    seed_directory()
    return {u.email.split("@")[0]: u for u in User.query.all()}


@pytest.fixture()
def expense_template(org):
    from backoffice.services.workflow_template_service import ensure_default_expense_template

    return ensure_default_expense_template()

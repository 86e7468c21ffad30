"""
Expense Back Office
Flask Application Factory.

Usage:
    from backoffice import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from backoffice.config import config
from backoffice.integrations.bpm_gateway import init_bpm_engine
from backoffice.middleware.logging_config import configure_logging
from backoffice.middleware.rate_limiter import init_rate_limits
from backoffice.middleware.timing import init_request_timing
from backoffice.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        # Attachment uploads are multipart; everything else is JSON
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct and "multipart/form-data" not in ct:
                abort(415, description="Content-Type must be application/json")
        return None

    # ── Import all models so Alembic can detect them ─────────────────────
    from backoffice.models import attachment as _attachment_models  # noqa: F401
    from backoffice.models import bpm as _bpm_models                # noqa: F401
    from backoffice.models import directory as _directory_models    # noqa: F401
    from backoffice.models import expense as _expense_models        # noqa: F401
    from backoffice.models import workflow as _workflow_models      # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except SQLAlchemyError as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── BPM engine + business status listeners ───────────────────────────
    init_bpm_engine(app)
    from backoffice.services import expense_service
    expense_service.register_workflow_listener()

    # ── Blueprints ───────────────────────────────────────────────────────
    from backoffice.blueprints.approval_bp import approval_bp
    from backoffice.blueprints.directory_bp import directory_bp
    from backoffice.blueprints.expense_bp import expense_bp
    from backoffice.blueprints.health_bp import health_bp
    from backoffice.blueprints.tracker_bp import tracker_bp
    from backoffice.blueprints.workflow_bp import workflow_bp
    from backoffice.blueprints.workflow_template_bp import workflow_template_bp

    app.register_blueprint(workflow_template_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(approval_bp)
    app.register_blueprint(tracker_bp)
    app.register_blueprint(expense_bp)
    app.register_blueprint(directory_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-directory")
    def seed_directory_cmd():
        """Seed the demo organisation (departments, executives, managers)."""
        from backoffice.services.directory_service import seed_directory
        count = seed_directory()
        logger.info("Seeded %s new directory users.", count)

    @app.cli.command("deploy-default-workflows")
    def deploy_default_workflows_cmd():
        """Create and deploy the standard expense approval chain."""
        from backoffice.services.workflow_template_service import ensure_default_expense_template
        template = ensure_default_expense_template()
        logger.info("Default expense workflow deployed: key=%s version=%s",
                    template["process_key"], template["template_version"])

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": e.description or "Request body too large"}, 413

    @app.errorhandler(415)
    def unsupported_media(e):
        return {"error": e.description or "Unsupported media type"}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app

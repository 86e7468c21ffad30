"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database, BPM engine and attachment store status
"""

import logging
import os
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from backoffice.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── BPM engine ───────────────────────────────────────────────────
    engine = current_app.extensions.get("bpm_engine")
    if engine is None:
        checks["bpm_engine"] = {"status": "error", "detail": "not initialised"}
        overall = False
    else:
        checks["bpm_engine"] = {"status": "ok", "engine": type(engine).__name__}

    # ── Attachment store ─────────────────────────────────────────────
    root = current_app.config["ATTACHMENT_ROOT"]
    if os.path.isdir(root) and os.access(root, os.W_OK):
        checks["attachments"] = {"status": "ok"}
    else:
        # Created lazily on first upload
        checks["attachments"] = {"status": "not_created", "root": root}

    checks["app"] = {
        "name": "Expense Back Office",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code

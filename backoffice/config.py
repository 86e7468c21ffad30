"""
Expense Back Office
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'backoffice_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Request body cap; attachment uploads are the largest payloads
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", str(12 * 1024 * 1024)))

    # Attachments
    ATTACHMENT_ROOT = os.getenv("ATTACHMENT_ROOT", os.path.join(basedir, "instance", "attachments"))
    ATTACHMENT_MAX_BYTES = int(os.getenv("ATTACHMENT_MAX_BYTES", str(10 * 1024 * 1024)))
    ATTACHMENT_ALLOWED_EXTENSIONS = frozenset(
        ext.strip().lower()
        for ext in os.getenv(
            "ATTACHMENT_ALLOWED_EXTENSIONS",
            "pdf,png,jpg,jpeg,gif,doc,docx,xls,xlsx,txt,zip",
        ).split(",")
        if ext.strip()
    )

    # ── Approval workflow ────────────────────────────────────────────────
    # Process definition key used when no template matches a business type
    WORKFLOW_FALLBACK_PROCESS_KEY = os.getenv("WORKFLOW_FALLBACK_PROCESS_KEY", "expenseApproval")
    # Last-resort approver when a role cannot be resolved from the directory
    WORKFLOW_DEFAULT_APPROVER_EMAIL = os.getenv("WORKFLOW_DEFAULT_APPROVER_EMAIL", "admin@company.com")
    WORKFLOW_FINANCE_FALLBACK_EMAIL = os.getenv("WORKFLOW_FINANCE_FALLBACK_EMAIL", "finance.director@company.com")
    WORKFLOW_COMPLIANCE_FALLBACK_EMAIL = os.getenv("WORKFLOW_COMPLIANCE_FALLBACK_EMAIL", "compliance.director@company.com")
    # Above this amount the CEO (not the COO) signs as executive approver
    WORKFLOW_EXECUTIVE_CEO_THRESHOLD = os.getenv("WORKFLOW_EXECUTIVE_CEO_THRESHOLD", "100000")
    # Default expense chain only routes to the executive step from this amount
    WORKFLOW_EXECUTIVE_STEP_MIN_AMOUNT = os.getenv("WORKFLOW_EXECUTIVE_STEP_MIN_AMOUNT", "10000")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    ATTACHMENT_ROOT = os.getenv("TEST_ATTACHMENT_ROOT", os.path.join(basedir, "instance", "test_attachments"))


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Heroku-style URLs use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in backoffice/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from backoffice.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Blueprints that mutate workflow or application state
WRITE_BLUEPRINTS = ("workflow", "approval", "workflow_template", "expense")
# Read-focused blueprints
READ_BLUEPRINTS = ("tracker", "directory")

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"
BATCH_LIMIT = "10/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Batch approval:   10/minute  (each call fans out into many tasks)
        - Write endpoints:  60/minute
        - Read endpoints:   200/minute
        - Health check:     exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for endpoint in ("workflow.batch_approve", "approval.batch_process"):
        view = app.view_functions.get(endpoint)
        if view:
            app.view_functions[endpoint] = limiter.limit(BATCH_LIMIT)(view)

    for bp_name in WRITE_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    for bp_name in READ_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — batch: %s, write: %s, read: %s",
        BATCH_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )

"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.  The Limiter instance
is created in depot/__init__.py with no default limits; this module applies
limits per route category.

Usage:
    from depot.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "120/minute"
READ_LIMIT = "300/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Workflow commands:  120/minute
        - Audit / settings:   300/minute
        - Chat messages:      CHAT_RATE_LIMIT (guest-facing endpoint)
        - Health check:       exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    for bp_name in ("audit", "settings"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(READ_LIMIT)(bp)

    # Chat messages carry their own limit (see chat_bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — workflow: %s, read: %s, chat messages: %s",
        WRITE_LIMIT, READ_LIMIT, app.config.get("CHAT_RATE_LIMIT"),
    )

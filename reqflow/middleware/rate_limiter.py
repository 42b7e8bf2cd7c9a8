"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in reqflow/__init__.py with no default limits; this module
applies granular limits per route category.

Usage:
    from reqflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Program / request endpoints:   RATELIMIT_DEFAULT
        - Admin (audit, outbox):         60/minute
        - Internal service API:          600/minute
        - Health check:                  exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    default = app.config.get("RATELIMIT_DEFAULT", "300 per minute")
    for bp_name in ("program", "request"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(default)(bp)

    for bp_name in ("audit", "outbox"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("60/minute")(bp)

    bp = app.blueprints.get("internal")
    if bp:
        limiter.limit("600/minute")(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — default: %s, admin: 60/min, internal: 600/min", default)

"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.  The Limiter instance
is created in quote_pipeline/__init__.py with no default limits; this module
applies limits per route category.

Usage:
    from quote_pipeline.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

REQUESTS_LIMIT = "120/minute"
REPORTING_LIMIT = "30/minute"


def rate_limit_key() -> str:
    """Principal id when resolved, else remote IP."""
    principal = getattr(g, "principal", None)
    if principal is not None:
        return f"user:{principal.id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per principal, else per remote IP):
        - Requests API:   120/minute (30s polling plus search-as-you-type)
        - Reporting:      30/minute  (full-table scans)
        - Health check:   exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("requests")
    if bp:
        limiter.limit(REQUESTS_LIMIT, key_func=rate_limit_key)(bp)

    bp = app.blueprints.get("reporting")
    if bp:
        limiter.limit(REPORTING_LIMIT, key_func=rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: requests: %s, reporting: %s", REQUESTS_LIMIT, REPORTING_LIMIT,
    )

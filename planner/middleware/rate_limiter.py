"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in planner/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from planner.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
MERGE_LIMIT = "10/minute"
READ_LIMIT = "200/minute"


def _limit_for_request() -> str:
    """Dynamic limit string picked per request."""
    method = flask_request.method
    if method == "POST" and flask_request.path.endswith("/merge"):
        return MERGE_LIMIT
    if method in ("POST", "PUT", "PATCH", "DELETE"):
        return WRITE_LIMIT
    return READ_LIMIT


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Merge endpoint:   10/minute  (takes the target's merge lock)
        - Write endpoints:  60/minute  (POST/PUT/DELETE)
        - Read endpoints:   200/minute (GET — diff / compare are reads)
        - Health check:     exempt
    """
    if not app.config.get("RATELIMIT_ENABLED", True) or app.config.get("TESTING"):
        app.config["RATELIMIT_ENABLED"] = False
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("scenario", "resource"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(_limit_for_request)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    logger.info(
        "Rate limiter configured — merge: %s, write: %s, read: %s",
        MERGE_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )

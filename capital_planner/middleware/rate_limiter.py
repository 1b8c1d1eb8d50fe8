"""
Rate limiting configuration.

Applies per-blueprint and per-route limits using Flask-Limiter. The
Limiter instance is created in capital_planner/__init__.py with no
default limits; this module applies granular limits per route category.

Usage:
    from capital_planner.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"
# Full ranking rebuild is O(projects × criteria)
RECALCULATE_LIMIT = "6/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Ranking rebuild:        6/minute
        - Prioritization/budget:  60/minute
        - Audit queries:          200/minute
        - Health check:           exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    view = app.view_functions.get("prioritization.calculate_rankings")
    if view is not None:
        app.view_functions["prioritization.calculate_rankings"] = limiter.limit(RECALCULATE_LIMIT)(view)

    for bp_name in ("prioritization", "budget"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("audit")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — rebuild: %s, write: %s, read: %s",
        RECALCULATE_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )

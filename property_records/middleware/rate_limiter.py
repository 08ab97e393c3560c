"""
Rate limiting configuration.

Applies per-blueprint limits using Flask-Limiter.  The Limiter instance is
created in ``property_records/__init__.py`` with no default limits; this
module applies the granular ones.

Usage:
    from property_records.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# blueprint name → limit string
BLUEPRINT_LIMITS = {
    "approvals": "30/minute",   # responses contend on a single request row
    "movements": "60/minute",
    "workflows": "60/minute",
    "admin": "60/minute",
}


def init_rate_limits(app, limiter):
    """Apply rate limits to API blueprints.  Disabled in testing mode."""

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    for bp_name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(limit)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — %s",
        ", ".join(f"{k}: {v}" for k, v in BLUEPRINT_LIMITS.items()),
    )

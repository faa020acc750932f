"""
Per-blueprint rate limits (Flask-Limiter).

The Limiter in processmap/__init__.py carries no default limit. Limits
here come from config so the snapshot endpoints, which test runners call
once per step, can be given more room than the process map API.
"""

import logging

logger = logging.getLogger(__name__)

# blueprint name -> config key holding its limit string
BLUEPRINT_LIMITS = {
    "process_map": "RATELIMIT_PROCESS_MAP",
    "execution": "RATELIMIT_EXECUTION",
}
EXEMPT_BLUEPRINTS = ("health",)


def init_rate_limits(app, limiter):
    """Apply configured limits; no-op when TESTING."""
    if app.config.get("TESTING"):
        logger.debug("Rate limits skipped in testing")
        return

    applied = {}
    for bp_name, config_key in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(bp_name)
        limit = app.config.get(config_key)
        if bp is None or not limit:
            continue
        limiter.limit(limit)(bp)
        applied[bp_name] = limit

    for bp_name in EXEMPT_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp is not None:
            limiter.exempt(bp)

    logger.info("Rate limits applied: %s", applied)

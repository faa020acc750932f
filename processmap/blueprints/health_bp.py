"""
Health endpoints (prefix /api/v1/health).

    GET /ready   process is up; no dependency checks
    GET /live    database round-trip, rate-limit storage, engine settings
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from processmap.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


def _check_database() -> dict:
    started = time.perf_counter()
    try:
        db.session.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        db.session.rollback()
        logger.error("Health check: database unreachable: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


def _check_rate_limit_storage() -> dict:
    url = current_app.config.get("REDIS_URL") or ""
    if url.startswith("redis"):
        return {"status": "configured"}
    return {"status": "skipped", "detail": "in-memory rate limit storage"}


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    cfg = current_app.config
    checks = {
        "database": _check_database(),
        "redis": _check_rate_limit_storage(),
        "app": {
            "name": "Process Map Test Engine",
            "debug": current_app.debug,
            "testing": current_app.testing,
            "max_paths": cfg.get("PATH_DISCOVERY_MAX_PATHS"),
            "step_timeout_ms": cfg.get("DEFAULT_STEP_TIMEOUT_MS"),
        },
    }
    healthy = checks["database"]["status"] == "ok"
    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503

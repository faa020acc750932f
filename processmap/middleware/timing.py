"""
Request timing middleware.

Every response carries X-Request-ID (echoed from the request when sent)
and X-Request-Duration-Ms. API requests are logged with the process map
or execution they touched; slow requests and 5xx responses are raised to
WARNING / ERROR.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

HEALTH_PREFIX = "/api/v1/health/"

# Synchronous test runs legitimately take a few seconds
SLOW_THRESHOLD_MS = 5000


def _log_context(response, duration_ms: float) -> dict:
    view_args = request.view_args or {}
    return {
        "request_id": g.get("request_id"),
        "method": request.method,
        "path": request.path,
        "status": response.status_code,
        "duration_ms": round(duration_ms, 1),
        "process_map_id": view_args.get("pm_id"),
        "execution_id": view_args.get("execution_id"),
    }


def init_request_timing(app: Flask):
    """Register the before/after request hooks."""

    @app.before_request
    def _start_timer():
        g.request_started = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish_timer(response):
        started = g.get("request_started")
        if started is None:
            return response

        duration_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.get("request_id", "")
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"

        if request.path.startswith(HEALTH_PREFIX):
            return response

        extra = _log_context(response, duration_ms)
        summary = "%s %s -> %d in %.0fms"
        args = (request.method, request.path, response.status_code, duration_ms)
        if response.status_code >= 500:
            logger.error(summary, *args, extra=extra)
        elif duration_ms > SLOW_THRESHOLD_MS:
            logger.warning("Slow request: " + summary, *args, extra=extra)
        else:
            logger.info(summary, *args, extra=extra)
        return response

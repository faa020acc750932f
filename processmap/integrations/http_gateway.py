"""Read-only HTTP gateway for production_readonly test runs.

A step may declare a live request in ``test_config.request``:

    {"method": "GET", "url": "https://api.example.com/v1/contacts",
     "headers": {...}, "params": {...}, "timeout_s": 10}

Only safe methods (GET, HEAD) are allowed. Failed attempts are retried
with backoff; the gateway never raises for HTTP or network errors, every
outcome is returned as a GatewayResult carrying the exchange to record.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import requests

logger = logging.getLogger(__name__)

SAFE_METHODS = ("GET", "HEAD")

_DEFAULT_TIMEOUT = 15          # seconds
_RETRY_MAX = 2                 # extra attempts after the first failure
_RETRY_BACKOFF_SECONDS = [1, 4]


class ReadOnlyViolation(Exception):
    """Raised when a step asks the read-only gateway for an unsafe method."""


class GatewayResult:
    """Typed result of one gateway call. Check .ok before reading .data."""

    __slots__ = ("ok", "status_code", "data", "headers", "error", "duration_ms", "exchange")

    def __init__(self, *, ok: bool, status_code: int | None, data: Any,
                 headers: dict | None, error: str | None, duration_ms: int,
                 exchange: dict) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.headers = headers or {}
        self.error = error
        self.duration_ms = duration_ms
        self.exchange = exchange


class ReadOnlyHttpGateway:
    """GET/HEAD-only HTTP client with retry.

    Usage:
        gw = ReadOnlyHttpGateway()
        result = gw.request({"method": "GET", "url": "https://..."})
        if result.ok:
            payload = result.data
    """

    def __init__(self, session: requests.Session | None = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.session = session or requests.Session()
        self._sleep = sleep

    def request(self, request_spec: dict) -> GatewayResult:
        method = (request_spec.get("method") or "GET").upper()
        url = request_spec.get("url") or ""
        if method not in SAFE_METHODS:
            raise ReadOnlyViolation(f"{method} is not allowed in production_readonly mode")
        if not url:
            raise ReadOnlyViolation("test_config.request.url is required")

        headers = dict(request_spec.get("headers") or {})
        kwargs: dict[str, Any] = {
            "headers": headers,
            "timeout": request_spec.get("timeout_s") or _DEFAULT_TIMEOUT,
        }
        if request_spec.get("params"):
            kwargs["params"] = request_spec["params"]

        exchange = {"method": method, "url": url, "headers": headers, "body": None}
        last_error = "Unknown error"
        last_status: int | None = None
        duration_ms = 0

        for attempt in range(_RETRY_MAX + 1):
            t0 = time.perf_counter()
            try:
                resp = self.session.request(method, url, **kwargs)
            except requests.RequestException as exc:
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning("Read-only request error attempt=%d/%d url=%s: %s",
                               attempt + 1, _RETRY_MAX + 1, url, exc)
            else:
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code
                try:
                    data = resp.json() if resp.content else {}
                except ValueError:
                    data = {"text": resp.text[:2000]}
                exchange["response"] = {
                    "status": resp.status_code,
                    "headers": dict(resp.headers),
                    "body": data,
                    "time_ms": duration_ms,
                }
                if resp.ok:
                    return GatewayResult(ok=True, status_code=resp.status_code, data=data,
                                         headers=dict(resp.headers), error=None,
                                         duration_ms=duration_ms, exchange=exchange)
                last_error = f"HTTP {resp.status_code}"
                # Client errors will not improve on retry
                if resp.status_code < 500 and resp.status_code != 429:
                    break
                logger.warning("Read-only request failed attempt=%d/%d status=%d url=%s",
                               attempt + 1, _RETRY_MAX + 1, resp.status_code, url)

            if attempt < _RETRY_MAX:
                self._sleep(_RETRY_BACKOFF_SECONDS[attempt])

        exchange["error"] = last_error
        return GatewayResult(ok=False, status_code=last_status, data=None, headers=None,
                             error=last_error, duration_ms=duration_ms, exchange=exchange)

"""Tests — request guards, error bodies, log formatting, rate-limit wiring."""

import json
import logging
from unittest.mock import MagicMock

from flask import Blueprint, Flask

from processmap.middleware.logging_config import JSONFormatter, ReadableFormatter
from processmap.middleware.rate_limiter import init_rate_limits


class TestErrorBodies:
    def test_method_not_allowed(self, client):
        res = client.post("/api/v1/health/ready", json={})
        assert res.status_code == 405
        assert res.get_json()["code"] == "ERR_METHOD_NOT_ALLOWED"

    def test_non_json_write_on_execution_route(self, client):
        res = client.post("/api/v1/executions/exec-1/snapshots",
                          data="node_id=a", content_type="text/plain")
        assert res.status_code == 415
        assert res.get_json()["code"] == "ERR_UNSUPPORTED_MEDIA_TYPE"

    def test_unknown_route_code(self, client):
        body = client.get("/api/v1/process-maps/1/nothing-here").get_json()
        assert body["code"] == "ERR_NOT_FOUND"

    def test_generated_request_id(self, client):
        res = client.get("/api/v1/health/ready")
        assert len(res.headers["X-Request-ID"]) == 12


class TestLogFormatters:
    def _record(self, **extra):
        record = logging.makeLogRecord({
            "name": "processmap.test", "levelname": "INFO", "levelno": logging.INFO,
            "msg": "Test run %s finished", "args": ("r1",),
        })
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_includes_context(self):
        line = JSONFormatter().format(self._record(run_id="r1", process_map_id=7))
        entry = json.loads(line)
        assert entry["msg"] == "Test run r1 finished"
        assert entry["run_id"] == "r1"
        assert entry["process_map_id"] == 7
        assert "execution_id" not in entry

    def test_readable_tags(self):
        line = ReadableFormatter().format(self._record(run_id="r1", process_map_id=7))
        assert line.endswith("[pm=7 run=r1]")

    def test_readable_without_context(self):
        line = ReadableFormatter().format(self._record())
        assert "[" not in line


class TestRateLimits:
    def _app(self, testing):
        app = Flask(__name__)
        app.config.update(TESTING=testing, RATELIMIT_PROCESS_MAP="5/minute",
                          RATELIMIT_EXECUTION=None)
        for name in ("process_map", "execution", "health"):
            app.register_blueprint(Blueprint(name, __name__, url_prefix=f"/{name}"))
        return app

    def test_skipped_when_testing(self):
        limiter = MagicMock()
        init_rate_limits(self._app(testing=True), limiter)
        limiter.limit.assert_not_called()
        limiter.exempt.assert_not_called()

    def test_configured_limits_applied(self):
        app = self._app(testing=False)
        limiter = MagicMock()
        init_rate_limits(app, limiter)
        limiter.limit.assert_called_once_with("5/minute")
        limiter.limit.return_value.assert_called_once_with(app.blueprints["process_map"])
        limiter.exempt.assert_called_once_with(app.blueprints["health"])

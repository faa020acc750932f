"""
Process Map Test Engine: Flask application factory.

    from processmap import create_app
    app = create_app()           # APP_ENV, else "development"
    app = create_app("testing")
"""

import logging
import os

from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import event
from sqlalchemy.engine import Engine
from werkzeug.exceptions import HTTPException

from processmap.config import config
from processmap.middleware.logging_config import configure_logging
from processmap.middleware.rate_limiter import init_rate_limits
from processmap.middleware.timing import init_request_timing
from processmap.models import db
from processmap.utils.errors import E, api_error, http_error

logger = logging.getLogger(__name__)

migrate = Migrate()
# per-blueprint limits only
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)

_BODY_METHODS = ("POST", "PUT", "PATCH")


@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, _record):
    """Step/edge/run cascades rely on FK enforcement, which SQLite leaves off."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_app(config_name=None):
    """Build the application for ``config_name`` (development/testing/production)."""
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiated so ProductionConfig can check its required env vars
    app.config.from_object(config[config_name]())

    configure_logging(app)
    _init_extensions(app)
    init_request_timing(app)
    _install_request_guard(app)
    _create_tables(app)
    _register_blueprints(app)
    init_rate_limits(app, limiter)
    _register_error_handlers(app)
    _register_cli(app)

    logger.info("Process map test engine ready (env=%s)", config_name)
    return app


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    origins = app.config.get("CORS_ORIGINS", "*")
    if origins == "*":
        CORS(app)
    elif origins:
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])


def _install_request_guard(app):
    """Reject oversized bodies and non-JSON writes to the API."""

    @app.before_request
    def _guard():
        limit = app.config.get("MAX_CONTENT_LENGTH")
        if limit and request.content_length and request.content_length > limit:
            abort(413, description="Request body too large")
        if (request.method in _BODY_METHODS and request.path.startswith("/api/")
                and request.data and "json" not in (request.content_type or "")):
            abort(415, description="Content-Type must be application/json")


def _create_tables(app):
    # Model modules register their tables on db.metadata when imported
    from processmap.models import execution, process_map, scenario, test_run  # noqa: F401

    with app.app_context():
        try:
            db.create_all()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Table creation skipped: %s", exc)


def _register_blueprints(app):
    from processmap.blueprints.execution_bp import execution_bp
    from processmap.blueprints.health_bp import health_bp
    from processmap.blueprints.process_map_bp import process_map_bp

    for bp in (process_map_bp, execution_bp, health_bp):
        app.register_blueprint(bp)


def _register_error_handlers(app):
    @app.errorhandler(HTTPException)
    def _http(exc):
        return http_error(exc)

    @app.errorhandler(500)
    def _internal(exc):
        logger.error("Unhandled error on %s %s", request.method, request.path, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def _register_cli(app):
    @app.cli.command("generate-scenarios")
    def generate_scenarios():
        """Regenerate scenarios for process maps whose structure changed."""
        from processmap.services import process_map_service

        count = process_map_service.regenerate_stale_scenarios()
        logger.info("Regenerated scenarios for %s process maps", count)

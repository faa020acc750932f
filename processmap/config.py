"""
Configuration classes for the process map test engine.

``create_app(name)`` loads ``config[name]``; the name defaults to the
APP_ENV environment variable. Every engine tunable can be overridden
from the environment.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _database_url(default=None):
    """DATABASE_URL with the legacy ``postgres://`` scheme normalised."""
    raw = os.getenv("DATABASE_URL", "")
    if not raw:
        return default
    if raw.startswith("postgres://"):
        raw = "postgresql://" + raw[len("postgres://"):]
    return raw


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    # Rate limiting; memory:// keeps counters per process
    REDIS_URL = os.getenv("REDIS_URL", "memory://")
    RATELIMIT_PROCESS_MAP = os.getenv("RATELIMIT_PROCESS_MAP", "200/minute")
    RATELIMIT_EXECUTION = os.getenv("RATELIMIT_EXECUTION", "600/minute")

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    MAX_CONTENT_LENGTH = 2 * 1024 * 1024

    # Path discovery stops after this many complete paths
    PATH_DISCOVERY_MAX_PATHS = _env_int("PATH_DISCOVERY_MAX_PATHS", 50)
    # Applied to steps that do not declare their own timeout_ms
    DEFAULT_STEP_TIMEOUT_MS = _env_int("DEFAULT_STEP_TIMEOUT_MS", 30000)
    # Pause between executed steps
    STEP_DELAY_MS = _env_int("STEP_DELAY_MS", 200)
    # In-memory snapshot cache size per execution
    SNAPSHOT_MAX_PER_EXECUTION = _env_int("SNAPSHOT_MAX_PER_EXECUTION", 1000)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        f"sqlite:///{os.path.join(basedir, 'instance', 'processmap_dev.db')}"
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    STEP_DELAY_MS = 0


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    # No wildcard default outside development
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    def __init__(self):
        missing = [
            name for name, value in (
                ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
                ("SECRET_KEY", os.getenv("SECRET_KEY")),
            ) if not value
        ]
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

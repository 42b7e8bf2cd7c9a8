"""
Request Lifecycle Platform
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'reqflow_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Rate limiting (Flask-Limiter)
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
    RATELIMIT_DEFAULT = os.getenv("RATELIMIT_DEFAULT", "300 per minute")

    # Service-to-service API (automation -> platform)
    INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "")

    # Automation consumer (outbox delivery target)
    AUTOMATION_WEBHOOK_BASE_URL = os.getenv("AUTOMATION_WEBHOOK_BASE_URL", "")
    AUTOMATION_WEBHOOK_SECRET = os.getenv("AUTOMATION_WEBHOOK_SECRET", "")

    # Outbox dispatcher
    OUTBOX_DISPATCHER_ENABLED = _env_flag("OUTBOX_DISPATCHER_ENABLED", "true")
    OUTBOX_DISPATCH_INTERVAL = float(os.getenv("OUTBOX_DISPATCH_INTERVAL", "10"))
    OUTBOX_DELIVERY_TIMEOUT = float(os.getenv("OUTBOX_DELIVERY_TIMEOUT", "10"))
    OUTBOX_MAX_RETRIES = int(os.getenv("OUTBOX_MAX_RETRIES", "3"))
    OUTBOX_BACKOFF_BASE_SECONDS = int(os.getenv("OUTBOX_BACKOFF_BASE_SECONDS", "30"))
    OUTBOX_BACKOFF_MAX_SECONDS = int(os.getenv("OUTBOX_BACKOFF_MAX_SECONDS", "3600"))
    OUTBOX_BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", "100"))
    # How long a claimed event is hidden from other dispatchers; keep above the delivery timeout
    OUTBOX_CLAIM_LEASE_SECONDS = int(os.getenv("OUTBOX_CLAIM_LEASE_SECONDS", "120"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )
    SQLALCHEMY_ENGINE_OPTIONS = {} if not _raw_db_url else Config.SQLALCHEMY_ENGINE_OPTIONS


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SECRET_KEY = "test-secret-key-with-at-least-32-bytes!!"
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite runs on a StaticPool; sizing options do not apply
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    INTERNAL_API_KEY = "test-internal-api-key-0123456789abcdef"
    AUTOMATION_WEBHOOK_BASE_URL = "http://automation.test/webhook"
    AUTOMATION_WEBHOOK_SECRET = "test-webhook-secret"
    # Tests drive the dispatcher explicitly
    OUTBOX_DISPATCHER_ENABLED = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")
        if len(self.INTERNAL_API_KEY) < 32:
            raise RuntimeError("INTERNAL_API_KEY must be set (min 32 chars) in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

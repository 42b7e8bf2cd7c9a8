"""
Request Lifecycle Platform
Flask Application Factory.

Usage:
    from reqflow import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import atexit
import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from reqflow.config import config
from reqflow.core.exceptions import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RequiredFieldError,
    ValidationError,
)
from reqflow.middleware.logging_config import configure_logging
from reqflow.middleware.principal import init_principal_middleware
from reqflow.middleware.rate_limiter import init_rate_limits
from reqflow.middleware.timing import init_request_timing
from reqflow.models import db
from reqflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # limits are applied per blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def _register_error_handlers(app):
    """Map the platform exception types to the standard error body."""

    @app.errorhandler(ValidationError)
    def _validation(exc):
        return api_error(E.VALIDATION_INVALID, str(exc), details=exc.details or None)

    @app.errorhandler(RequiredFieldError)
    def _required(exc):
        return api_error(E.VALIDATION_REQUIRED, str(exc), details=exc.details)

    @app.errorhandler(AuthenticationError)
    def _unauthenticated(exc):
        return api_error(E.UNAUTHENTICATED, str(exc))

    @app.errorhandler(ForbiddenError)
    def _forbidden(exc):
        return api_error(E.FORBIDDEN, str(exc), details={"reason": exc.reason})

    @app.errorhandler(NotFoundError)
    def _not_found(exc):
        return api_error(E.NOT_FOUND, str(exc))

    @app.errorhandler(ConflictError)
    def _conflict(exc):
        return api_error(E.CONFLICT_STATE, str(exc), details={"retryable": exc.retryable})

    @app.errorhandler(404)
    def _route_not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def _rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"retry_after": e.description})

    @app.errorhandler(Exception)
    def _unexpected(exc):
        from werkzeug.exceptions import HTTPException

        if isinstance(exc, HTTPException):
            return api_error(E.VALIDATION_INVALID, exc.description or exc.name, status=exc.code)
        db.session.rollback()
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return api_error(E.INTERNAL, "Internal server error")


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    os.makedirs(app.instance_path, exist_ok=True)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing + principal extraction ────────────────────────────
    init_request_timing(app)
    init_principal_middleware(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from reqflow.models import audit as _audit_models        # noqa: F401
    from reqflow.models import outbox as _outbox_models      # noqa: F401
    from reqflow.models import program as _program_models    # noqa: F401
    from reqflow.models import request as _request_models    # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from reqflow.blueprints.audit_bp import audit_bp
    from reqflow.blueprints.health_bp import health_bp
    from reqflow.blueprints.internal_bp import internal_bp
    from reqflow.blueprints.outbox_bp import outbox_bp
    from reqflow.blueprints.program_bp import program_bp
    from reqflow.blueprints.request_bp import request_bp

    app.register_blueprint(program_bp)
    app.register_blueprint(request_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(outbox_bp)
    app.register_blueprint(internal_bp)
    app.register_blueprint(health_bp)

    _register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Outbox dispatcher ────────────────────────────────────────────────
    from reqflow.services.scheduler_service import SchedulerService

    SchedulerService.init_app(app)
    if app.config.get("OUTBOX_DISPATCHER_ENABLED"):
        if app.config.get("AUTOMATION_WEBHOOK_BASE_URL"):
            SchedulerService.start()
            atexit.register(SchedulerService.stop)
        else:
            app.logger.warning("OUTBOX_DISPATCHER_ENABLED but AUTOMATION_WEBHOOK_BASE_URL is empty — dispatcher not started")

    return app

"""
Property Records: approval workflows for property releases, turnovers
and returns.

    from property_records import create_app
    app = create_app()            # APP_ENV, else "development"
    app = create_app("testing")
"""

import importlib
import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from sqlalchemy import event
from sqlalchemy.engine import Engine

from property_records.config import config
from property_records.middleware.jwt_auth import init_jwt_middleware
from property_records.middleware.logging_config import configure_logging
from property_records.middleware.rate_limiter import init_rate_limits
from property_records.models import db
from property_records.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Storage from RATELIMIT_STORAGE_URI; limits are attached per blueprint
limiter = Limiter(key_func=get_remote_address, default_limits=[])

_MODEL_MODULES = ("auth", "approval", "property", "audit")
_BLUEPRINTS = (
    ("health_bp", "health_bp"),
    ("workflow_bp", "workflow_bp"),
    ("approval_bp", "approval_bp"),
    ("movement_bp", "movement_bp"),
    ("admin_bp", "admin_bp"),
)
# Modules whose import registers approval resolution handlers
_HANDLER_MODULES = ("property_records.services.movement_service",)


@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, connection_record):
    """SQLite ignores FOREIGN KEY clauses unless the pragma is on."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _ensure_sqlite_dir(uri):
    if uri and uri.startswith("sqlite:///") and ":memory:" not in uri:
        os.makedirs(os.path.dirname(uri[len("sqlite:///"):]), exist_ok=True)


def _init_extensions(app):
    _ensure_sqlite_dir(app.config.get("SQLALCHEMY_DATABASE_URI"))
    db.init_app(app)
    limiter.init_app(app)

    origins = app.config.get("CORS_ORIGINS", "*")
    if origins == "*":
        CORS(app)
    else:
        CORS(app, origins=[o.strip() for o in (origins or "").split(",") if o.strip()])


def _create_schema(app):
    for name in _MODEL_MODULES:
        importlib.import_module(f"property_records.models.{name}")
    with app.app_context():
        db.create_all()
    app.logger.debug("Schema ensured for %s", app.config.get("SQLALCHEMY_DATABASE_URI"))


def _register_blueprints(app):
    for module_name, attr in _BLUEPRINTS:
        module = importlib.import_module(f"property_records.blueprints.{module_name}")
        app.register_blueprint(getattr(module, attr))


def _register_error_envelopes(app):
    """JSON envelopes for errors raised outside any blueprint (routing, limiter)."""

    @app.errorhandler(404)
    def _not_found(e):
        return api_error(E.NOT_FOUND, f"No route for {request.path}", status=404)

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, f"{request.method} not allowed on {request.path}", status=405)

    @app.errorhandler(429)
    def _rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", status=429,
                         details={"limit": e.description})

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("Unhandled server error: %s", e, exc_info=True)
        db.session.rollback()
        return api_error(E.INTERNAL, "Internal server error", status=500)


def create_app(config_name=None):
    """Build the Flask application.

    *config_name* is one of ``development``, ``testing``, ``production``.
    """
    config_name = config_name or os.getenv("APP_ENV", "development")
    config_cls = config[config_name]

    app = Flask(__name__, instance_relative_config=True)
    # ProductionConfig validates its environment on instantiation
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    configure_logging(app)
    _init_extensions(app)
    init_jwt_middleware(app)
    _create_schema(app)
    _register_blueprints(app)
    _register_error_envelopes(app)
    init_rate_limits(app, limiter)

    for module in _HANDLER_MODULES:
        importlib.import_module(module)

    return app

"""
TestMaster AI
Flask Application Factory.

Usage:
    from testmaster import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from testmaster.config import config
from testmaster.middleware.jwt_auth import init_jwt_middleware
from testmaster.middleware.logging_config import configure_logging
from testmaster.middleware.timing import init_request_timing
from testmaster.models import db
from testmaster.utils.errors import E, api_error, register_error_handlers

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
    default_limits=[],                     # no global limit — AI generation routes only
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def _init_services(app):
    """Build the per-app collaborators and expose them on app.extensions."""
    from testmaster.ai.batch import BatchGenerator
    from testmaster.ai.executor import GenerationExecutor
    from testmaster.ai.gateway import LLMGateway
    from testmaster.ai.generation import SingleItemGenerator
    from testmaster.ai.model_registry import KeyValueStore, ModelRegistry
    from testmaster.ai.review import ReviewSessionStore
    from testmaster.services.delete_confirmation import DeleteConfirmationService
    from testmaster.services.export_service import RecordExporter
    from testmaster.services.permission_service import PermissionResolver
    from testmaster.services.storage_service import StorageService

    cfg = app.config
    storage = StorageService()
    registry = ModelRegistry(
        store=KeyValueStore(cfg.get("MODEL_CONFIG_DIR")),
        prompts_dir=cfg.get("PROMPTS_DIR"),
    )
    gateway = LLMGateway(timeout=cfg.get("LLM_TIMEOUT_SECONDS", 60.0))
    executor = GenerationExecutor(registry, gateway)

    services = {
        "storage": storage,
        "registry": registry,
        "gateway": gateway,
        "executor": executor,
        "single_generator": SingleItemGenerator(executor, storage),
        "batch_generator": BatchGenerator(executor, storage),
        "reviews": ReviewSessionStore(ttl_seconds=cfg.get("REVIEW_SESSION_TTL_SECONDS", 3600)),
        "permissions": PermissionResolver(storage, fallback=cfg.get("PERMISSION_FALLBACK", "default")),
        "delete_confirmation": DeleteConfirmationService(
            ttl_seconds=cfg.get("DELETE_CONFIRM_TTL_SECONDS", 120),
        ),
        "exporter": RecordExporter(),
    }
    for name, instance in services.items():
        app.extensions[f"testmaster.{name}"] = instance


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

    app = Flask(
        __name__,
        instance_relative_config=True,
        static_folder="../static",
        template_folder="../templates",
    )
    app.config.from_object(config[config_name]())

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

    # ── Request timing + authentication ──────────────────────────────────
    init_request_timing(app)
    init_jwt_middleware(app)

    # ── Service-layer exceptions → JSON errors ───────────────────────────
    register_error_handlers(app)

    # ── Collaborators (registry, gateway, flows, resolver, ...) ──────────
    _init_services(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from testmaster.models import auth as _auth_models        # noqa: F401
    from testmaster.models import testing as _testing_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from testmaster.blueprints.admin_bp import admin_bp
    from testmaster.blueprints.ai_bp import ai_bp
    from testmaster.blueprints.health_bp import health_bp
    from testmaster.blueprints.navigation_bp import navigation_bp
    from testmaster.blueprints.reporting_bp import reporting_bp
    from testmaster.blueprints.testing_bp import testing_bp

    app.register_blueprint(testing_bp)
    app.register_blueprint(ai_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(reporting_bp)
    app.register_blueprint(health_bp)
    app.register_blueprint(navigation_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        if request.path.startswith("/api/"):
            return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})
        return "<h1>404 — Page not found</h1>", 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"retry_after": e.description})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error on %s: %s", request.path, e, exc_info=True)
        if request.path.startswith("/api/"):
            return api_error(E.INTERNAL, "Internal server error")
        return "<h1>500 — Internal Server Error</h1>", 500

    logger.debug("TestMaster AI app created (config=%s)", config_name)
    return app

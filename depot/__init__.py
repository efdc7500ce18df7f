"""
Depot M&R Platform
Flask Application Factory.

Usage:
    from depot import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from depot.config import config
from depot.models import db
from depot.middleware.logging_config import configure_logging
from depot.middleware.rate_limiter import init_rate_limits
from depot.middleware.timing import init_request_timing
from depot.services.runtime import init_runtime

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine  # noqa: E402


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
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance with the depot runtime
        (store, shared backend, reconciler, services) attached.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
    if uri.startswith("sqlite:///") and ":memory:" not in uri:
        os.makedirs(os.path.dirname(uri[len("sqlite:///"):]), exist_ok=True)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from depot.models import yard as _yard_models           # noqa: F401
    from depot.models import chat as _chat_models           # noqa: F401
    from depot.models import settings as _settings_models   # noqa: F401
    from depot.models import audit as _audit_models         # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from depot.blueprints import register_error_handlers
    from depot.blueprints.audit_bp import audit_bp
    from depot.blueprints.chat_bp import chat_bp
    from depot.blueprints.health_bp import health_bp
    from depot.blueprints.settings_bp import settings_bp
    from depot.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(chat_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(settings_bp)
    app.register_blueprint(workflow_bp)

    register_error_handlers(app)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": f"Rate limit exceeded: {e.description}"}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Rate limits (after blueprints are registered) ────────────────────
    init_rate_limits(app, limiter)

    # ── Persistence runtime (store + shared backend + reconciler) ────────
    init_runtime(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("reconcile")
    def reconcile_cmd():
        """Push writes kept locally during a shared-backend outage."""
        from depot.services.runtime import get_runtime
        remaining = get_runtime().reconciler.reconcile()
        logger.info("Reconcile finished, %d write(s) still pending.", remaining)

    @app.cli.command("sync-approved-eors")
    def sync_approved_eors_cmd():
        """Move containers of approved EORs still in DM to AR."""
        from depot.services.runtime import get_runtime
        moved = get_runtime().workflow.sync_approved_eors()
        logger.info("Moved %d container(s) to AR.", moved)

    return app

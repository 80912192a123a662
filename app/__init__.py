"""
Production Workflow & Billing
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os
import time

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from app.config import config
from app.models import db
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(key_func=get_remote_address, default_limits=[])


def create_app(config_name=None, overrides=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        overrides:   Optional mapping applied on top of the config class.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

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

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import workflow as _workflow_models     # noqa: F401
    from app.models import catalog as _catalog_models       # noqa: F401
    from app.models import order as _order_models           # noqa: F401
    from app.models import outbox as _outbox_models         # noqa: F401
    from app.models import billing as _billing_models       # noqa: F401
    from app.models import sequence as _sequence_models     # noqa: F401
    from app.models import scheduling as _scheduling_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in \
            app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        db.create_all()
        app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.workflow_bp import workflow_bp
    from app.blueprints.billing_bp import billing_bp
    from app.blueprints.outbox_bp import outbox_bp
    from app.blueprints.health_bp import health_bp

    app.register_blueprint(workflow_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(outbox_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflows")
    def seed_workflows_cmd():
        """Create the default ORDER / ORDER_PROCESS / RUN_* workflows."""
        from app.services.workflow_definitions import seed_default_workflows
        seeded = seed_default_workflows()
        click.echo(f"Workflows ready: {', '.join(sorted(seeded))}")

    @app.cli.command("drain-outbox")
    @click.option("--all", "drain_everything", is_flag=True,
                  help="Keep draining until nothing dispatchable is left.")
    def drain_outbox_cmd(drain_everything):
        """Dispatch pending outbox events once."""
        from app.services import outbox_service
        report = outbox_service.drain_all() if drain_everything else outbox_service.drain()
        click.echo(report.to_dict())

    @app.cli.command("run-outbox-worker")
    def run_outbox_worker_cmd():
        """Run the scheduler loop (outbox drain + parked alert) until interrupted."""
        from app.services.scheduler_service import SchedulerService
        SchedulerService.start()
        click.echo("Outbox worker running, Ctrl+C to stop")
        try:
            while SchedulerService.is_running():
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            SchedulerService.stop()

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (registers the outbox jobs) ─────────────
    from app.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)
    if app.config.get("OUTBOX_WORKER_ENABLED") and not app.testing:
        _SchedulerSvc.start()

    return app

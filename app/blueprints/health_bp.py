"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  simple 200 for load balancers
    GET /api/v1/health/live   database, outbox backlog, stalled handler and scheduler state
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from app.models import db
from app.services import outbox_service
from app.services.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness check, always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Outbox ───────────────────────────────────────────────────────
    if overall:
        parked = len(outbox_service.list_parked(limit=1000))
        checks["outbox"] = {
            "status": "ok" if not parked else "attention",
            "pending": outbox_service.pending_count(),
            "parked": parked,
        }
        stuck = outbox_service.overrunning_handler()
        if stuck is not None:
            checks["outbox"]["status"] = "stalled"
            checks["outbox"]["stalled_handler"] = stuck
            logger.warning("Health check: outbox handler for event %s past its deadline",
                           stuck["event_id"])

    # ── Worker ───────────────────────────────────────────────────────
    checks["worker"] = {
        "enabled": bool(current_app.config.get("OUTBOX_WORKER_ENABLED")),
        "running": SchedulerService.is_running(),
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code

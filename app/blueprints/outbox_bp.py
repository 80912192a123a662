"""
Outbox operator blueprint.

Endpoints:
    GET    /api/v1/outbox/parked                  events that exhausted their retries
    POST   /api/v1/outbox/events/<id>/requeue     give a parked event a fresh attempt budget
    POST   /api/v1/outbox/drain                   dispatch one batch now
    GET    /api/v1/outbox/jobs                    scheduled jobs and their last run
"""

import logging

from flask import Blueprint, jsonify, request

from app.services import outbox_service
from app.services.scheduler_service import SchedulerService
from app.utils.errors import E, api_error, register_domain_error_handlers

logger = logging.getLogger(__name__)

outbox_bp = Blueprint("outbox", __name__, url_prefix="/api/v1/outbox")
register_domain_error_handlers(outbox_bp)


@outbox_bp.route("/parked", methods=["GET"])
def list_parked():
    try:
        limit = min(int(request.args.get("limit", 100)), 1000)
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "limit must be an integer")
    items = outbox_service.list_parked(limit=limit)
    return jsonify({"items": items, "total": len(items)}), 200


@outbox_bp.route("/events/<int:event_id>/requeue", methods=["POST"])
def requeue(event_id):
    return jsonify(outbox_service.requeue(event_id)), 200


@outbox_bp.route("/drain", methods=["POST"])
def drain():
    data = request.get_json(silent=True) or {}
    batch_size = data.get("batch_size")
    if batch_size is not None and (not isinstance(batch_size, int) or batch_size < 1):
        return api_error(E.VALIDATION_INVALID, "batch_size must be a positive integer")
    report = outbox_service.drain(batch_size)
    body = report.to_dict()
    body["pending"] = outbox_service.pending_count()
    return jsonify(body), 200


@outbox_bp.route("/jobs", methods=["GET"])
def list_jobs():
    return jsonify({
        "running": SchedulerService.is_running(),
        "items": SchedulerService.list_jobs(),
    }), 200

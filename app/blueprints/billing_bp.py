"""
Billing Blueprint.

Endpoints:
    POST   /api/v1/billing/contexts                          create ORDER / GROUP context
    GET    /api/v1/billing/contexts/<id>                     context detail
    POST   /api/v1/billing/contexts/<id>/drafts              new DRAFT snapshot
    POST   /api/v1/billing/contexts/<id>/finalize            new FINAL snapshot
    GET    /api/v1/billing/contexts/<id>/snapshots/latest    latest snapshot
    GET    /api/v1/billing/contexts/<id>/snapshots           full version history
    POST   /api/v1/billing/runs/<run_id>/preview             single-run calculation

Amounts are returned as decimal strings: ``result`` at storage precision
(4 dp) and ``total`` rounded half-up to 2 dp.
"""

import logging

from flask import Blueprint, jsonify, request

from app.services import billing_calculator, billing_snapshot_service
from app.utils.errors import E, api_error, register_domain_error_handlers

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__, url_prefix="/api/v1/billing")
register_domain_error_handlers(billing_bp)


def _actor():
    return request.headers.get("X-User") or None


# ── Contexts ─────────────────────────────────────────────────────────────────


@billing_bp.route("/contexts", methods=["POST"])
def create_context():
    """Body: {"type": "ORDER|GROUP", "order_ids": [...], "name"?, "description"?}"""
    data = request.get_json(silent=True) or {}
    order_ids = data.get("order_ids")
    if not data.get("type"):
        return api_error(E.VALIDATION_REQUIRED, "type is required")
    if not isinstance(order_ids, list) or not order_ids:
        return api_error(E.VALIDATION_REQUIRED, "order_ids is required")
    context = billing_snapshot_service.create_context(
        data["type"], order_ids, name=data.get("name"), description=data.get("description"),
    )
    return jsonify(context.to_dict()), 201


@billing_bp.route("/contexts/<context_id>", methods=["GET"])
def get_context(context_id):
    return jsonify(billing_snapshot_service.get_context(context_id).to_dict()), 200


# ── Snapshots ────────────────────────────────────────────────────────────────


@billing_bp.route("/contexts/<context_id>/drafts", methods=["POST"])
def create_draft(context_id):
    """Body: {"inputs": {run_id: {variable: value}}, "reason"?}"""
    data = request.get_json(silent=True) or {}
    inputs = data.get("inputs")
    if inputs is not None and not isinstance(inputs, dict):
        return api_error(E.VALIDATION_INVALID, "inputs must be an object keyed by run id")
    snapshot = billing_snapshot_service.create_draft(
        context_id, inputs, reason=data.get("reason"), created_by=_actor(),
    )
    return jsonify(snapshot), 201


@billing_bp.route("/contexts/<context_id>/finalize", methods=["POST"])
def finalize(context_id):
    data = request.get_json(silent=True) or {}
    snapshot = billing_snapshot_service.finalize(
        context_id, reason=data.get("reason"), created_by=_actor(),
    )
    return jsonify(snapshot), 201


@billing_bp.route("/contexts/<context_id>/snapshots/latest", methods=["GET"])
def latest_snapshot(context_id):
    snapshot = billing_snapshot_service.get_latest(context_id)
    if snapshot is None:
        return api_error(E.NOT_FOUND, "No billing snapshot for this context yet")
    return jsonify(snapshot), 200


@billing_bp.route("/contexts/<context_id>/snapshots", methods=["GET"])
def snapshot_history(context_id):
    items = billing_snapshot_service.list_history(context_id)
    return jsonify({"items": items, "total": len(items)}), 200


# ── Preview ──────────────────────────────────────────────────────────────────


@billing_bp.route("/runs/<run_id>/preview", methods=["POST"])
def preview_run(run_id):
    """Body: {"inputs": {variable: value}}"""
    data = request.get_json(silent=True) or {}
    inputs = data.get("inputs") or {}
    if not isinstance(inputs, dict):
        return api_error(E.VALIDATION_INVALID, "inputs must be an object")
    return jsonify(billing_calculator.preview_run(run_id, inputs)), 200

"""
Workflow Blueprint.

Order placement, run data entry and the generic transition endpoint.

Endpoints:
    GET    /api/v1/workflow/types                         workflow definitions
    POST   /api/v1/workflow/run-templates                 create run template
    POST   /api/v1/workflow/processes                     create process
    POST   /api/v1/workflow/orders                        place an order
    GET    /api/v1/workflow/orders/<id>                   order + processes + runs
    POST   /api/v1/workflow/transitions                   apply next transition
    PUT    /api/v1/workflow/runs/<run_id>/fields          submit run field values
    POST   /api/v1/workflow/runs/<run_id>/lifecycle/advance

Layer contract:
    - Blueprint: parse input, call service, return JSON.
    - NO db.session writes here; services own the transaction.
    - Domain exceptions are rendered by the shared error handlers.
"""

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy import select

from app.models import db
from app.models.workflow import WorkflowType
from app.services import catalog_service, order_service, workflow_engine
from app.utils.errors import E, api_error, register_domain_error_handlers

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1/workflow")
register_domain_error_handlers(workflow_bp)


# ── Definitions & catalog ────────────────────────────────────────────────────


@workflow_bp.route("/types", methods=["GET"])
def list_workflow_types():
    types = db.session.execute(select(WorkflowType).order_by(WorkflowType.code)).scalars()
    return jsonify({"items": [t.to_dict(include_statuses=True) for t in types]}), 200


@workflow_bp.route("/run-templates", methods=["POST"])
def create_run_template():
    data = request.get_json(silent=True) or {}
    if not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    template = catalog_service.create_run_template(
        data["name"],
        data.get("fields") or [],
        data.get("billing_formula"),
        config_workflow_type_id=data.get("config_workflow_type_id"),
        lifecycle_workflow_type_id=data.get("lifecycle_workflow_type_id"),
        lifecycle_stages=data.get("lifecycle_stages"),
    )
    return jsonify(template.to_dict()), 201


@workflow_bp.route("/processes", methods=["POST"])
def create_process():
    data = request.get_json(silent=True) or {}
    if not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    process = catalog_service.create_process(data["name"], data.get("run_definitions") or [])
    return jsonify(process.to_dict()), 201


# ── Orders ───────────────────────────────────────────────────────────────────


@workflow_bp.route("/orders", methods=["POST"])
def create_order():
    """Place an order.

    Body: {"processes": [{"process_id": "...", "count": 2}],
           "customer_ref": "...", "quantity": 1000, "job_code": "..."}
    """
    data = request.get_json(silent=True) or {}
    processes = data.get("processes")
    if not isinstance(processes, list) or not processes:
        return api_error(E.VALIDATION_REQUIRED, "processes is required")
    order = order_service.create_order(
        processes,
        customer_ref=data.get("customer_ref"),
        quantity=data.get("quantity"),
        job_code=data.get("job_code"),
    )
    return jsonify(order.to_dict(include_children=True)), 201


@workflow_bp.route("/orders/<order_id>", methods=["GET"])
def get_order(order_id):
    order = order_service.get_order(order_id)
    return jsonify(order.to_dict(include_children=True)), 200


# ── Transitions ──────────────────────────────────────────────────────────────


@workflow_bp.route("/transitions", methods=["POST"])
def apply_transition():
    """Body: {"aggregate_id", "workflow_type_id", "trigger"?}"""
    data = request.get_json(silent=True) or {}
    missing = [k for k in ("aggregate_id", "workflow_type_id") if not data.get(k)]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"{', '.join(missing)} required",
                         details={"missing": missing})
    result = workflow_engine.apply_transition(
        data["aggregate_id"], data["workflow_type_id"], trigger=data.get("trigger") or "api",
    )
    return jsonify(result.to_dict()), 200


# ── Runs ─────────────────────────────────────────────────────────────────────


@workflow_bp.route("/runs/<run_id>/fields", methods=["PUT"])
def submit_run_fields(run_id):
    """Body: {"fields": {...}, "complete": false}"""
    data = request.get_json(silent=True) or {}
    fields = data.get("fields")
    if not isinstance(fields, dict):
        return api_error(E.VALIDATION_INVALID, "fields must be an object")
    result = order_service.submit_run_fields(run_id, fields, complete=bool(data.get("complete")))
    return jsonify(result), 200


@workflow_bp.route("/runs/<run_id>/lifecycle/advance", methods=["POST"])
def advance_run_lifecycle(run_id):
    data = request.get_json(silent=True) or {}
    result = order_service.advance_run_lifecycle(run_id, trigger=data.get("trigger") or "operator")
    return jsonify(result), 200

"""
Order placement and run data entry.

Order placement creates Order → OrderProcess → ProcessRun in one
transaction, every aggregate starting at its workflow's initial status, and
enqueues ORDER_CREATED. The ORDER_CREATED handler re-runs the same
materialization idempotently (it only fills in what is missing).

Run data entry:
  - submit_run_fields validates values against the run template schema;
    with ``complete=True`` it also requires every required field and moves
    the run one step along its config workflow.
  - advance_run_lifecycle moves the run one step along its lifecycle
    workflow (physical production stage).
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import func, select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.catalog import Process
from app.models.order import Order, OrderProcess, ProcessRun
from app.models.outbox import OutboxEventType
from app.models.workflow import AGGREGATE_ORDER
from app.services import fiscal_sequence, outbox_service, run_fields, workflow_engine
from app.services.workflow_definitions import (
    ORDER_PROCESS_WORKFLOW,
    ORDER_WORKFLOW,
    get_workflow_type_by_code,
    initial_status,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Order placement
# ═════════════════════════════════════════════════════════════════════════════


def _normalize_selection(processes: list[dict]) -> list[dict]:
    if not processes:
        raise ValidationError("At least one process is required")
    selection = []
    seen = set()
    for item in processes:
        process_id = item.get("process_id")
        if not process_id:
            raise ValidationError("process_id is required", details={"processes": item})
        if process_id in seen:
            raise ValidationError(f"Process {process_id} selected twice")
        seen.add(process_id)
        try:
            count = int(item.get("count", 1))
        except (TypeError, ValueError):
            raise ValidationError("count must be an integer", details={"process_id": process_id})
        if count < 1:
            raise ValidationError("count must be >= 1", details={"process_id": process_id})
        selection.append({"process_id": process_id, "count": count})
    return selection


def create_order(
    processes: list[dict],
    *,
    customer_ref: str | None = None,
    quantity=None,
    job_code: str | None = None,
) -> Order:
    """Place an order and commit.

    Args:
        processes: [{"process_id": ..., "count": n}, ...]; ``count`` is the
                   batch count, each batch yields one run per run definition.

    Returns:
        The committed Order.
    """
    selection = _normalize_selection(processes)
    enabled = set(db.session.execute(
        select(Process.id).where(
            Process.id.in_([s["process_id"] for s in selection]),
            Process.is_enabled.is_(True),
        )
    ).scalars())
    missing = [s["process_id"] for s in selection if s["process_id"] not in enabled]
    if missing:
        raise ValidationError("One or more processes are disabled or invalid",
                              details={"process_ids": missing})

    if quantity is not None:
        try:
            quantity = Decimal(str(quantity))
        except InvalidOperation:
            raise ValidationError("quantity must be a number")

    order_wf = get_workflow_type_by_code(ORDER_WORKFLOW)
    start = initial_status(order_wf.id)

    # Issued on its own connection before any write in this session
    code = fiscal_sequence.next_code(current_app.config["ORDER_CODE_PREFIX"])

    try:
        order = Order(
            code=code,
            customer_ref=customer_ref,
            quantity=quantity,
            job_code=job_code,
            status_code=start.code,
            workflow_type_id=order_wf.id,
            total_processes=len(selection),
            completed_processes=0,
            lifecycle_completion_sent=False,
        )
        db.session.add(order)
        db.session.flush()

        payload = {"order_id": order.id, "processes": selection}
        run_count = ensure_order_materialized(order.id, payload)
        outbox_service.enqueue(AGGREGATE_ORDER, order.id, OutboxEventType.ORDER_CREATED, payload)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Order %s created: %d processes, %d runs", code, len(selection), run_count,
                extra={"aggregate_type": AGGREGATE_ORDER, "aggregate_id": order.id})
    return order


def ensure_order_materialized(order_id: str, payload: dict) -> int:
    """Create whatever OrderProcess / ProcessRun rows are missing. Caller commits.

    Safe to re-run: an OrderProcess that already has runs is left untouched.

    Returns:
        Number of runs created.
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(resource="Order", resource_id=order_id)

    process_wf = get_workflow_type_by_code(ORDER_PROCESS_WORKFLOW)
    process_start = initial_status(process_wf.id)
    created = 0

    for item in payload.get("processes") or []:
        process = db.session.get(Process, item["process_id"])
        if process is None:
            raise NotFoundError(resource="Process", resource_id=item["process_id"])
        count = int(item.get("count", 1))
        definitions = process.run_definitions
        total_runs = count * len(definitions)

        op = db.session.execute(
            select(OrderProcess).where(
                OrderProcess.order_id == order_id,
                OrderProcess.process_id == process.id,
            )
        ).scalar_one_or_none()
        if op is None:
            op = OrderProcess(
                order_id=order_id,
                process_id=process.id,
                workflow_type_id=process_wf.id,
                status_code=process_start.code,
                total_runs=total_runs,
                config_completed_runs=0,
                lifecycle_completed_runs=0,
            )
            db.session.add(op)
            db.session.flush()

        existing = db.session.execute(
            select(func.count(ProcessRun.id)).where(ProcessRun.order_process_id == op.id)
        ).scalar_one()
        if existing:
            logger.debug("OrderProcess %s already has %d runs, skipping", op.id, existing)
            continue

        run_number = 1
        for batch in range(count):
            for definition in definitions:
                template = definition.run_template
                db.session.add(ProcessRun(
                    order_process_id=op.id,
                    run_template_id=template.id,
                    run_number=run_number,
                    display_name=f"{definition.display_name} ({batch + 1})",
                    config_workflow_type_id=template.config_workflow_type_id,
                    status_code=initial_status(template.config_workflow_type_id).code,
                    lifecycle_workflow_type_id=template.lifecycle_workflow_type_id,
                    life_cycle_status_code=initial_status(template.lifecycle_workflow_type_id).code,
                    fields={},
                ))
                run_number += 1
                created += 1
    db.session.flush()
    return created


def get_order(order_id: str) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(resource="Order", resource_id=order_id)
    return order


# ═════════════════════════════════════════════════════════════════════════════
# Run data entry
# ═════════════════════════════════════════════════════════════════════════════


def get_run(run_id: str) -> ProcessRun:
    run = db.session.get(ProcessRun, run_id)
    if run is None:
        raise NotFoundError(resource="ProcessRun", resource_id=run_id)
    return run


def submit_run_fields(run_id: str, values: dict, *, complete: bool = False) -> dict:
    """Validate and store run field values, optionally completing configuration.

    Returns:
        {"run": run dict, "transition": TransitionResult dict or None}
    """
    run = get_run(run_id)
    schema = run.run_template.fields or []
    transition = None
    try:
        run.fields = run_fields.validate_values(
            schema, values, existing=run.fields, require_complete=complete,
        )
        db.session.flush()
        if complete and workflow_engine.available_transition(run.id, run.config_workflow_type_id):
            transition = workflow_engine.apply_transition(
                run.id, run.config_workflow_type_id, trigger="fields_submitted", commit=False,
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if transition is not None:
        logger.info("Run %s configured (%s → %s)", run.id, transition.from_status,
                    transition.to_status, extra={"aggregate_id": run.id})
    return {
        "run": run.to_dict(),
        "transition": transition.to_dict() if transition else None,
    }


def advance_run_lifecycle(run_id: str, trigger: str = "operator") -> dict:
    """Move a run to its next production stage and commit."""
    run = get_run(run_id)
    return workflow_engine.apply_transition(
        run.id, run.lifecycle_workflow_type_id, trigger=trigger,
    ).to_dict()

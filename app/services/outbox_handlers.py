"""
Outbox event handlers.

Each handler receives the claimed OutboxEvent and runs inside the drain's
per-event transaction; it must not commit. Delivery is at-least-once, so
every handler tolerates being re-run.

    ORDER_CREATED                                  ensure processes / runs / billing context
    ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED   advance OrderProcess; count toward Order
    ORDER_LIFECYCLE_TRANSITION_REQUESTED           advance Order; request billing when billable
    BILLING_SNAPSHOT_REQUESTED                     auto-draft the order's billing snapshot
    WORKFLOW_TRANSITION_APPLIED                    structured log only
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import update

from app.core.exceptions import FormulaError, InvalidTransition, ValidationError
from app.models import db
from app.models.order import Order, OrderProcess
from app.models.outbox import REASON_ALL_RUNS_COMPLETED, OutboxEvent, OutboxEventType
from app.models.workflow import AGGREGATE_ORDER
from app.services import outbox_service, workflow_engine

logger = logging.getLogger(__name__)


def _advance(aggregate_id: str, workflow_type_id: str, event: OutboxEvent):
    """One step along the workflow; None when the aggregate is already at a dead end."""
    try:
        return workflow_engine.apply_transition(
            aggregate_id, workflow_type_id, trigger=f"outbox:{event.id}", commit=False,
        )
    except InvalidTransition as exc:
        logger.info("No transition for %s: %s", aggregate_id, exc.reason,
                    extra={"aggregate_id": aggregate_id, "event_id": event.id})
        return None


# ── ORDER_CREATED ────────────────────────────────────────────────────────────


def handle_order_created(event: OutboxEvent) -> None:
    from app.services import billing_snapshot_service, order_service

    order_id = event.aggregate_id
    created_runs = order_service.ensure_order_materialized(order_id, event.payload or {})
    billing_snapshot_service.resolve_order_context(order_id, commit=False)
    logger.info("ORDER_CREATED handled for %s (%d runs created)", order_id, created_runs,
                extra={"aggregate_id": order_id, "event_id": event.id})


# ── ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED ─────────────────────────────


def handle_order_process_transition(event: OutboxEvent) -> None:
    op = db.session.get(OrderProcess, event.aggregate_id)
    if op is None:
        logger.warning("OrderProcess %s vanished; event %s ignored", event.aggregate_id, event.id)
        return
    reason = (event.payload or {}).get("reason")
    _advance(op.id, op.workflow_type_id, event)

    # Config completion never counts toward the order
    if reason != REASON_ALL_RUNS_COMPLETED:
        return

    order_id = op.order_id
    res = db.session.execute(
        update(Order)
        .where(Order.id == order_id, Order.completed_processes < Order.total_processes)
        .values(completed_processes=Order.completed_processes + 1)
    )
    if res.rowcount != 1:
        logger.warning("Order %s already has all processes completed", order_id,
                       extra={"aggregate_id": order_id, "event_id": event.id})

    flipped = db.session.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.completed_processes == Order.total_processes,
            Order.lifecycle_completion_sent.is_(False),
        )
        .values(lifecycle_completion_sent=True)
    )
    if flipped.rowcount == 1:
        outbox_service.enqueue(
            AGGREGATE_ORDER, order_id, OutboxEventType.ORDER_LIFECYCLE_TRANSITION_REQUESTED, {},
        )
        logger.info("Order %s: all processes complete", order_id,
                    extra={"aggregate_id": order_id, "event_id": event.id})


# ── ORDER_LIFECYCLE_TRANSITION_REQUESTED ────────────────────────────────────


def handle_order_transition(event: OutboxEvent) -> None:
    order = db.session.get(Order, event.aggregate_id)
    if order is None:
        logger.warning("Order %s vanished; event %s ignored", event.aggregate_id, event.id)
        return
    result = _advance(order.id, order.workflow_type_id, event)
    billable = current_app.config["BILLING_BILLABLE_STATUS"]
    if result is not None and result.to_status == billable:
        outbox_service.enqueue(
            AGGREGATE_ORDER, order.id, OutboxEventType.BILLING_SNAPSHOT_REQUESTED,
            {"order_id": order.id},
        )


# ── BILLING_SNAPSHOT_REQUESTED ───────────────────────────────────────────────


def handle_billing_snapshot_requested(event: OutboxEvent) -> None:
    from app.services import billing_snapshot_service

    order_id = (event.payload or {}).get("order_id") or event.aggregate_id
    context = billing_snapshot_service.resolve_order_context(order_id, commit=False)
    try:
        # Savepoint so a formula failure leaves the claim intact
        with db.session.begin_nested():
            snapshot = billing_snapshot_service.create_draft(
                context.id, None, reason="auto: order complete",
                created_by="outbox", commit=False,
            )
    except (FormulaError, ValidationError) as exc:
        logger.warning(
            "Auto billing draft skipped for order %s: %s", order_id, exc,
            extra={"aggregate_id": order_id, "billing_context_id": context.id,
                   "event_id": event.id},
        )
        return
    logger.info("Auto billing draft v%d for order %s", snapshot["version"], order_id,
                extra={"billing_context_id": context.id, "version": snapshot["version"]})


# ── WORKFLOW_TRANSITION_APPLIED ──────────────────────────────────────────────


def handle_transition_applied(event: OutboxEvent) -> None:
    payload = event.payload or {}
    logger.info(
        "%s %s %s → %s", event.aggregate_type, event.aggregate_id,
        payload.get("from_status"), payload.get("to_status"),
        extra={
            "event_id": event.id,
            "event_type": event.event_type,
            "aggregate_type": event.aggregate_type,
            "aggregate_id": event.aggregate_id,
            "from_status": payload.get("from_status"),
            "to_status": payload.get("to_status"),
        },
    )


HANDLERS = {
    OutboxEventType.ORDER_CREATED: handle_order_created,
    OutboxEventType.ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED: handle_order_process_transition,
    OutboxEventType.ORDER_LIFECYCLE_TRANSITION_REQUESTED: handle_order_transition,
    OutboxEventType.BILLING_SNAPSHOT_REQUESTED: handle_billing_snapshot_requested,
    OutboxEventType.WORKFLOW_TRANSITION_APPLIED: handle_transition_applied,
}

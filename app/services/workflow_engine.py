"""
Transition Engine

Applies workflow transitions to Order / OrderProcess / ProcessRun aggregates.

Rules:
  - The workflow type decides which table the aggregate lives in
    (WorkflowType.aggregate_type). For a ProcessRun the workflow type also
    decides which of its two statuses moves:
        config_workflow_type_id    → status_code
        lifecycle_workflow_type_id → life_cycle_status_code
  - Exactly one edge may leave a status; no edge → InvalidTransition and
    nothing is written.
  - The aggregate row is read FOR UPDATE and written with a compare-and-set
    on the status it was read with. A lost race raises InvalidTransition.
  - Every applied transition writes one WorkflowAuditLog row and one
    WORKFLOW_TRANSITION_APPLIED outbox event in the same transaction.
  - A ProcessRun reaching a terminal status bumps its OrderProcess counter
    with an atomic SQL increment:
        lifecycle → lifecycle_completed_runs, reason ALL_RUNS_COMPLETED
        config    → config_completed_runs,    reason CONFIG_COMPLETE
    The transaction that makes the counter equal total_runs enqueues the
    single ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED event. Only
    ALL_RUNS_COMPLETED ever counts toward Order.completed_processes
    (handled asynchronously in outbox_handlers).
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from sqlalchemy import select, update

from app.core.exceptions import InvalidTransition, UnknownAggregate, ValidationError
from app.models import db
from app.models.order import Order, OrderProcess, ProcessRun
from app.models.outbox import (
    REASON_ALL_RUNS_COMPLETED,
    REASON_CONFIG_COMPLETE,
    OutboxEventType,
)
from app.models.workflow import (
    AGGREGATE_ORDER,
    AGGREGATE_ORDER_PROCESS,
    AGGREGATE_PROCESS_RUN,
    WorkflowAuditLog,
    WorkflowStatus,
)
from app.services import outbox_service
from app.services.workflow_definitions import (
    get_workflow_type,
    next_transition,
    status_by_code,
)

logger = logging.getLogger(__name__)

_AGGREGATE_MODELS = {
    AGGREGATE_ORDER: Order,
    AGGREGATE_ORDER_PROCESS: OrderProcess,
    AGGREGATE_PROCESS_RUN: ProcessRun,
}

_RUN_COUNTERS = {
    "life_cycle_status_code": ("lifecycle_completed_runs", REASON_ALL_RUNS_COMPLETED),
    "status_code": ("config_completed_runs", REASON_CONFIG_COMPLETE),
}


@dataclass(frozen=True)
class TransitionResult:
    aggregate_type: str
    aggregate_id: str
    workflow_type_id: str
    from_status: str
    to_status: str
    is_terminal: bool

    def to_dict(self):
        return asdict(self)


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def apply_transition(
    aggregate_id: str,
    workflow_type_id: str,
    trigger: str | None = None,
    *,
    commit: bool = True,
) -> TransitionResult:
    """Move an aggregate one step along ``workflow_type_id``.

    Args:
        aggregate_id: Order / OrderProcess / ProcessRun id.
        workflow_type_id: The workflow driving the status to move.
        trigger: Free-text cause recorded in the audit log (e.g. "operator", "outbox:42").
        commit: False when the caller owns the transaction (outbox handlers,
                run data entry); the caller then commits or rolls back.

    Returns:
        TransitionResult with from_status / to_status.

    Raises:
        NotFoundError: workflow type does not exist.
        UnknownAggregate: aggregate id does not resolve.
        InvalidTransition: no edge from the current status, stale status,
                           or the workflow type does not drive this aggregate.
    """
    try:
        result = _apply(aggregate_id, workflow_type_id, trigger)
        if commit:
            db.session.commit()
    except Exception:
        if commit:
            db.session.rollback()
        raise

    logger.info(
        "Transition applied %s %s: %s → %s",
        result.aggregate_type, aggregate_id, result.from_status, result.to_status,
        extra={
            "aggregate_type": result.aggregate_type,
            "aggregate_id": aggregate_id,
            "workflow_type": workflow_type_id,
            "from_status": result.from_status,
            "to_status": result.to_status,
            "trigger": trigger,
        },
    )
    return result


def available_transition(aggregate_id: str, workflow_type_id: str) -> dict | None:
    """Where ``apply_transition`` would move the aggregate, without moving it."""
    wf = get_workflow_type(workflow_type_id)
    model = _AGGREGATE_MODELS[wf.aggregate_type]
    aggregate = db.session.get(model, aggregate_id)
    if aggregate is None:
        raise UnknownAggregate(wf.aggregate_type, aggregate_id)
    column = _status_column(wf.aggregate_type, aggregate, workflow_type_id)
    current = status_by_code(workflow_type_id, getattr(aggregate, column))
    if current is None:
        return None
    edge = next_transition(workflow_type_id, current.id)
    if edge is None:
        return None
    return {"from_status": current.code, "to_status": edge.to_status.code}


def set_billed_status(order_ids: list[str], from_status: str, to_status: str,
                      trigger: str = "billing") -> list[str]:
    """Billing completion: move orders ``from_status`` → ``to_status``.

    This is the only status change outside the transition graph. The target
    must be a status of the order's own workflow. Orders not currently in
    ``from_status`` are left alone. Caller commits.

    Returns:
        Ids of the orders that moved.
    """
    moved = []
    for order_id in order_ids:
        order = db.session.get(Order, order_id)
        if order is None:
            raise UnknownAggregate(AGGREGATE_ORDER, order_id)
        if status_by_code(order.workflow_type_id, to_status) is None:
            raise ValidationError(
                f"Status {to_status!r} does not belong to the workflow of order {order.code}",
            )
        res = db.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status_code == from_status)
            .values(status_code=to_status)
        )
        if res.rowcount != 1:
            logger.info("Order %s not in %s, billing status unchanged", order_id, from_status)
            continue
        _record(AGGREGATE_ORDER, order_id, order.workflow_type_id, from_status, to_status, trigger)
        moved.append(order_id)
    return moved


# ═════════════════════════════════════════════════════════════════════════════
# Internals
# ═════════════════════════════════════════════════════════════════════════════


def _status_column(aggregate_type: str, aggregate, workflow_type_id: str) -> str:
    if aggregate_type == AGGREGATE_PROCESS_RUN:
        if workflow_type_id == aggregate.config_workflow_type_id:
            return "status_code"
        if workflow_type_id == aggregate.lifecycle_workflow_type_id:
            return "life_cycle_status_code"
    elif aggregate.workflow_type_id == workflow_type_id:
        return "status_code"
    raise InvalidTransition(
        aggregate_type, aggregate.id,
        reason=f"workflow type {workflow_type_id} does not drive this {aggregate_type}",
    )


def _apply(aggregate_id: str, workflow_type_id: str, trigger: str | None) -> TransitionResult:
    wf = get_workflow_type(workflow_type_id)
    aggregate_type = wf.aggregate_type
    model = _AGGREGATE_MODELS[aggregate_type]

    aggregate = db.session.execute(
        select(model)
        .where(model.id == aggregate_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if aggregate is None:
        raise UnknownAggregate(aggregate_type, aggregate_id)

    column_name = _status_column(aggregate_type, aggregate, workflow_type_id)
    current_code = getattr(aggregate, column_name)

    current = status_by_code(workflow_type_id, current_code)
    if current is None:
        raise InvalidTransition(
            aggregate_type, aggregate_id, current_code,
            reason=f"status {current_code!r} is not part of workflow {wf.code}",
        )
    edge = next_transition(workflow_type_id, current.id)
    if edge is None:
        raise InvalidTransition(aggregate_type, aggregate_id, current_code)
    target: WorkflowStatus = edge.to_status

    column = getattr(model, column_name)
    res = db.session.execute(
        update(model)
        .where(model.id == aggregate_id, column == current_code)
        .values({column_name: target.code})
    )
    if res.rowcount != 1:
        raise InvalidTransition(
            aggregate_type, aggregate_id, current_code,
            reason=f"status changed concurrently (expected {current_code!r})",
        )

    _record(aggregate_type, aggregate_id, workflow_type_id, current_code, target.code, trigger)

    if aggregate_type == AGGREGATE_PROCESS_RUN and target.is_terminal:
        counter, reason = _RUN_COUNTERS[column_name]
        _count_completed_run(aggregate.order_process_id, counter, reason)

    return TransitionResult(
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        workflow_type_id=workflow_type_id,
        from_status=current_code,
        to_status=target.code,
        is_terminal=target.is_terminal,
    )


def _record(aggregate_type, aggregate_id, workflow_type_id, from_status, to_status, trigger):
    db.session.add(WorkflowAuditLog(
        workflow_type_id=workflow_type_id,
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        from_status=from_status,
        to_status=to_status,
        trigger=trigger,
    ))
    outbox_service.enqueue(
        aggregate_type, aggregate_id, OutboxEventType.WORKFLOW_TRANSITION_APPLIED,
        {
            "workflow_type_id": workflow_type_id,
            "from_status": from_status,
            "to_status": to_status,
            "trigger": trigger,
        },
    )


def _count_completed_run(order_process_id: str, counter: str, reason: str) -> None:
    """Atomically bump ``counter`` and fire the completion event exactly once."""
    column = getattr(OrderProcess, counter)
    res = db.session.execute(
        update(OrderProcess)
        .where(OrderProcess.id == order_process_id, column < OrderProcess.total_runs)
        .values({counter: column + 1})
    )
    if res.rowcount != 1:
        logger.warning(
            "OrderProcess %s %s already at total_runs; increment skipped",
            order_process_id, counter,
            extra={"aggregate_type": AGGREGATE_ORDER_PROCESS, "aggregate_id": order_process_id},
        )
        return

    # Read back inside the same transaction: the UPDATE holds the row lock
    completed, total = db.session.execute(
        select(column, OrderProcess.total_runs).where(OrderProcess.id == order_process_id)
    ).one()
    logger.debug("OrderProcess %s %s=%d/%d", order_process_id, counter, completed, total)

    if completed == total:
        outbox_service.enqueue(
            AGGREGATE_ORDER_PROCESS, order_process_id,
            OutboxEventType.ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED,
            {"reason": reason},
        )

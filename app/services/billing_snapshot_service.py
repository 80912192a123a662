"""
Billing snapshot store.

A BillingContext is either one order (ORDER) or a named set of orders
(GROUP). Each calculation for a context is stored as an immutable
BillingSnapshot with a monotonically increasing version:

    create_draft  → new DRAFT version from the supplied inputs
    finalize      → new FINAL version recomputed from the latest draft's inputs;
                    the first FINAL moves the context's orders to BILLED
                    (ORDER) or GROUP_BILLED (GROUP)

Exactly one snapshot per context is flagged ``is_latest``. The previous
latest is cleared by an explicit UPDATE in the same transaction as the
insert; the context row is locked FOR UPDATE while the version is chosen.
A unique-violation on (context, version) surfaces as StaleSnapshotVersion.

GROUP contexts do not calculate runs themselves: they draft their member
orders (for the runs named in the inputs) and sum each member's latest
snapshot.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    StaleSnapshotVersion,
    ValidationError,
)
from app.models import db
from app.models.billing import (
    CALC_INITIAL,
    CALC_RECALCULATED,
    CONTEXT_GROUP,
    CONTEXT_ORDER,
    CONTEXT_TYPES,
    INTENT_DRAFT,
    INTENT_FINAL,
    BillingContext,
    BillingContextOrder,
    BillingSnapshot,
)
from app.models.order import Order
from app.services import billing_calculator, fiscal_sequence, formula_engine, workflow_engine

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Contexts
# ═════════════════════════════════════════════════════════════════════════════


def _order_context(order_id: str) -> BillingContext | None:
    return db.session.execute(
        select(BillingContext)
        .join(BillingContextOrder, BillingContextOrder.billing_context_id == BillingContext.id)
        .where(BillingContext.type == CONTEXT_ORDER, BillingContextOrder.order_id == order_id)
    ).scalars().first()


def get_context(context_id: str) -> BillingContext:
    context = db.session.get(BillingContext, context_id)
    if context is None:
        raise NotFoundError(resource="BillingContext", resource_id=context_id)
    return context


def create_context(
    context_type: str,
    order_ids: list[str],
    *,
    name: str | None = None,
    description: str | None = None,
) -> BillingContext:
    """Create a billing context and commit.

    ORDER contexts hold exactly one order and there is at most one per order.
    GROUP contexts hold one or more distinct orders; an unnamed group gets
    the next ``R<n>/<fiscal year>`` code.
    """
    context_type = (context_type or "").upper()
    if context_type not in CONTEXT_TYPES:
        raise ValidationError(f"type must be one of {sorted(CONTEXT_TYPES)}")
    order_ids = list(dict.fromkeys(order_ids or []))
    if not order_ids:
        raise ValidationError("At least one order is required")

    found = set(db.session.execute(select(Order.id).where(Order.id.in_(order_ids))).scalars())
    missing = [oid for oid in order_ids if oid not in found]
    if missing:
        raise NotFoundError(resource="Order", resource_id=", ".join(missing))

    if context_type == CONTEXT_ORDER:
        if len(order_ids) != 1:
            raise ValidationError("An ORDER billing context holds exactly one order")
        if _order_context(order_ids[0]) is not None:
            raise ConflictError(resource="BillingContext", field="order_id", value=order_ids[0])
        if not name:
            name = db.session.get(Order, order_ids[0]).code
    elif not name:
        # Issued on its own connection before any write in this session
        name = fiscal_sequence.next_code(current_app.config["GROUP_CODE_PREFIX"])

    try:
        context = _add_context(context_type, order_ids, name, description)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Billing context %s (%s) created for %d orders", name, context_type,
                len(order_ids), extra={"billing_context_id": context.id})
    return context


def _add_context(context_type, order_ids, name, description) -> BillingContext:
    context = BillingContext(type=context_type, name=name, description=description)
    db.session.add(context)
    db.session.flush()
    for order_id in order_ids:
        db.session.add(BillingContextOrder(billing_context_id=context.id, order_id=order_id))
    db.session.flush()
    return context


def resolve_order_context(order_id: str, commit: bool = True) -> BillingContext:
    """Return the ORDER context for ``order_id``, creating it if needed."""
    context = _order_context(order_id)
    if context is not None:
        return context
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(resource="Order", resource_id=order_id)
    context = _add_context(CONTEXT_ORDER, [order_id], order.code, None)
    if commit:
        db.session.commit()
    logger.debug("Billing context created for order %s", order.code,
                 extra={"billing_context_id": context.id, "aggregate_id": order_id})
    return context


# ═════════════════════════════════════════════════════════════════════════════
# Snapshots
# ═════════════════════════════════════════════════════════════════════════════


def _lock_context(context_id: str) -> BillingContext:
    context = db.session.execute(
        select(BillingContext)
        .where(BillingContext.id == context_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if context is None:
        raise NotFoundError(resource="BillingContext", resource_id=context_id)
    return context


def _latest(context_id: str) -> BillingSnapshot | None:
    return db.session.execute(
        select(BillingSnapshot).where(
            BillingSnapshot.billing_context_id == context_id,
            BillingSnapshot.is_latest.is_(True),
        )
    ).scalar_one_or_none()


def _persist(
    context: BillingContext,
    intent: str,
    total: Decimal,
    inputs: dict,
    line_items: list,
    checksum: str | None,
    reason: str | None,
    created_by: str | None,
) -> BillingSnapshot:
    # A failed flush expires the context; keep what the error needs
    context_id = context.id
    current = db.session.execute(
        select(func.max(BillingSnapshot.version))
        .where(BillingSnapshot.billing_context_id == context_id)
    ).scalar()
    version = (current or 0) + 1

    db.session.execute(
        update(BillingSnapshot)
        .where(
            BillingSnapshot.billing_context_id == context.id,
            BillingSnapshot.is_latest.is_(True),
        )
        .values(is_latest=False)
        .execution_options(synchronize_session="fetch")
    )
    snapshot = BillingSnapshot(
        billing_context_id=context_id,
        version=version,
        intent=intent,
        calculation_type=CALC_RECALCULATED if current else CALC_INITIAL,
        currency=current_app.config["BILLING_CURRENCY"],
        result=formula_engine.quantize_storage(total),
        inputs=inputs,
        line_items=line_items,
        formula_checksum=checksum,
        reason=reason,
        created_by=created_by,
        is_latest=True,
    )
    db.session.add(snapshot)
    try:
        db.session.flush()
    except IntegrityError as exc:
        raise StaleSnapshotVersion(context_id, version) from exc

    logger.info(
        "Billing snapshot v%d (%s) for context %s: %s", version, intent,
        context.name or context_id, snapshot.result,
        extra={"billing_context_id": context_id, "version": version, "intent": intent},
    )
    return snapshot


def _calculate_group(context: BillingContext, per_run_inputs: dict | None, *,
                     reason: str | None, created_by: str | None, draft_members: bool = True):
    """Draft member orders, then sum each member's latest snapshot.

    With run inputs only the members owning those runs are drafted; without
    any, every member is drafted from its stored field values. Finalize passes
    ``draft_members=False`` and sums what the members already hold.
    """
    per_run_inputs = per_run_inputs or {}
    if draft_members and not per_run_inputs:
        for order_id in context.order_ids:
            member = resolve_order_context(order_id, commit=False)
            create_draft(member.id, None, reason=reason, created_by=created_by, commit=False)
    elif per_run_inputs:
        runs = billing_calculator.runs_for_orders(context.order_ids)
        run_orders = {r.id: r.order_process.order_id for r in runs}
        unknown = sorted(set(per_run_inputs) - set(run_orders))
        if unknown:
            raise ValidationError("Runs do not belong to this billing context",
                                  details={"run_ids": unknown})
        for order_id in context.order_ids:
            member_inputs = {rid: v for rid, v in per_run_inputs.items() if run_orders[rid] == order_id}
            if member_inputs:
                member = resolve_order_context(order_id, commit=False)
                create_draft(member.id, member_inputs, reason=reason,
                             created_by=created_by, commit=False)

    total = Decimal("0")
    members = {}
    line_items = []
    for order_id in context.order_ids:
        member = resolve_order_context(order_id, commit=False)
        latest = _latest(member.id)
        if latest is None:
            raise ValidationError(f"Order {member.name} has no billing snapshot yet",
                                  details={"order_id": order_id})
        amount = Decimal(latest.result)
        total += amount
        members[order_id] = {
            "billing_context_id": member.id,
            "version": latest.version,
            "result": f"{amount:.4f}",
        }
        line_items.append({
            "order_id": order_id,
            "billing_context_id": member.id,
            "version": latest.version,
            "amount": f"{amount:.4f}",
        })
    return total, {"members": members}, line_items, None


def _calculate(context, per_run_inputs, *, reason=None, created_by=None):
    if context.type == CONTEXT_GROUP:
        return _calculate_group(context, per_run_inputs, reason=reason, created_by=created_by)
    calc = billing_calculator.calculate_for_orders(context.order_ids, per_run_inputs)
    return calc.total, calc.inputs, calc.line_items, calc.checksum


def create_draft(
    context_id: str,
    per_run_inputs: dict | None,
    *,
    reason: str | None = None,
    created_by: str | None = None,
    commit: bool = True,
) -> dict:
    """Calculate and store a new DRAFT version.

    Args:
        per_run_inputs: run_id → {variable: value}. None or empty calculates
                        every billable run from its stored field values.

    Returns:
        The new snapshot as a dict.
    """
    try:
        context = _lock_context(context_id)
        total, inputs, line_items, checksum = _calculate(
            context, per_run_inputs, reason=reason, created_by=created_by,
        )
        snapshot = _persist(context, INTENT_DRAFT, total, inputs, line_items,
                            checksum, reason, created_by)
        data = snapshot.to_dict()
        if commit:
            db.session.commit()
    except Exception:
        if commit:
            db.session.rollback()
        raise
    return data


def finalize(context_id: str, *, reason: str | None = None,
             created_by: str | None = None) -> dict:
    """Store a FINAL version recomputed from the latest draft and commit.

    Finalizing again appends another FINAL version; order statuses only move
    on the first one.
    """
    try:
        context = _lock_context(context_id)
        latest = _latest(context.id)
        if latest is None:
            raise ValidationError("Nothing to finalize: context has no draft")

        already_final = db.session.execute(
            select(BillingSnapshot.id).where(
                BillingSnapshot.billing_context_id == context.id,
                BillingSnapshot.intent == INTENT_FINAL,
            ).limit(1)
        ).first() is not None
        if already_final:
            logger.warning("Billing context %s finalized again", context.name or context.id,
                           extra={"billing_context_id": context.id})

        if context.type == CONTEXT_GROUP:
            total, inputs, line_items, checksum = _calculate_group(
                context, None, reason=None, created_by=None, draft_members=False,
            )
        else:
            total, inputs, line_items, checksum = _calculate(context, latest.inputs or None)

        snapshot = _persist(context, INTENT_FINAL, total, inputs, line_items, checksum,
                            reason or f"finalized from v{latest.version}", created_by)

        moved = []
        if not already_final:
            cfg = current_app.config
            target = cfg["BILLING_GROUP_BILLED_STATUS"] if context.type == CONTEXT_GROUP \
                else cfg["BILLING_BILLED_STATUS"]
            moved = workflow_engine.set_billed_status(
                context.order_ids, cfg["BILLING_BILLABLE_STATUS"], target,
                trigger=f"billing:{context.id}",
            )
        data = snapshot.to_dict()
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if moved:
        logger.info("Orders billed: %s", ", ".join(moved),
                    extra={"billing_context_id": context.id, "version": data["version"]})
    return data


def get_latest(context_id: str) -> dict | None:
    get_context(context_id)
    snapshot = _latest(context_id)
    return snapshot.to_dict() if snapshot else None


def list_history(context_id: str) -> list[dict]:
    """All versions, oldest first."""
    get_context(context_id)
    rows = db.session.execute(
        select(BillingSnapshot)
        .where(BillingSnapshot.billing_context_id == context_id)
        .order_by(BillingSnapshot.version)
    ).scalars()
    return [s.to_dict() for s in rows]

"""
Outbox Dispatcher

Durable at-least-once relay between aggregate mutations and their
cross-aggregate side effects.

    enqueue(...)   add an OutboxEvent to the caller's session (caller commits)
    drain()        dispatch one batch of pending events

Drain rules:
  - Pending = processed false, not parked, next_attempt_at due. Read in
    (created_at, id) order, OUTBOX_BATCH_SIZE at a time.
  - Each event gets its own transaction: claim it with
    ``UPDATE ... SET processed = true WHERE id = ? AND processed = false``,
    run the handler, commit. The claim and the handler's writes commit or
    roll back together, so a crash or failure leaves the event pending.
    A zero-row claim means another worker owns the event.
  - Once an aggregate has an event that failed, is backing off, or is
    parked, its later events wait; within one aggregate dispatch order is
    enqueue order. Across aggregates there is no ordering.
  - Failure: rollback, then record attempts / last_error and schedule the
    retry with exponential backoff. After OUTBOX_MAX_ATTEMPTS the event is
    parked and logged at ERROR; operators requeue it via ``requeue``.
  - Deprecated event types are consumed as no-ops. Unknown event types are
    logged at WARNING and consumed.
  - Handlers run under OUTBOX_HANDLER_TIMEOUT_SECONDS. On PostgreSQL the
    statement_timeout is set for the transaction, which bounds each SQL
    statement only. Python code in a handler is never interrupted: the
    deadline is checked when the handler returns, and an overrun counts as
    a failure and is retried. A handler that never returns keeps the drain
    lock, so later drains in this process report ``busy``;
    ``overrunning_handler()`` (surfaced by /health/live) names such an event.
  - One drain at a time per process (non-blocking lock); running several
    processes is safe because of the conditional claim.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Callable

from flask import current_app
from sqlalchemy import func, or_, select, text, update

from app.core.exceptions import NotFoundError, OutboxHandlerFailure, ValidationError
from app.models import db, utcnow
from app.models.outbox import OutboxEvent, OutboxEventType

logger = logging.getLogger(__name__)

_drain_lock = threading.Lock()
# Event currently inside its handler: (event_id, event_type, monotonic start, timeout)
_inflight: tuple[int, str, float, float] | None = None


# ═════════════════════════════════════════════════════════════════════════════
# Enqueue
# ═════════════════════════════════════════════════════════════════════════════


def enqueue(
    aggregate_type: str,
    aggregate_id: str,
    event_type: OutboxEventType | str,
    payload: dict | None = None,
) -> OutboxEvent:
    """Add an event to the current session. Committed by the caller's transaction."""
    if isinstance(event_type, OutboxEventType):
        event_type = event_type.value
    event = OutboxEvent(
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        event_type=event_type,
        payload=payload or {},
        processed=False,
        attempts=0,
        parked=False,
        created_at=utcnow(),
    )
    db.session.add(event)
    logger.debug("Outbox enqueue %s for %s %s", event_type, aggregate_type, aggregate_id,
                 extra={"event_type": event_type, "aggregate_id": aggregate_id})
    return event


# ═════════════════════════════════════════════════════════════════════════════
# Drain
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class DrainReport:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    parked: int = 0
    deferred: int = 0
    busy: bool = False
    errors: list[dict] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


class _HandlerTimeout(Exception):
    pass


def _backoff_seconds(attempts: int) -> float:
    cfg = current_app.config
    base = float(cfg["OUTBOX_BACKOFF_BASE_SECONDS"])
    ceiling = float(cfg["OUTBOX_BACKOFF_MAX_SECONDS"])
    return min(base * (2 ** max(attempts - 1, 0)), ceiling)


def _pending_batch(limit: int) -> list[tuple[int, str]]:
    now = utcnow()
    rows = db.session.execute(
        select(OutboxEvent.id, OutboxEvent.aggregate_id)
        .where(
            OutboxEvent.processed.is_(False),
            OutboxEvent.parked.is_(False),
            or_(OutboxEvent.next_attempt_at.is_(None), OutboxEvent.next_attempt_at <= now),
        )
        .order_by(OutboxEvent.created_at, OutboxEvent.id)
        .limit(limit)
    ).all()
    return [(row.id, row.aggregate_id) for row in rows]


def _blocked_aggregates(aggregate_ids: set[str]) -> dict[str, int]:
    """Aggregates whose earliest pending event is not dispatchable now.

    Returns aggregate_id → id of the earliest blocking event. Events of the
    aggregate created after that one must wait.
    """
    if not aggregate_ids:
        return {}
    now = utcnow()
    rows = db.session.execute(
        select(OutboxEvent.aggregate_id, func.min(OutboxEvent.id))
        .where(
            OutboxEvent.aggregate_id.in_(aggregate_ids),
            OutboxEvent.processed.is_(False),
            or_(OutboxEvent.parked.is_(True), OutboxEvent.next_attempt_at > now),
        )
        .group_by(OutboxEvent.aggregate_id)
    ).all()
    return {agg_id: event_id for agg_id, event_id in rows}


def _set_statement_timeout(seconds: float) -> None:
    if db.session.get_bind().dialect.name == "postgresql":
        db.session.execute(text(f"SET LOCAL statement_timeout = {int(seconds * 1000)}"))


def _dispatch(event: OutboxEvent, timeout: float) -> str:
    """Run the handler for one claimed event. Returns "processed" or "skipped"."""
    global _inflight
    from app.services.outbox_handlers import HANDLERS  # lazy: handlers import services

    event_type = OutboxEventType.parse(event.event_type)
    if event_type is None:
        logger.warning("Unknown outbox event type %s (event %s); skipping",
                       event.event_type, event.id,
                       extra={"event_type": event.event_type, "event_id": event.id})
        return "skipped"
    if event_type.is_deprecated:
        logger.info("Deprecated outbox event %s ignored (event %s)",
                    event.event_type, event.id,
                    extra={"event_type": event.event_type, "event_id": event.id})
        return "skipped"

    handler: Callable = HANDLERS[event_type]
    _set_statement_timeout(timeout)
    started = time.monotonic()
    _inflight = (event.id, event.event_type, started, timeout)
    try:
        handler(event)
    finally:
        _inflight = None
    elapsed = time.monotonic() - started
    if elapsed > timeout:
        raise _HandlerTimeout(f"handler exceeded {timeout:.1f}s (took {elapsed:.1f}s)")
    return "processed"


def _record_failure(event_id: int, event_type: str, error: Exception, report: DrainReport) -> None:
    max_attempts = int(current_app.config["OUTBOX_MAX_ATTEMPTS"])
    event = db.session.get(OutboxEvent, event_id)
    if event is None:
        return
    failure = OutboxHandlerFailure(event_id, event_type, f"{type(error).__name__}: {error}")
    event.attempts = (event.attempts or 0) + 1
    event.last_error = str(failure)[:4000]
    if event.attempts >= max_attempts:
        event.parked = True
        event.parked_at = utcnow()
        event.next_attempt_at = None
        report.parked += 1
    else:
        event.next_attempt_at = utcnow() + timedelta(seconds=_backoff_seconds(event.attempts))
    db.session.commit()
    report.failed += 1
    report.errors.append({"event_id": event_id, "event_type": event_type, "error": str(error)})

    if event.parked:
        logger.error(
            "Outbox event %s (%s) parked after %d attempts: %s",
            event_id, event_type, event.attempts, error,
            extra={"event_id": event_id, "event_type": event_type,
                   "aggregate_id": event.aggregate_id, "attempts": event.attempts},
        )
    else:
        logger.warning(
            "Outbox event %s (%s) failed, attempt %d/%d: %s",
            event_id, event_type, event.attempts, max_attempts, error,
            extra={"event_id": event_id, "event_type": event_type,
                   "aggregate_id": event.aggregate_id, "attempts": event.attempts},
        )


def _process_one(event_id: int, report: DrainReport, timeout: float) -> bool:
    """Claim and dispatch one event. Returns False when the event failed."""
    claimed = db.session.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == event_id, OutboxEvent.processed.is_(False))
        .values(processed=True, processed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.session.rollback()
        return True

    event = db.session.execute(
        select(OutboxEvent).where(OutboxEvent.id == event_id)
        .execution_options(populate_existing=True)
    ).scalar_one()
    event_type = event.event_type
    try:
        outcome = _dispatch(event, timeout)
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        _record_failure(event_id, event_type, exc, report)
        return False

    if outcome == "processed":
        report.processed += 1
    else:
        report.skipped += 1
    logger.debug("Outbox event %s %s %s", event_id, event_type, outcome,
                 extra={"event_id": event_id, "event_type": event_type})
    return True


def drain(batch_size: int | None = None) -> DrainReport:
    """Dispatch one batch of pending outbox events.

    Returns:
        DrainReport with per-outcome counts. ``busy`` is True when another
        drain in this process already holds the lock.
    """
    report = DrainReport()
    if not _drain_lock.acquire(blocking=False):
        report.busy = True
        return report
    try:
        cfg = current_app.config
        limit = batch_size or int(cfg["OUTBOX_BATCH_SIZE"])
        timeout = float(cfg["OUTBOX_HANDLER_TIMEOUT_SECONDS"])

        batch = _pending_batch(limit)
        blocked = _blocked_aggregates({agg_id for _, agg_id in batch})
        db.session.rollback()  # end the read transaction before per-event work

        for event_id, aggregate_id in batch:
            blocker = blocked.get(aggregate_id)
            if blocker is not None and blocker < event_id:
                report.deferred += 1
                continue
            if not _process_one(event_id, report, timeout):
                blocked[aggregate_id] = event_id
    finally:
        _drain_lock.release()

    if report.processed or report.failed:
        logger.info(
            "Outbox drain: processed=%d skipped=%d failed=%d parked=%d deferred=%d",
            report.processed, report.skipped, report.failed, report.parked, report.deferred,
        )
    return report


def drain_all(max_batches: int = 100) -> DrainReport:
    """Drain until no dispatchable event is left (or ``max_batches`` is hit)."""
    total = DrainReport()
    for _ in range(max_batches):
        report = drain()
        if report.busy:
            total.busy = True
            break
        for name in ("processed", "skipped", "failed", "parked", "deferred"):
            setattr(total, name, getattr(total, name) + getattr(report, name))
        total.errors.extend(report.errors)
        if not (report.processed or report.skipped or report.failed):
            break
    return total


# ═════════════════════════════════════════════════════════════════════════════
# Operator surface
# ═════════════════════════════════════════════════════════════════════════════


def pending_count() -> int:
    return db.session.execute(
        select(func.count(OutboxEvent.id)).where(
            OutboxEvent.processed.is_(False), OutboxEvent.parked.is_(False),
        )
    ).scalar_one()


def overrunning_handler() -> dict | None:
    """The event whose handler is still running past its deadline in this process."""
    inflight = _inflight
    if inflight is None:
        return None
    event_id, event_type, started, timeout = inflight
    running = time.monotonic() - started
    if running <= timeout:
        return None
    return {"event_id": event_id, "event_type": event_type, "running_seconds": round(running, 1)}


def list_parked(limit: int = 100) -> list[dict]:
    rows = db.session.execute(
        select(OutboxEvent)
        .where(OutboxEvent.parked.is_(True), OutboxEvent.processed.is_(False))
        .order_by(OutboxEvent.parked_at, OutboxEvent.id)
        .limit(limit)
    ).scalars().all()
    return [r.to_dict() for r in rows]


def requeue(event_id: int) -> dict:
    """Un-park an event so the next drain retries it with a fresh attempt budget."""
    event = db.session.get(OutboxEvent, event_id)
    if event is None:
        raise NotFoundError(resource="OutboxEvent", resource_id=event_id)
    if not event.parked or event.processed:
        raise ValidationError(f"Outbox event {event_id} is not parked")
    event.parked = False
    event.parked_at = None
    event.attempts = 0
    event.next_attempt_at = None
    db.session.commit()
    logger.info("Outbox event %s requeued", event_id,
                extra={"event_id": event_id, "event_type": event.event_type})
    return event.to_dict()

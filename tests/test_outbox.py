"""
Tests for the transactional outbox.

Covers:
    1. End-to-end: run completion → process → order → auto billing draft
    2. Idempotent drain and duplicate delivery
    3. Failure, backoff, parking and requeue
    4. Per-aggregate ordering
    5. Deprecated and unknown event types
    6. Handler timeout, atomic rollback, single-flight lock
"""

import time
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db, utcnow
from app.models.billing import BillingSnapshot
from app.models.order import Order, OrderProcess
from app.models.outbox import (
    REASON_ALL_RUNS_COMPLETED,
    OutboxEvent,
    OutboxEventType,
)
from app.models.workflow import AGGREGATE_ORDER, AGGREGATE_ORDER_PROCESS
from app.services import (
    billing_snapshot_service,
    order_service,
    outbox_handlers,
    outbox_service,
    workflow_engine,
)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _runs(order):
    return [run for op in order.processes for run in op.runs]


def _complete_order_runs(order, quantity=10, rate="2.5"):
    for run in _runs(order):
        order_service.submit_run_fields(
            run.id, {"Quantity": quantity, "New Rate": rate}, complete=True,
        )
        while workflow_engine.available_transition(run.id, run.lifecycle_workflow_type_id):
            order_service.advance_run_lifecycle(run.id)


def _events(event_type, aggregate_id=None):
    query = select(OutboxEvent).where(OutboxEvent.event_type == event_type.value)
    if aggregate_id is not None:
        query = query.where(OutboxEvent.aggregate_id == aggregate_id)
    return db.session.execute(query.order_by(OutboxEvent.id)).scalars().all()


def _enqueue(event_type, aggregate_id="agg-1", payload=None, aggregate_type=AGGREGATE_ORDER):
    event = outbox_service.enqueue(aggregate_type, aggregate_id, event_type, payload or {})
    db.session.commit()
    return event


def _reload(event_id):
    return db.session.execute(
        select(OutboxEvent).where(OutboxEvent.id == event_id)
        .execution_options(populate_existing=True)
    ).scalar_one()


@pytest.fixture()
def failing_handler(monkeypatch):
    """Make WORKFLOW_TRANSITION_APPLIED fail whenever the payload asks for it."""
    calls = []

    def _handler(event):
        calls.append(event.id)
        if (event.payload or {}).get("fail"):
            raise RuntimeError("boom")

    monkeypatch.setitem(outbox_handlers.HANDLERS, OutboxEventType.WORKFLOW_TRANSITION_APPLIED, _handler)
    return calls


# ═════════════════════════════════════════════════════════════════════════════
# End-to-end
# ═════════════════════════════════════════════════════════════════════════════


class TestEndToEnd:
    def test_order_completes_and_is_auto_drafted(self, make_order):
        order = make_order(count=3)
        _complete_order_runs(order)

        report = outbox_service.drain_all()
        assert report.failed == 0

        op = db.session.get(OrderProcess, order.processes[0].id)
        db.session.refresh(op)
        assert op.status_code == "COMPLETE"

        fresh = db.session.get(Order, order.id)
        db.session.refresh(fresh)
        assert fresh.status_code == "COMPLETE"
        assert fresh.completed_processes == 1
        assert fresh.lifecycle_completion_sent is True

        snapshots = db.session.execute(select(BillingSnapshot)).scalars().all()
        assert len(snapshots) == 1
        data = snapshots[0].to_dict()
        assert data["version"] == 1
        assert data["intent"] == "DRAFT"
        assert data["result"] == "75.0000"
        assert data["total"] == "75.00"
        assert data["created_by"] == "outbox"

    def test_drain_is_idempotent(self, make_order):
        order = make_order()
        _complete_order_runs(order)
        outbox_service.drain_all()

        again = outbox_service.drain_all()
        assert again.processed == 0
        assert outbox_service.pending_count() == 0
        assert len(db.session.execute(select(BillingSnapshot)).scalars().all()) == 1

    def test_duplicate_completion_event_counts_once(self, make_order):
        order = make_order()
        _complete_order_runs(order)
        outbox_service.drain_all()
        op_id = order.processes[0].id

        _enqueue(OutboxEventType.ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED, op_id,
                 {"reason": REASON_ALL_RUNS_COMPLETED}, aggregate_type=AGGREGATE_ORDER_PROCESS)
        outbox_service.drain_all()

        fresh = db.session.get(Order, order.id)
        db.session.refresh(fresh)
        assert fresh.completed_processes == 1
        assert len(_events(OutboxEventType.ORDER_LIFECYCLE_TRANSITION_REQUESTED, order.id)) == 1

    def test_order_created_handler_creates_billing_context(self, make_order):
        order = make_order(count=2)
        outbox_service.drain()
        context = billing_snapshot_service.resolve_order_context(order.id)
        assert context.order_ids == [order.id]
        assert context.name == order.code
        # Re-delivery does not duplicate runs
        assert order_service.ensure_order_materialized(
            order.id, {"processes": [{"process_id": order.processes[0].process_id, "count": 2}]},
        ) == 0


# ═════════════════════════════════════════════════════════════════════════════
# Failure handling
# ═════════════════════════════════════════════════════════════════════════════


class TestFailures:
    def test_failure_is_recorded_and_retried(self, failing_handler):
        event = _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED, payload={"fail": True})
        report = outbox_service.drain()
        assert report.failed == 1
        assert report.errors[0]["event_id"] == event.id

        stored = _reload(event.id)
        assert stored.processed is False
        assert stored.attempts == 1
        assert "boom" in stored.last_error
        assert stored.next_attempt_at is not None

    def test_backoff_delays_retry(self, app, monkeypatch, failing_handler):
        monkeypatch.setitem(app.config, "OUTBOX_BACKOFF_BASE_SECONDS", 60)
        monkeypatch.setitem(app.config, "OUTBOX_BACKOFF_MAX_SECONDS", 300)
        event = _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED, payload={"fail": True})
        outbox_service.drain()
        assert outbox_service.drain().failed == 0
        assert failing_handler == [event.id]

    def test_backoff_is_exponential_and_capped(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "OUTBOX_BACKOFF_BASE_SECONDS", 2)
        monkeypatch.setitem(app.config, "OUTBOX_BACKOFF_MAX_SECONDS", 300)
        assert [outbox_service._backoff_seconds(n) for n in (1, 2, 3, 4)] == [2, 4, 8, 16]
        assert outbox_service._backoff_seconds(20) == 300

    def test_parked_after_max_attempts_then_requeued(self, app, monkeypatch, failing_handler):
        monkeypatch.setitem(app.config, "OUTBOX_MAX_ATTEMPTS", 2)
        event = _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED, payload={"fail": True})

        outbox_service.drain()
        report = outbox_service.drain()
        assert report.parked == 1

        stored = _reload(event.id)
        assert stored.parked is True
        assert stored.attempts == 2
        assert [p["id"] for p in outbox_service.list_parked()] == [event.id]

        # Parked events are not picked up again
        assert outbox_service.drain().failed == 0
        assert len(failing_handler) == 2

        requeued = outbox_service.requeue(event.id)
        assert requeued["parked"] is False
        assert requeued["attempts"] == 0
        stored = _reload(event.id)
        stored.payload = {"fail": False}
        db.session.commit()

        assert outbox_service.drain().processed == 1
        assert _reload(event.id).processed is True
        assert outbox_service.list_parked() == []

    def test_requeue_rejects_unparked_and_missing(self):
        event = _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED)
        with pytest.raises(ValidationError):
            outbox_service.requeue(event.id)
        with pytest.raises(NotFoundError):
            outbox_service.requeue(999999)

    def test_failed_handler_rolls_back_its_writes(self, monkeypatch):
        def _handler(event):
            outbox_service.enqueue(AGGREGATE_ORDER, "side-effect", OutboxEventType.ORDER_CREATED, {})
            db.session.flush()
            raise RuntimeError("after write")

        monkeypatch.setitem(outbox_handlers.HANDLERS, OutboxEventType.WORKFLOW_TRANSITION_APPLIED, _handler)
        _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED)
        outbox_service.drain()
        assert _events(OutboxEventType.ORDER_CREATED, "side-effect") == []

    def test_handler_timeout_counts_as_failure(self, app, monkeypatch):
        def _slow(event):
            time.sleep(0.05)

        monkeypatch.setitem(app.config, "OUTBOX_HANDLER_TIMEOUT_SECONDS", 0.01)
        monkeypatch.setitem(outbox_handlers.HANDLERS, OutboxEventType.WORKFLOW_TRANSITION_APPLIED, _slow)
        event = _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED)
        report = outbox_service.drain()
        assert report.failed == 1
        stored = _reload(event.id)
        assert stored.processed is False
        assert "exceeded" in stored.last_error

    def test_overrunning_handler_visible_while_it_runs(self, app, monkeypatch):
        seen = {}

        def _slow(event):
            time.sleep(0.05)
            seen["overrun"] = outbox_service.overrunning_handler()
            seen["nested"] = outbox_service.drain()

        monkeypatch.setitem(app.config, "OUTBOX_HANDLER_TIMEOUT_SECONDS", 0.01)
        monkeypatch.setitem(outbox_handlers.HANDLERS, OutboxEventType.WORKFLOW_TRANSITION_APPLIED, _slow)
        event = _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED)
        assert outbox_service.overrunning_handler() is None

        outbox_service.drain()
        assert seen["overrun"]["event_id"] == event.id
        assert seen["overrun"]["event_type"] == "WORKFLOW_TRANSITION_APPLIED"
        assert seen["nested"].busy is True
        assert outbox_service.overrunning_handler() is None
        assert outbox_service.drain().busy is False


# ═════════════════════════════════════════════════════════════════════════════
# Ordering & dispatch rules
# ═════════════════════════════════════════════════════════════════════════════


class TestOrdering:
    def test_failed_event_blocks_later_events_of_same_aggregate(self, failing_handler):
        first = _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED, "agg-x", {"fail": True})
        second = _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED, "agg-x")
        other = _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED, "agg-y")

        report = outbox_service.drain()
        assert report.failed == 1
        assert report.deferred == 1
        assert report.processed == 1
        assert failing_handler == [first.id, other.id]
        assert _reload(second.id).processed is False

    def test_backing_off_event_blocks_aggregate_in_next_drain(self, app, monkeypatch, failing_handler):
        monkeypatch.setitem(app.config, "OUTBOX_BACKOFF_BASE_SECONDS", 60)
        monkeypatch.setitem(app.config, "OUTBOX_BACKOFF_MAX_SECONDS", 300)
        first = _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED, "agg-x", {"fail": True})
        outbox_service.drain()
        second = _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED, "agg-x")

        report = outbox_service.drain()
        assert report.deferred == 1
        assert _reload(second.id).processed is False
        assert _reload(first.id).attempts == 1

    def test_dispatch_follows_creation_order(self, failing_handler):
        ids = [_enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED, f"agg-{i}").id for i in range(5)]
        outbox_service.drain(batch_size=3)
        assert failing_handler == ids[:3]
        outbox_service.drain(batch_size=3)
        assert failing_handler == ids

    def test_future_next_attempt_is_not_due(self, failing_handler):
        event = _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED)
        stored = _reload(event.id)
        stored.next_attempt_at = utcnow() + timedelta(minutes=5)
        db.session.commit()
        assert outbox_service.drain().processed == 0
        assert failing_handler == []


class TestEventTypes:
    @pytest.mark.parametrize("event_type", [
        OutboxEventType.PROCESS_RUN_CONFIG_TRANSITION_REQUESTED,
        OutboxEventType.PROCESS_RUN_LIFECYCLE_TRANSITION_REQUESTED,
        OutboxEventType.STATUS_TRANSITION_REQUESTED,
        OutboxEventType.ORDER_PROCESS_STATUS_TRANSITION_REQUESTED,
    ])
    def test_deprecated_types_are_consumed_as_noops(self, event_type):
        event = _enqueue(event_type)
        report = outbox_service.drain()
        assert report.skipped == 1
        assert report.failed == 0
        assert _reload(event.id).processed is True

    def test_unknown_type_is_logged_and_consumed(self, caplog):
        event = _enqueue("SOMETHING_NEW")
        report = outbox_service.drain()
        assert report.skipped == 1
        assert _reload(event.id).processed is True
        assert "Unknown outbox event type" in caplog.text

    def test_parse(self):
        assert OutboxEventType.parse("ORDER_CREATED") is OutboxEventType.ORDER_CREATED
        assert OutboxEventType.parse("nope") is None
        assert OutboxEventType.STATUS_TRANSITION_REQUESTED.is_deprecated
        assert not OutboxEventType.ORDER_CREATED.is_deprecated


class TestSingleFlight:
    def test_concurrent_drain_reports_busy(self):
        _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED)
        outbox_service._drain_lock.acquire()
        try:
            report = outbox_service.drain()
        finally:
            outbox_service._drain_lock.release()
        assert report.busy is True
        assert outbox_service.pending_count() == 1

    def test_already_claimed_event_is_skipped(self, failing_handler):
        event = _enqueue(OutboxEventType.WORKFLOW_TRANSITION_APPLIED)
        report = outbox_service.DrainReport()
        stored = _reload(event.id)
        stored.processed = True
        db.session.commit()
        assert outbox_service._process_one(event.id, report, timeout=30) is True
        assert failing_handler == []

"""
Tests for workflow definitions and the transition engine.

Covers:
    1. Definition rules (single initial status, single outgoing edge)
    2. apply_transition: linear progression, terminal dead end, audit + outbox
    3. ProcessRun config vs lifecycle statuses
    4. Run completion counters and the single completion event
    5. Failed transitions write nothing
    6. Two runs completing at the same time (file-backed SQLite)
"""

import threading

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app import create_app
from app.core.exceptions import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    UnknownAggregate,
    ValidationError,
)
from app.models import db
from app.models.order import Order, OrderProcess
from app.models.outbox import REASON_ALL_RUNS_COMPLETED, OutboxEvent, OutboxEventType
from app.models.workflow import (
    AGGREGATE_ORDER,
    AGGREGATE_PROCESS_RUN,
    WorkflowAuditLog,
    WorkflowStatus,
)
from app.services import catalog_service, order_service, workflow_engine
from app.services.workflow_definitions import (
    ORDER_PROCESS_WORKFLOW,
    create_workflow,
    initial_status,
    seed_default_workflows,
)


def _events(event_type=None, aggregate_id=None):
    query = select(OutboxEvent)
    if event_type is not None:
        query = query.where(OutboxEvent.event_type == event_type.value)
    if aggregate_id is not None:
        query = query.where(OutboxEvent.aggregate_id == aggregate_id)
    return db.session.execute(query.order_by(OutboxEvent.id)).scalars().all()


def _audit_count(aggregate_id):
    return db.session.execute(
        select(func.count(WorkflowAuditLog.id)).where(WorkflowAuditLog.aggregate_id == aggregate_id)
    ).scalar_one()


def _runs(order):
    return [run for op in order.processes for run in op.runs]


# ═════════════════════════════════════════════════════════════════════════════
# Definitions
# ═════════════════════════════════════════════════════════════════════════════


class TestDefinitions:
    def test_seed_is_idempotent(self, workflows):
        again = seed_default_workflows()
        assert {k: v.id for k, v in again.items()} == {k: v.id for k, v in workflows.items()}
        assert again.keys() == {"ORDER", "ORDER_PROCESS", "RUN_CONFIG", "RUN_LIFECYCLE"}

    def test_order_workflow_terminal_statuses(self, workflows):
        statuses = {s.code: s for s in workflows["ORDER"].statuses}
        assert statuses["IN_PRODUCTION"].is_initial
        assert statuses["BILLED"].is_terminal
        assert statuses["GROUP_BILLED"].is_terminal
        assert not statuses["COMPLETE"].is_terminal

    def test_single_initial_status(self, workflows):
        assert initial_status(workflows[ORDER_PROCESS_WORKFLOW].id).code == "CONFIGURE"

    def test_two_outgoing_edges_rejected(self):
        with pytest.raises(ValidationError, match="at most one outgoing"):
            create_workflow("BRANCHY", "Branchy", AGGREGATE_ORDER, ["A", "B", "C"],
                            edges=[("A", "B"), ("A", "C")], terminal=["B", "C"])

    def test_terminal_with_edge_rejected(self):
        with pytest.raises(ValidationError, match="Terminal"):
            create_workflow("LOOPY", "Loopy", AGGREGATE_ORDER, ["A", "B"],
                            edges=[("A", "B"), ("B", "A")], terminal=["B"])

    def test_unknown_aggregate_type(self):
        with pytest.raises(ValidationError):
            create_workflow("X", "X", "Invoice", ["A"])

    def test_duplicate_code(self, workflows):
        with pytest.raises(ConflictError):
            create_workflow("ORDER", "Order again", AGGREGATE_ORDER, ["A"])

    def test_initial_status_requires_exactly_one(self, workflows):
        wf = workflows["RUN_CONFIG"]
        for status in wf.statuses:
            status.is_initial = False
        db.session.flush()
        with pytest.raises(ValidationError):
            initial_status(wf.id)
        db.session.rollback()


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


class TestApplyTransition:
    def test_order_moves_along_edge(self, make_order):
        order = make_order()
        result = workflow_engine.apply_transition(order.id, order.workflow_type_id, trigger="test")
        assert (result.from_status, result.to_status) == ("IN_PRODUCTION", "COMPLETE")
        assert not result.is_terminal
        assert db.session.get(Order, order.id).status_code == "COMPLETE"

    def test_audit_row_and_outbox_event_written(self, make_order):
        order = make_order()
        workflow_engine.apply_transition(order.id, order.workflow_type_id, trigger="test")
        assert _audit_count(order.id) == 1
        applied = _events(OutboxEventType.WORKFLOW_TRANSITION_APPLIED, order.id)
        assert len(applied) == 1
        assert applied[0].payload["from_status"] == "IN_PRODUCTION"
        assert applied[0].payload["to_status"] == "COMPLETE"
        assert applied[0].payload["trigger"] == "test"

    def test_no_edge_raises_and_writes_nothing(self, make_order):
        order = make_order()
        workflow_engine.apply_transition(order.id, order.workflow_type_id)
        before_events = len(_events())
        with pytest.raises(InvalidTransition) as exc:
            workflow_engine.apply_transition(order.id, order.workflow_type_id)
        assert exc.value.current_status == "COMPLETE"
        assert db.session.get(Order, order.id).status_code == "COMPLETE"
        assert _audit_count(order.id) == 1
        assert len(_events()) == before_events

    def test_unknown_aggregate(self, workflows):
        with pytest.raises(UnknownAggregate):
            workflow_engine.apply_transition("missing-id", workflows["ORDER"].id)

    def test_unknown_workflow_type(self, make_order):
        order = make_order()
        with pytest.raises(NotFoundError):
            workflow_engine.apply_transition(order.id, "no-such-workflow")

    def test_workflow_that_does_not_drive_aggregate(self, make_order):
        run = _runs(make_order())[0]
        spare = create_workflow("SPARE", "Spare", AGGREGATE_PROCESS_RUN, ["A", "B"])
        db.session.commit()
        with pytest.raises(InvalidTransition, match="does not drive"):
            workflow_engine.apply_transition(run.id, spare.id)

    def test_status_outside_workflow(self, make_order):
        order = make_order()
        db.session.execute(
            Order.__table__.update().where(Order.id == order.id).values(status_code="LIMBO")
        )
        db.session.commit()
        with pytest.raises(InvalidTransition, match="not part of workflow"):
            workflow_engine.apply_transition(order.id, order.workflow_type_id)

    def test_available_transition(self, make_order):
        order = make_order()
        assert workflow_engine.available_transition(order.id, order.workflow_type_id) == {
            "from_status": "IN_PRODUCTION", "to_status": "COMPLETE",
        }
        workflow_engine.apply_transition(order.id, order.workflow_type_id)
        assert workflow_engine.available_transition(order.id, order.workflow_type_id) is None


class TestProcessRunStatuses:
    def test_config_and_lifecycle_move_independently(self, make_order):
        run = _runs(make_order())[0]
        result = workflow_engine.apply_transition(run.id, run.lifecycle_workflow_type_id)
        assert (result.from_status, result.to_status) == ("PENDING", "IN_PROGRESS")
        db.session.refresh(run)
        assert run.life_cycle_status_code == "IN_PROGRESS"
        assert run.status_code == "PENDING"

        workflow_engine.apply_transition(run.id, run.config_workflow_type_id)
        db.session.refresh(run)
        assert run.status_code == "CONFIGURED"
        assert run.life_cycle_status_code == "IN_PROGRESS"


class TestRunCompletion:
    def _finish(self, run):
        while workflow_engine.available_transition(run.id, run.lifecycle_workflow_type_id):
            workflow_engine.apply_transition(run.id, run.lifecycle_workflow_type_id)

    def test_three_runs_emit_exactly_one_completion_event(self, make_order):
        order = make_order(count=3)
        op = order.processes[0]
        runs = _runs(order)
        assert op.total_runs == 3

        self._finish(runs[0])
        self._finish(runs[1])
        db.session.refresh(op)
        assert op.lifecycle_completed_runs == 2
        assert _events(OutboxEventType.ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED) == []

        self._finish(runs[2])
        db.session.refresh(op)
        assert op.lifecycle_completed_runs == 3
        completion = _events(OutboxEventType.ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED, op.id)
        assert len(completion) == 1
        assert completion[0].payload == {"reason": REASON_ALL_RUNS_COMPLETED}

    def test_counter_never_exceeds_total(self, make_order):
        order = make_order()
        op = order.processes[0]
        run = _runs(order)[0]
        self._finish(run)

        # Force the run back and complete it again: the counter stays capped
        db.session.execute(
            run.__table__.update().where(run.__table__.c.id == run.id)
            .values(life_cycle_status_code="IN_PROGRESS")
        )
        db.session.commit()
        self._finish(run)
        db.session.refresh(op)
        assert op.lifecycle_completed_runs == 1
        assert len(_events(OutboxEventType.ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED, op.id)) == 1

    def test_config_completion_uses_its_own_counter(self, make_order):
        order = make_order(count=2)
        op = order.processes[0]
        for run in _runs(order):
            workflow_engine.apply_transition(run.id, run.config_workflow_type_id)
        db.session.refresh(op)
        assert op.config_completed_runs == 2
        assert op.lifecycle_completed_runs == 0
        events = _events(OutboxEventType.ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED, op.id)
        assert [e.payload["reason"] for e in events] == ["CONFIG_COMPLETE"]


class TestConcurrentRunCompletion:
    def test_last_two_runs_finishing_together(self, tmp_path):
        db_file = tmp_path / "completion.db"
        concurrent_app = create_app("testing", overrides={
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_file}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30}},
        })
        with concurrent_app.app_context():
            seed_default_workflows()
            template = catalog_service.create_run_template(
                "Print", [{"key": "Quantity", "type": "number"}], billing_formula="quantity",
            )
            process = catalog_service.create_process("Offset", [{"run_template_id": template.id}])
            order = order_service.create_order([{"process_id": process.id, "count": 3}])
            op_id = order.processes[0].id
            lifecycle_id = template.lifecycle_workflow_type_id
            run_ids = [run.id for run in sorted(order.processes[0].runs, key=lambda r: r.run_number)]

            # First run done, the other two one step from done
            for run_id in run_ids:
                workflow_engine.apply_transition(run_id, lifecycle_id)
            workflow_engine.apply_transition(run_ids[0], lifecycle_id)
            db.session.remove()

        errors = []
        lock = threading.Lock()
        start = threading.Barrier(2)

        def finish(run_id):
            with concurrent_app.app_context():
                try:
                    start.wait()
                    workflow_engine.apply_transition(run_id, lifecycle_id, trigger="press")
                except Exception as exc:  # collected and asserted below
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=finish, args=(run_id,)) for run_id in run_ids[1:]]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        with concurrent_app.app_context():
            op = db.session.get(OrderProcess, op_id)
            assert op.lifecycle_completed_runs == op.total_runs == 3
            completion = _events(OutboxEventType.ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED, op_id)
            assert [e.payload for e in completion] == [{"reason": REASON_ALL_RUNS_COMPLETED}]
            db.engine.dispose()


class TestSetBilledStatus:
    def test_moves_only_orders_in_from_status(self, make_order):
        done = make_order()
        busy = make_order()
        workflow_engine.apply_transition(done.id, done.workflow_type_id)

        moved = workflow_engine.set_billed_status([done.id, busy.id], "COMPLETE", "BILLED")
        db.session.commit()
        assert moved == [done.id]
        assert db.session.get(Order, done.id).status_code == "BILLED"
        assert db.session.get(Order, busy.id).status_code == "IN_PRODUCTION"

    def test_target_must_belong_to_workflow(self, make_order):
        order = make_order()
        with pytest.raises(ValidationError):
            workflow_engine.set_billed_status([order.id], "IN_PRODUCTION", "INVOICED")

    def test_unknown_order(self, workflows):
        with pytest.raises(UnknownAggregate):
            workflow_engine.set_billed_status(["nope"], "COMPLETE", "BILLED")


def test_workflow_status_unique_initial_index(workflows):
    wf = workflows["RUN_LIFECYCLE"]
    db.session.add(WorkflowStatus(workflow_type_id=wf.id, code="EXTRA", is_initial=True))
    with pytest.raises(IntegrityError):
        db.session.flush()
    db.session.rollback()

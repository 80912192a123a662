"""
Workflow Definition Store

Read helpers and builders for WorkflowType / WorkflowStatus /
WorkflowTransition. Definitions are treated as immutable once aggregates
reference them; nothing here edits an existing workflow.

Default workflows (seed_default_workflows):
    ORDER          IN_PRODUCTION → COMPLETE   (+ BILLED, GROUP_BILLED reached by billing)
    ORDER_PROCESS  CONFIGURE → IN_PRODUCTION → COMPLETE
    RUN_CONFIG     PENDING → CONFIGURED
    RUN_LIFECYCLE  PENDING → IN_PROGRESS → DONE
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.workflow import (
    AGGREGATE_ORDER,
    AGGREGATE_ORDER_PROCESS,
    AGGREGATE_PROCESS_RUN,
    AGGREGATE_TYPES,
    WorkflowStatus,
    WorkflowTransition,
    WorkflowType,
)

logger = logging.getLogger(__name__)

ORDER_WORKFLOW = "ORDER"
ORDER_PROCESS_WORKFLOW = "ORDER_PROCESS"
RUN_CONFIG_WORKFLOW = "RUN_CONFIG"
RUN_LIFECYCLE_WORKFLOW = "RUN_LIFECYCLE"


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_workflow_type(workflow_type_id: str) -> WorkflowType:
    wf = db.session.get(WorkflowType, workflow_type_id)
    if wf is None:
        raise NotFoundError(resource="WorkflowType", resource_id=workflow_type_id)
    return wf


def get_workflow_type_by_code(code: str) -> WorkflowType:
    wf = db.session.execute(
        select(WorkflowType).where(WorkflowType.code == code)
    ).scalar_one_or_none()
    if wf is None or not wf.is_active:
        raise NotFoundError(resource="WorkflowType", resource_id=code)
    return wf


def initial_status(workflow_type_id: str) -> WorkflowStatus:
    """The single status every new aggregate of this workflow starts in."""
    rows = db.session.execute(
        select(WorkflowStatus).where(
            WorkflowStatus.workflow_type_id == workflow_type_id,
            WorkflowStatus.is_initial.is_(True),
        )
    ).scalars().all()
    if len(rows) != 1:
        raise ValidationError(
            f"Workflow {workflow_type_id} must have exactly one initial status, found {len(rows)}",
        )
    return rows[0]


def status_by_code(workflow_type_id: str, code: str) -> WorkflowStatus | None:
    return db.session.execute(
        select(WorkflowStatus).where(
            WorkflowStatus.workflow_type_id == workflow_type_id,
            WorkflowStatus.code == code,
        )
    ).scalar_one_or_none()


def next_transition(workflow_type_id: str, from_status_id: str) -> WorkflowTransition | None:
    """The one edge leaving ``from_status_id``, or None for a dead end."""
    return db.session.execute(
        select(WorkflowTransition).where(
            WorkflowTransition.workflow_type_id == workflow_type_id,
            WorkflowTransition.from_status_id == from_status_id,
        )
    ).scalar_one_or_none()


# ── Builders ─────────────────────────────────────────────────────────────────


def create_workflow(
    code: str,
    name: str,
    aggregate_type: str,
    statuses: list[str],
    *,
    edges: list[tuple[str, str]] | None = None,
    terminal: list[str] | None = None,
) -> WorkflowType:
    """Create a workflow type. Caller commits.

    Args:
        statuses: Ordered status codes; the first one is the initial status.
        edges: (from, to) pairs. Defaults to a linear chain through ``statuses``.
        terminal: Codes flagged terminal. Defaults to the last status.

    Rules:
        - exactly one initial status (the first)
        - at most one outgoing edge per status
        - terminal statuses have no outgoing edge
    """
    if aggregate_type not in AGGREGATE_TYPES:
        raise ValidationError(f"aggregate_type must be one of {sorted(AGGREGATE_TYPES)}")
    if not statuses:
        raise ValidationError("A workflow needs at least one status")
    if len(set(statuses)) != len(statuses):
        raise ValidationError("Status codes must be unique within a workflow")
    if db.session.execute(
        select(WorkflowType.id).where(WorkflowType.code == code)
    ).first():
        raise ConflictError(resource="WorkflowType", field="code", value=code)

    if edges is None:
        edges = list(zip(statuses, statuses[1:]))
    if terminal is None:
        terminal = [statuses[-1]]

    sources = [src for src, _ in edges]
    if len(set(sources)) != len(sources):
        raise ValidationError("Each status may have at most one outgoing transition")
    unknown = {code_ for edge in edges for code_ in edge} - set(statuses)
    if unknown:
        raise ValidationError(f"Transitions reference unknown statuses: {sorted(unknown)}")
    if set(sources) & set(terminal):
        raise ValidationError("Terminal statuses cannot have outgoing transitions")

    wf = WorkflowType(code=code, name=name, aggregate_type=aggregate_type, is_active=True)
    db.session.add(wf)
    db.session.flush()

    by_code = {}
    for index, status_code in enumerate(statuses):
        status = WorkflowStatus(
            workflow_type_id=wf.id,
            code=status_code,
            is_initial=index == 0,
            is_terminal=status_code in terminal,
            sort_order=index,
        )
        db.session.add(status)
        by_code[status_code] = status
    db.session.flush()

    for src, dst in edges:
        db.session.add(WorkflowTransition(
            workflow_type_id=wf.id,
            from_status_id=by_code[src].id,
            to_status_id=by_code[dst].id,
        ))
    db.session.flush()
    logger.info("Workflow %s created with %d statuses", code, len(statuses),
                extra={"workflow_type": code})
    return wf


def _get_or_create(code, name, aggregate_type, statuses, **kwargs) -> tuple[WorkflowType, bool]:
    existing = db.session.execute(
        select(WorkflowType).where(WorkflowType.code == code)
    ).scalar_one_or_none()
    if existing is not None:
        return existing, False
    return create_workflow(code, name, aggregate_type, statuses, **kwargs), True


def seed_default_workflows() -> dict[str, WorkflowType]:
    """Create the default workflows that don't exist yet and commit.

    Returns a map of workflow code → WorkflowType.
    """
    cfg = current_app.config
    billable = cfg["BILLING_BILLABLE_STATUS"]
    billed = cfg["BILLING_BILLED_STATUS"]
    group_billed = cfg["BILLING_GROUP_BILLED_STATUS"]

    created = 0
    result = {}
    for code, name, aggregate_type, statuses, kwargs in (
        (
            ORDER_WORKFLOW, "Order", AGGREGATE_ORDER,
            ["IN_PRODUCTION", billable, billed, group_billed],
            {"edges": [("IN_PRODUCTION", billable)], "terminal": [billed, group_billed]},
        ),
        (
            ORDER_PROCESS_WORKFLOW, "Order process", AGGREGATE_ORDER_PROCESS,
            ["CONFIGURE", "IN_PRODUCTION", "COMPLETE"], {},
        ),
        (
            RUN_CONFIG_WORKFLOW, "Run configuration", AGGREGATE_PROCESS_RUN,
            ["PENDING", "CONFIGURED"], {},
        ),
        (
            RUN_LIFECYCLE_WORKFLOW, "Run lifecycle", AGGREGATE_PROCESS_RUN,
            ["PENDING", "IN_PROGRESS", "DONE"], {},
        ),
    ):
        wf, was_created = _get_or_create(code, name, aggregate_type, statuses, **kwargs)
        created += int(was_created)
        result[code] = wf

    db.session.commit()
    if created:
        logger.info("Seeded %d default workflows", created)
    return result

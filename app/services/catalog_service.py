"""
Run-template catalog service.

Creates the processes and run templates orders are placed against.

Rules:
  - A run template's billing formula may only reference the formula keys of
    its own fields (checked at creation, never at billing time only).
  - A template either names an existing lifecycle workflow or supplies its
    lifecycle as an ordered list of stage names, which becomes a linear
    ProcessRun workflow ``LIFECYCLE_<TEMPLATE>``.
  - The config workflow defaults to RUN_CONFIG.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.catalog import Process, ProcessRunDefinition, RunTemplate
from app.models.workflow import AGGREGATE_PROCESS_RUN
from app.services import formula_engine, run_fields
from app.services.workflow_definitions import (
    RUN_CONFIG_WORKFLOW,
    RUN_LIFECYCLE_WORKFLOW,
    create_workflow,
    get_workflow_type,
    get_workflow_type_by_code,
)

logger = logging.getLogger(__name__)


def _run_workflow(workflow_type_id: str | None, default_code: str):
    wf = get_workflow_type(workflow_type_id) if workflow_type_id else get_workflow_type_by_code(default_code)
    if wf.aggregate_type != AGGREGATE_PROCESS_RUN:
        raise ValidationError(f"Workflow {wf.code} does not apply to process runs")
    return wf


def create_run_template(
    name: str,
    fields: list[dict],
    billing_formula: str | None = None,
    *,
    config_workflow_type_id: str | None = None,
    lifecycle_workflow_type_id: str | None = None,
    lifecycle_stages: list[str] | None = None,
) -> RunTemplate:
    """Create a run template and commit."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    if db.session.execute(select(RunTemplate.id).where(RunTemplate.name == name)).first():
        raise ConflictError(resource="RunTemplate", field="name", value=name)

    schema = run_fields.normalize_schema(fields or [])
    if billing_formula:
        allowed = {f["formula_key"] for f in schema if f["type"] == "number"}
        formula_engine.validate_formula(billing_formula, allowed=allowed)

    config_wf = _run_workflow(config_workflow_type_id, RUN_CONFIG_WORKFLOW)
    if lifecycle_stages:
        stages = [s.strip().upper().replace(" ", "_") for s in lifecycle_stages if s and s.strip()]
        slug = re.sub(r"[^A-Z0-9]+", "_", name.upper()).strip("_")
        lifecycle_wf = create_workflow(
            f"LIFECYCLE_{slug}", f"{name} lifecycle", AGGREGATE_PROCESS_RUN, stages,
        )
    else:
        lifecycle_wf = _run_workflow(lifecycle_workflow_type_id, RUN_LIFECYCLE_WORKFLOW)

    template = RunTemplate(
        name=name,
        fields=schema,
        billing_formula=billing_formula,
        config_workflow_type_id=config_wf.id,
        lifecycle_workflow_type_id=lifecycle_wf.id,
    )
    db.session.add(template)
    db.session.commit()
    logger.info("RunTemplate %s created (formula=%s)", name, billing_formula)
    return template


def create_process(name: str, run_definitions: list[dict]) -> Process:
    """Create a process with its run definitions and commit.

    Args:
        run_definitions: [{"run_template_id", "display_name"?}, ...] in run order.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    if not run_definitions:
        raise ValidationError("A process needs at least one run definition")
    if db.session.execute(select(Process.id).where(Process.name == name)).first():
        raise ConflictError(resource="Process", field="name", value=name)

    process = Process(name=name, is_enabled=True)
    db.session.add(process)
    db.session.flush()
    for index, definition in enumerate(run_definitions):
        template = db.session.get(RunTemplate, definition.get("run_template_id"))
        if template is None:
            raise NotFoundError(resource="RunTemplate", resource_id=definition.get("run_template_id"))
        db.session.add(ProcessRunDefinition(
            process_id=process.id,
            run_template_id=template.id,
            display_name=definition.get("display_name") or template.name,
            sort_order=index,
        ))
    db.session.commit()
    logger.info("Process %s created with %d run definitions", name, len(run_definitions))
    return process


def set_process_enabled(process_id: str, enabled: bool) -> Process:
    process = db.session.get(Process, process_id)
    if process is None:
        raise NotFoundError(resource="Process", resource_id=process_id)
    process.is_enabled = enabled
    db.session.commit()
    return process

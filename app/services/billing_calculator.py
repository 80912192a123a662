"""
Billing Calculation Engine

Turns run field values plus operator-supplied inputs into monetary amounts.

For each run:
    static inputs   = the run's numeric field values, keyed by formula key
    dynamic inputs  = operator values for that run (override static ones)
    amount          = evaluate(run_template.billing_formula, resolved variables)

Amounts are Decimal, 4 dp for storage; totals are the exact sum of the
4-dp line items. Nothing here writes to the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select

from app.core.exceptions import FormulaError, NotFoundError, ValidationError
from app.models import db
from app.models.order import OrderProcess, ProcessRun
from app.services import formula_engine, run_fields

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class RunCalculation:
    run_id: str
    order_id: str
    display_name: str
    formula: str
    variables: dict[str, Decimal]
    amount: Decimal

    def line_item(self) -> dict:
        return {
            "run_id": self.run_id,
            "order_id": self.order_id,
            "display_name": self.display_name,
            "formula": self.formula,
            "amount": f"{self.amount:.4f}",
        }


@dataclass
class Calculation:
    total: Decimal = ZERO
    runs: list[RunCalculation] = field(default_factory=list)
    formulas: set[str] = field(default_factory=set)

    @property
    def inputs(self) -> dict[str, dict[str, str]]:
        """run_id → {variable: decimal string}, the reproducible input set."""
        return {r.run_id: {k: str(v) for k, v in r.variables.items()} for r in self.runs}

    @property
    def line_items(self) -> list[dict]:
        return [r.line_item() for r in self.runs]

    @property
    def checksum(self) -> str | None:
        if not self.formulas:
            return None
        return formula_engine.formula_checksum("\n".join(sorted(self.formulas)))


def calculate_run(run: ProcessRun, dynamic_inputs: dict | None = None) -> RunCalculation:
    """Evaluate one run's billing formula. Raises FormulaError when it cannot."""
    template = run.run_template
    formula = template.billing_formula
    if not formula:
        raise FormulaError(f"Run template {template.name!r} has no billing formula")

    schema = template.fields or []
    merged = run_fields.numeric_variables(schema, run.fields or {})
    # Field names ("New Rate") override the same value as its formula key
    aliases = {f["key"]: f["formula_key"] for f in schema}
    merged.update({aliases.get(k, k): v for k, v in (dynamic_inputs or {}).items()})

    variables = formula_engine.resolve_variables(formula, merged, schema)
    amount = formula_engine.evaluate(formula, variables)
    return RunCalculation(
        run_id=run.id,
        order_id=run.order_process.order_id,
        display_name=run.display_name,
        formula=formula,
        variables=variables,
        amount=amount,
    )


def runs_for_orders(order_ids: list[str]) -> list[ProcessRun]:
    if not order_ids:
        return []
    return list(db.session.execute(
        select(ProcessRun)
        .join(OrderProcess, ProcessRun.order_process_id == OrderProcess.id)
        .where(OrderProcess.order_id.in_(order_ids))
        .order_by(OrderProcess.order_id, OrderProcess.created_at, ProcessRun.run_number)
    ).scalars())


def calculate_for_orders(
    order_ids: list[str],
    per_run_inputs: dict[str, dict] | None = None,
) -> Calculation:
    """Calculate every run named in ``per_run_inputs``.

    With no ``per_run_inputs`` every run whose template carries a billing
    formula is calculated from its stored field values.

    Raises:
        ValidationError: a named run does not belong to these orders.
        FormulaError: a formula is malformed or a variable cannot be resolved.
    """
    runs = runs_for_orders(order_ids)
    by_id = {r.id: r for r in runs}

    if per_run_inputs:
        unknown = sorted(set(per_run_inputs) - set(by_id))
        if unknown:
            raise ValidationError("Runs do not belong to this billing context",
                                  details={"run_ids": unknown})
        selected = [r for r in runs if r.id in per_run_inputs]
    else:
        per_run_inputs = {}
        selected = [r for r in runs if r.run_template.billing_formula]

    calc = Calculation()
    for run in selected:
        inputs = per_run_inputs.get(run.id) or {}
        if not isinstance(inputs, dict):
            raise ValidationError(f"Inputs for run {run.id} must be an object")
        result = calculate_run(run, inputs)
        calc.runs.append(result)
        calc.formulas.add(result.formula)
        calc.total += result.amount

    calc.total = formula_engine.quantize_storage(calc.total)
    logger.debug("Calculated %d runs for orders %s: %s", len(calc.runs), order_ids, calc.total)
    return calc


def preview_run(run_id: str, inputs: dict | None = None) -> dict:
    """Calculate a single run without persisting anything."""
    run = db.session.get(ProcessRun, run_id)
    if run is None:
        raise NotFoundError(resource="ProcessRun", resource_id=run_id)
    result = calculate_run(run, inputs or {})
    return {
        **result.line_item(),
        "variables": {k: str(v) for k, v in result.variables.items()},
        "presented_amount": str(formula_engine.quantize_presented(result.amount)),
    }

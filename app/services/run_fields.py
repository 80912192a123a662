"""
Run field schema validation.

A RunTemplate declares typed fields; a ProcessRun's ``fields`` bag is
validated against that schema whenever values are written:

    string   → str
    number   → int / float / Decimal / numeric string, stored as JSON number
               (or a decimal string when it cannot be represented exactly)
    boolean  → bool
    date     → ISO-8601 date string (YYYY-MM-DD)

Unknown keys are rejected. ``required`` is enforced only when
``require_complete`` is set (the values that complete run configuration).
``min`` / ``max`` apply to numbers.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation

from app.core.exceptions import ValidationError
from app.models.catalog import FIELD_TYPES
from app.services.formula_engine import normalize_key


def normalize_schema(fields: list[dict]) -> list[dict]:
    """Validate a template field schema and fill in ``formula_key``.

    Rules:
        - every field has a non-empty ``key`` and a known ``type``
        - keys are unique; formula keys are unique after normalization
    """
    if not isinstance(fields, list):
        raise ValidationError("fields must be a list")
    errors: dict[str, str] = {}
    seen_keys: set[str] = set()
    formula_keys: dict[str, str] = {}
    normalized = []
    for index, raw in enumerate(fields):
        if not isinstance(raw, dict):
            errors[f"fields[{index}]"] = "must be an object"
            continue
        key = str(raw.get("key") or "").strip()
        ftype = raw.get("type")
        if not key:
            errors[f"fields[{index}].key"] = "is required"
            continue
        if ftype not in FIELD_TYPES:
            errors[key] = f"type must be one of {sorted(FIELD_TYPES)}"
            continue
        if key in seen_keys:
            errors[key] = "duplicate key"
            continue
        seen_keys.add(key)

        formula_key = normalize_key(raw.get("formula_key") or key)
        if not formula_key:
            errors[key] = "formula key is empty after normalization"
            continue
        if formula_key in formula_keys:
            errors[key] = f"formula key {formula_key!r} collides with field {formula_keys[formula_key]!r}"
            continue
        formula_keys[formula_key] = key

        normalized.append({
            "key": key,
            "type": ftype,
            "required": bool(raw.get("required", False)),
            "min": raw.get("min"),
            "max": raw.get("max"),
            "formula_key": formula_key,
        })
    if errors:
        raise ValidationError("Invalid run template fields", details=errors)
    return normalized


def _coerce_number(key: str, value, field: dict):
    if isinstance(value, bool):
        raise ValueError("must be a number")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError("must be a number")
    if not number.is_finite():
        raise ValueError("must be a finite number")
    if field.get("min") is not None and number < Decimal(str(field["min"])):
        raise ValueError(f"must be >= {field['min']}")
    if field.get("max") is not None and number > Decimal(str(field["max"])):
        raise ValueError(f"must be <= {field['max']}")
    if isinstance(value, (int, float)):
        return value
    # Keep exactness for strings / Decimals: int when integral, else decimal string
    if number == number.to_integral_value():
        return int(number)
    return str(number)


def _coerce(key: str, value, field: dict):
    ftype = field["type"]
    if ftype == "number":
        return _coerce_number(key, value, field)
    if ftype == "boolean":
        if not isinstance(value, bool):
            raise ValueError("must be true or false")
        return value
    if ftype == "date":
        if not isinstance(value, str):
            raise ValueError("must be an ISO date string")
        try:
            return date.fromisoformat(value).isoformat()
        except ValueError:
            raise ValueError("must be an ISO date (YYYY-MM-DD)")
    if not isinstance(value, str):
        raise ValueError("must be a string")
    return value


def validate_values(
    schema: list[dict],
    values: dict,
    *,
    existing: dict | None = None,
    require_complete: bool = False,
) -> dict:
    """Validate ``values`` against ``schema`` and merge them over ``existing``.

    A value of None removes the key. Returns the merged, coerced field bag.
    """
    if not isinstance(values, dict):
        raise ValidationError("fields must be an object")
    by_key = {f["key"]: f for f in schema}
    merged = dict(existing or {})
    errors: dict[str, str] = {}

    for key, value in values.items():
        field = by_key.get(key)
        if field is None:
            errors[key] = "unknown field"
            continue
        if value is None:
            merged.pop(key, None)
            continue
        try:
            merged[key] = _coerce(key, value, field)
        except ValueError as exc:
            errors[key] = str(exc)

    if require_complete:
        for field in schema:
            if field.get("required") and merged.get(field["key"]) in (None, ""):
                errors.setdefault(field["key"], "is required")

    if errors:
        raise ValidationError("Invalid run field values", details=errors)
    return merged


def numeric_variables(schema: list[dict], values: dict) -> dict[str, object]:
    """Numeric field values keyed by formula key (the run's static inputs)."""
    by_key = {f["key"]: f for f in schema}
    result: dict[str, object] = {}
    for key, value in (values or {}).items():
        field = by_key.get(key)
        if field is not None and field["type"] != "number":
            continue
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (int, float, Decimal)) or (field is not None and isinstance(value, str)):
            formula_key = field["formula_key"] if field is not None else normalize_key(key)
            result[formula_key] = value
    return result

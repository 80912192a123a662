"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Order not found")
    return api_error(E.VALIDATION_REQUIRED, "aggregate_id is required")
    return api_error(E.INVALID_TRANSITION, str(exc), details={"current_status": "NEW"})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for every application error
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Business rule – HTTP 422
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"
    FORMULA = "ERR_FORMULA"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"
    UNKNOWN_AGGREGATE = "ERR_UNKNOWN_AGGREGATE"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    STALE_SNAPSHOT = "ERR_STALE_SNAPSHOT_VERSION"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.FORMULA: 422,
    E.NOT_FOUND: 404,
    E.UNKNOWN_AGGREGATE: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.INVALID_TRANSITION: 409,
    E.STALE_SNAPSHOT: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, offending variable, ...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_domain_error_handlers(bp) -> None:
    """Attach the shared exception → JSON handlers to a blueprint."""
    from app.core.exceptions import (
        ConflictError,
        FormulaError,
        InvalidTransition,
        NotFoundError,
        StaleSnapshotVersion,
        UnknownAggregate,
        ValidationError,
    )

    @bp.errorhandler(UnknownAggregate)
    def _handle_unknown_aggregate(error: UnknownAggregate):
        return api_error(E.UNKNOWN_AGGREGATE, str(error))

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(FormulaError)
    def _handle_formula(error: FormulaError):
        return api_error(E.FORMULA, str(error), details=error.details)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @bp.errorhandler(InvalidTransition)
    def _handle_invalid_transition(error: InvalidTransition):
        return api_error(
            E.INVALID_TRANSITION, str(error),
            details={"current_status": error.current_status, "reason": error.reason},
        )

    @bp.errorhandler(StaleSnapshotVersion)
    def _handle_stale_snapshot(error: StaleSnapshotVersion):
        return api_error(E.STALE_SNAPSHOT, str(error), details={"version": error.version})

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Order", resource_id=order_id)
    raise ValidationError("quantity is required", details={"quantity": "missing"})
    raise InvalidTransition("ProcessRun", run_id, current_status="PRINTED")

Hierarchy:
    NotFoundError (404)
        UnknownAggregate
    ValidationError (422)
        FormulaError
    ConflictError (409)
        InvalidTransition
        StaleSnapshotVersion
        DuplicateSequenceConflict   retried inside fiscal_sequence, never surfaced
    OutboxHandlerFailure            recorded on the outbox row, never surfaced
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Order", "BillingContext").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint): the data
    was well-formed but violated a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation collides with existing state.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field that conflicts.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ── Workflow ─────────────────────────────────────────────────────────────────


class UnknownAggregate(NotFoundError):
    """The aggregate id does not resolve to an Order, OrderProcess or ProcessRun."""

    def __init__(self, aggregate_type: str, aggregate_id: str) -> None:
        self.aggregate_type = aggregate_type
        self.aggregate_id = aggregate_id
        super().__init__(resource=aggregate_type, resource_id=aggregate_id)


class InvalidTransition(ConflictError):
    """No transition edge leaves the aggregate's current status.

    Also raised when the status changed between read and write (stale read)
    or when the workflow type does not drive the aggregate.
    """

    def __init__(
        self,
        aggregate_type: str,
        aggregate_id: str,
        current_status: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.resource = aggregate_type
        self.field = "status_code"
        self.value = current_status
        self.aggregate_id = aggregate_id
        self.current_status = current_status
        self.reason = reason or f"no transition from status {current_status!r}"
        Exception.__init__(self, f"{aggregate_type} {aggregate_id}: {self.reason}")


# ── Billing ──────────────────────────────────────────────────────────────────


class FormulaError(ValidationError):
    """Malformed billing formula or a variable that cannot be resolved."""

    def __init__(self, message: str, formula: str | None = None, variable: str | None = None) -> None:
        self.formula = formula
        self.variable = variable
        details = {}
        if formula is not None:
            details["formula"] = formula
        if variable is not None:
            details["variable"] = variable
        super().__init__(message, details=details)


class StaleSnapshotVersion(ConflictError):
    """A concurrent writer created the same snapshot version first."""

    def __init__(self, billing_context_id: str, version: int) -> None:
        self.billing_context_id = billing_context_id
        self.version = version
        self.resource = "BillingSnapshot"
        self.field = "version"
        self.value = str(version)
        Exception.__init__(
            self,
            f"BillingSnapshot version {version} for context {billing_context_id} "
            "was written concurrently; retry the request",
        )


# ── Internal (never reach an HTTP caller) ───────────────────────────────────


class DuplicateSequenceConflict(ConflictError):
    def __init__(self, prefix: str, fiscal_year: str) -> None:
        super().__init__("FiscalSequence", "prefix/fiscal_year", f"{prefix}/{fiscal_year}")


class OutboxHandlerFailure(Exception):
    """Wraps a handler error (or timeout) for a single outbox event."""

    def __init__(self, event_id: int, event_type: str, cause: str) -> None:
        self.event_id = event_id
        self.event_type = event_type
        self.cause = cause
        super().__init__(f"outbox event {event_id} ({event_type}) failed: {cause}")

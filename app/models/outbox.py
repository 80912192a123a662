"""
Production Workflow & Billing
Transactional outbox model.

An OutboxEvent is written in the same transaction as the state change it
describes and later dispatched by ``app.services.outbox_service.drain``.

Lifecycle:
    pending (processed=false) → processed (processed=true)      handler succeeded
    pending → pending (attempts+1, next_attempt_at in future)   handler failed
    pending → parked  (parked=true)                             attempts exhausted

``processed`` only ever flips false → true. Parked events stay unprocessed
until an operator requeues them.
"""

import enum

from app.models import db, utcnow


class OutboxEventType(str, enum.Enum):
    """Closed set of event types the dispatcher knows about."""

    ORDER_CREATED = "ORDER_CREATED"
    ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED = "ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED"
    ORDER_LIFECYCLE_TRANSITION_REQUESTED = "ORDER_LIFECYCLE_TRANSITION_REQUESTED"
    BILLING_SNAPSHOT_REQUESTED = "BILLING_SNAPSHOT_REQUESTED"
    WORKFLOW_TRANSITION_APPLIED = "WORKFLOW_TRANSITION_APPLIED"

    # Deprecated: still recognised so old rows drain, but no longer acted on
    PROCESS_RUN_CONFIG_TRANSITION_REQUESTED = "PROCESS_RUN_CONFIG_TRANSITION_REQUESTED"
    PROCESS_RUN_LIFECYCLE_TRANSITION_REQUESTED = "PROCESS_RUN_LIFECYCLE_TRANSITION_REQUESTED"
    STATUS_TRANSITION_REQUESTED = "STATUS_TRANSITION_REQUESTED"
    ORDER_PROCESS_STATUS_TRANSITION_REQUESTED = "ORDER_PROCESS_STATUS_TRANSITION_REQUESTED"

    @property
    def is_deprecated(self):
        return self in DEPRECATED_EVENT_TYPES

    @classmethod
    def parse(cls, value):
        """Return the enum member for ``value`` or None when it is not a known type."""
        try:
            return cls(value)
        except ValueError:
            return None


DEPRECATED_EVENT_TYPES = frozenset({
    OutboxEventType.PROCESS_RUN_CONFIG_TRANSITION_REQUESTED,
    OutboxEventType.PROCESS_RUN_LIFECYCLE_TRANSITION_REQUESTED,
    OutboxEventType.STATUS_TRANSITION_REQUESTED,
    OutboxEventType.ORDER_PROCESS_STATUS_TRANSITION_REQUESTED,
})

# Reasons carried by ORDER_PROCESS_LIFECYCLE_TRANSITION_REQUESTED
REASON_ALL_RUNS_COMPLETED = "ALL_RUNS_COMPLETED"
REASON_CONFIG_COMPLETE = "CONFIG_COMPLETE"


class OutboxEvent(db.Model):
    __tablename__ = "outbox_events"
    __table_args__ = (
        db.Index("idx_outbox_pending", "processed", "parked", "created_at"),
        db.Index("idx_outbox_aggregate", "aggregate_id", "processed"),
    )

    # Integer id breaks created_at ties so dispatch order equals enqueue order
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    aggregate_type = db.Column(db.String(30), nullable=False)
    aggregate_id = db.Column(db.String(36), nullable=False)
    event_type = db.Column(db.String(80), nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    processed = db.Column(db.Boolean, nullable=False, default=False)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Retry bookkeeping
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    next_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    parked = db.Column(db.Boolean, nullable=False, default=False)
    parked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "event_type": self.event_type,
            "payload": self.payload or {},
            "processed": self.processed,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "parked": self.parked,
            "parked_at": self.parked_at.isoformat() if self.parked_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<OutboxEvent {self.id} {self.event_type} processed={self.processed}>"

"""
Production Workflow & Billing
Billing context and snapshot models.

Models:
    - BillingContext:       an order (ORDER) or a named group of orders (GROUP)
    - BillingContextOrder:  membership link, context ──N:M──▶ order
    - BillingSnapshot:      immutable, versioned calculation result

Snapshot rules:
    - (billing_context_id, version) is unique; versions start at 1 and only grow
    - at most one row per context has is_latest = true (partial unique index)
    - rows are never updated except to clear is_latest on the previous latest
"""

from decimal import ROUND_HALF_UP, Decimal

from app.models import db, new_uuid, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

CONTEXT_ORDER = "ORDER"
CONTEXT_GROUP = "GROUP"
CONTEXT_TYPES = {CONTEXT_ORDER, CONTEXT_GROUP}

INTENT_DRAFT = "DRAFT"
INTENT_FINAL = "FINAL"
SNAPSHOT_INTENTS = {INTENT_DRAFT, INTENT_FINAL}

CALC_INITIAL = "INITIAL"
CALC_RECALCULATED = "RECALCULATED"

PRESENTED_QUANTUM = Decimal("0.01")


class BillingContext(db.Model):
    __tablename__ = "billing_contexts"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    type = db.Column(db.String(10), nullable=False, comment="ORDER | GROUP")
    name = db.Column(db.String(100), nullable=True)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    members = db.relationship(
        "BillingContextOrder", backref="billing_context", lazy="select",
        cascade="all, delete-orphan",
    )
    snapshots = db.relationship(
        "BillingSnapshot", backref="billing_context", lazy="dynamic",
        order_by="BillingSnapshot.version",
    )

    @property
    def order_ids(self):
        return [m.order_id for m in self.members]

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "order_ids": self.order_ids,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<BillingContext {self.type} {self.name or self.id}>"


class BillingContextOrder(db.Model):
    __tablename__ = "billing_context_orders"
    __table_args__ = (
        db.UniqueConstraint("billing_context_id", "order_id", name="uq_bco_context_order"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    billing_context_id = db.Column(
        db.String(36), db.ForeignKey("billing_contexts.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    def __repr__(self):
        return f"<BillingContextOrder {self.billing_context_id}:{self.order_id}>"


class BillingSnapshot(db.Model):
    __tablename__ = "billing_snapshots"
    __table_args__ = (
        db.UniqueConstraint("billing_context_id", "version", name="uq_bs_context_version"),
        db.Index(
            "uq_bs_one_latest", "billing_context_id", unique=True,
            postgresql_where=db.text("is_latest"),
            sqlite_where=db.text("is_latest = 1"),
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    billing_context_id = db.Column(
        db.String(36), db.ForeignKey("billing_contexts.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    version = db.Column(db.Integer, nullable=False)
    intent = db.Column(db.String(10), nullable=False, comment="DRAFT | FINAL")
    calculation_type = db.Column(db.String(20), nullable=False, default=CALC_INITIAL,
                                 comment="INITIAL | RECALCULATED")
    currency = db.Column(db.String(3), nullable=False)
    result = db.Column(db.Numeric(18, 4, asdecimal=True), nullable=False)
    inputs = db.Column(db.JSON, nullable=False, default=dict,
                       comment="run_id → {variable: decimal string}")
    line_items = db.Column(db.JSON, nullable=False, default=list)
    formula_checksum = db.Column(db.String(64), nullable=True)
    reason = db.Column(db.String(200), nullable=True)
    created_by = db.Column(db.String(100), nullable=True)
    is_latest = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        result = Decimal(self.result) if self.result is not None else Decimal("0")
        return {
            "id": self.id,
            "billing_context_id": self.billing_context_id,
            "version": self.version,
            "intent": self.intent,
            "calculation_type": self.calculation_type,
            "currency": self.currency,
            "result": f"{result:.4f}",
            "total": str(result.quantize(PRESENTED_QUANTUM, rounding=ROUND_HALF_UP)),
            "inputs": self.inputs or {},
            "line_items": self.line_items or [],
            "formula_checksum": self.formula_checksum,
            "reason": self.reason,
            "created_by": self.created_by,
            "is_latest": self.is_latest,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<BillingSnapshot ctx={self.billing_context_id} v{self.version} {self.intent}>"

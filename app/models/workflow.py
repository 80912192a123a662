"""
Production Workflow & Billing
Workflow definition models.

Models:
    - WorkflowType:        named state machine attached to one aggregate kind
    - WorkflowStatus:      node of a workflow (exactly one initial per type)
    - WorkflowTransition:  directed edge from one status to the next
    - WorkflowAuditLog:    one row per applied transition

Architecture:
    WorkflowType ──1:N──▶ WorkflowStatus
    WorkflowType ──1:N──▶ WorkflowTransition (from_status → to_status)

A workflow is deterministic: each status has at most one outgoing edge, so a
trigger always resolves to a single next status. Terminal statuses have no
outgoing edge; ``is_terminal`` marks the statuses that count as "done" for
counter propagation.
"""

from app.models import db, new_uuid, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

AGGREGATE_ORDER = "Order"
AGGREGATE_ORDER_PROCESS = "OrderProcess"
AGGREGATE_PROCESS_RUN = "ProcessRun"

AGGREGATE_TYPES = {AGGREGATE_ORDER, AGGREGATE_ORDER_PROCESS, AGGREGATE_PROCESS_RUN}


class WorkflowType(db.Model):
    """A named state machine (e.g. ORDER, ORDER_PROCESS, RUN_CONFIG)."""

    __tablename__ = "workflow_types"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    code = db.Column(db.String(60), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    aggregate_type = db.Column(
        db.String(20), nullable=False,
        comment="Order | OrderProcess | ProcessRun",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    statuses = db.relationship(
        "WorkflowStatus", backref="workflow_type", lazy="select",
        cascade="all, delete-orphan", order_by="WorkflowStatus.sort_order",
    )
    transitions = db.relationship(
        "WorkflowTransition", backref="workflow_type", lazy="select",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_statuses=False):
        result = {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "aggregate_type": self.aggregate_type,
            "is_active": self.is_active,
        }
        if include_statuses:
            result["statuses"] = [s.to_dict() for s in self.statuses]
            result["transitions"] = [t.to_dict() for t in self.transitions]
        return result

    def __repr__(self):
        return f"<WorkflowType {self.code} ({self.aggregate_type})>"


class WorkflowStatus(db.Model):
    """A node of a workflow type."""

    __tablename__ = "workflow_statuses"
    __table_args__ = (
        db.UniqueConstraint("workflow_type_id", "code", name="uq_wfs_type_code"),
        # At most one initial status per workflow type
        db.Index(
            "uq_wfs_one_initial", "workflow_type_id", unique=True,
            postgresql_where=db.text("is_initial"),
            sqlite_where=db.text("is_initial = 1"),
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    workflow_type_id = db.Column(
        db.String(36), db.ForeignKey("workflow_types.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    code = db.Column(db.String(60), nullable=False)
    is_initial = db.Column(db.Boolean, nullable=False, default=False)
    is_terminal = db.Column(db.Boolean, nullable=False, default=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "is_initial": self.is_initial,
            "is_terminal": self.is_terminal,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<WorkflowStatus {self.code} initial={self.is_initial} terminal={self.is_terminal}>"


class WorkflowTransition(db.Model):
    """Directed edge ``from_status → to_status`` inside one workflow type."""

    __tablename__ = "workflow_transitions"
    __table_args__ = (
        db.UniqueConstraint("workflow_type_id", "from_status_id", name="uq_wft_type_from"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    workflow_type_id = db.Column(
        db.String(36), db.ForeignKey("workflow_types.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    from_status_id = db.Column(
        db.String(36), db.ForeignKey("workflow_statuses.id", ondelete="CASCADE"),
        nullable=False,
    )
    to_status_id = db.Column(
        db.String(36), db.ForeignKey("workflow_statuses.id", ondelete="CASCADE"),
        nullable=False,
    )

    from_status = db.relationship("WorkflowStatus", foreign_keys=[from_status_id])
    to_status = db.relationship("WorkflowStatus", foreign_keys=[to_status_id])

    def to_dict(self):
        return {
            "id": self.id,
            "from_status": self.from_status.code if self.from_status else None,
            "to_status": self.to_status.code if self.to_status else None,
        }

    def __repr__(self):
        return f"<WorkflowTransition {self.from_status_id} → {self.to_status_id}>"


class WorkflowAuditLog(db.Model):
    """Append-only record of every applied transition."""

    __tablename__ = "workflow_audit_logs"
    __table_args__ = (
        db.Index("idx_wfal_aggregate", "aggregate_type", "aggregate_id"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    workflow_type_id = db.Column(
        db.String(36), db.ForeignKey("workflow_types.id", ondelete="SET NULL"),
        nullable=True,
    )
    aggregate_type = db.Column(db.String(20), nullable=False)
    aggregate_id = db.Column(db.String(36), nullable=False)
    from_status = db.Column(db.String(60), nullable=True)
    to_status = db.Column(db.String(60), nullable=False)
    trigger = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_type_id": self.workflow_type_id,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "trigger": self.trigger,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<WorkflowAuditLog {self.aggregate_type}:{self.aggregate_id} {self.from_status}→{self.to_status}>"

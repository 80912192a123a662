"""
Production Workflow & Billing
Order aggregate models.

Models:
    - Order:         customer order, driven by the ORDER workflow
    - OrderProcess:  one process requested on an order, driven by ORDER_PROCESS
    - ProcessRun:    one physical run; carries two independent statuses

Architecture:
    Order ──1:N──▶ OrderProcess ──1:N──▶ ProcessRun

Counters:
    OrderProcess.total_runs = len(process run definitions) × batch count,
    fixed at creation. lifecycle_completed_runs / config_completed_runs and
    Order.completed_processes are only ever changed with atomic SQL
    increments (see app.services.workflow_engine).

ProcessRun statuses:
    status_code            → config workflow    (config_workflow_type_id)
    life_cycle_status_code → lifecycle workflow (lifecycle_workflow_type_id)
"""

from app.models import db, new_uuid, utcnow


class Order(db.Model):
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint(
            "completed_processes <= total_processes", name="ck_order_completed_le_total",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    code = db.Column(db.String(40), unique=True, nullable=False,
                     comment="Fiscal code, e.g. ORD12/25-26")
    customer_ref = db.Column(db.String(100), nullable=True)
    job_code = db.Column(db.String(100), nullable=True)
    quantity = db.Column(db.Numeric(18, 4), nullable=True)
    status_code = db.Column(db.String(60), nullable=False)
    workflow_type_id = db.Column(
        db.String(36), db.ForeignKey("workflow_types.id"), nullable=False,
    )
    total_processes = db.Column(db.Integer, nullable=False, default=0)
    completed_processes = db.Column(db.Integer, nullable=False, default=0)
    lifecycle_completion_sent = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    processes = db.relationship(
        "OrderProcess", backref="order", lazy="select",
        cascade="all, delete-orphan", order_by="OrderProcess.created_at",
    )

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "code": self.code,
            "customer_ref": self.customer_ref,
            "job_code": self.job_code,
            "quantity": f"{self.quantity:.4f}" if self.quantity is not None else None,
            "status_code": self.status_code,
            "workflow_type_id": self.workflow_type_id,
            "total_processes": self.total_processes,
            "completed_processes": self.completed_processes,
            "lifecycle_completion_sent": self.lifecycle_completion_sent,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_children:
            result["processes"] = [p.to_dict(include_children=True) for p in self.processes]
        return result

    def __repr__(self):
        return f"<Order {self.code} [{self.status_code}]>"


class OrderProcess(db.Model):
    __tablename__ = "order_processes"
    __table_args__ = (
        db.UniqueConstraint("order_id", "process_id", name="uq_order_process"),
        db.CheckConstraint(
            "lifecycle_completed_runs <= total_runs", name="ck_op_lifecycle_le_total",
        ),
        db.CheckConstraint(
            "config_completed_runs <= total_runs", name="ck_op_config_le_total",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    process_id = db.Column(db.String(36), db.ForeignKey("processes.id"), nullable=False)
    status_code = db.Column(db.String(60), nullable=False)
    workflow_type_id = db.Column(
        db.String(36), db.ForeignKey("workflow_types.id"), nullable=False,
    )
    total_runs = db.Column(db.Integer, nullable=False, default=0)
    config_completed_runs = db.Column(db.Integer, nullable=False, default=0)
    lifecycle_completed_runs = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    process = db.relationship("Process")
    runs = db.relationship(
        "ProcessRun", backref="order_process", lazy="select",
        cascade="all, delete-orphan", order_by="ProcessRun.run_number",
    )

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "order_id": self.order_id,
            "process_id": self.process_id,
            "process_name": self.process.name if self.process else None,
            "status_code": self.status_code,
            "workflow_type_id": self.workflow_type_id,
            "total_runs": self.total_runs,
            "config_completed_runs": self.config_completed_runs,
            "lifecycle_completed_runs": self.lifecycle_completed_runs,
        }
        if include_children:
            result["runs"] = [r.to_dict() for r in self.runs]
        return result

    def __repr__(self):
        return (f"<OrderProcess {self.id} [{self.status_code}] "
                f"{self.lifecycle_completed_runs}/{self.total_runs}>")


class ProcessRun(db.Model):
    __tablename__ = "process_runs"
    __table_args__ = (
        db.UniqueConstraint("order_process_id", "run_number", name="uq_run_number"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    order_process_id = db.Column(
        db.String(36), db.ForeignKey("order_processes.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    run_template_id = db.Column(db.String(36), db.ForeignKey("run_templates.id"), nullable=False)
    run_number = db.Column(db.Integer, nullable=False)
    display_name = db.Column(db.String(200), nullable=False)

    status_code = db.Column(db.String(60), nullable=False, comment="config workflow status")
    config_workflow_type_id = db.Column(
        db.String(36), db.ForeignKey("workflow_types.id"), nullable=False,
    )
    life_cycle_status_code = db.Column(db.String(60), nullable=False,
                                       comment="lifecycle workflow status")
    lifecycle_workflow_type_id = db.Column(
        db.String(36), db.ForeignKey("workflow_types.id"), nullable=False,
    )
    fields = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    run_template = db.relationship("RunTemplate")

    def to_dict(self):
        return {
            "id": self.id,
            "order_process_id": self.order_process_id,
            "run_template_id": self.run_template_id,
            "run_number": self.run_number,
            "display_name": self.display_name,
            "status_code": self.status_code,
            "config_workflow_type_id": self.config_workflow_type_id,
            "life_cycle_status_code": self.life_cycle_status_code,
            "lifecycle_workflow_type_id": self.lifecycle_workflow_type_id,
            "fields": self.fields or {},
        }

    def __repr__(self):
        return f"<ProcessRun {self.display_name} [{self.status_code}/{self.life_cycle_status_code}]>"

"""
Production Workflow & Billing
Run-template catalog models.

Models:
    - Process:               a production process offered to customers (e.g. "Dyeing")
    - RunTemplate:           typed field schema + billing formula + per-run workflows
    - ProcessRunDefinition:  a process template: which run templates a process expands into

Architecture:
    Process ──1:N──▶ ProcessRunDefinition ──N:1──▶ RunTemplate
    RunTemplate ──N:1──▶ WorkflowType (config)     drives ProcessRun.status_code
    RunTemplate ──N:1──▶ WorkflowType (lifecycle)  drives ProcessRun.life_cycle_status_code

Field schema (``RunTemplate.fields``) is a list of dicts::

    {"key": "New Rate", "type": "number", "required": true,
     "min": 0, "max": null, "formula_key": "new_rate"}
"""

from app.models import db, new_uuid, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

FIELD_TYPES = {"string", "number", "boolean", "date"}


class Process(db.Model):
    __tablename__ = "processes"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    name = db.Column(db.String(200), unique=True, nullable=False)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    run_definitions = db.relationship(
        "ProcessRunDefinition", backref="process", lazy="select",
        cascade="all, delete-orphan", order_by="ProcessRunDefinition.sort_order",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "is_enabled": self.is_enabled,
            "run_definitions": [d.to_dict() for d in self.run_definitions],
        }

    def __repr__(self):
        return f"<Process {self.name}>"


class RunTemplate(db.Model):
    """Schema and billing formula shared by every run created from it."""

    __tablename__ = "run_templates"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    name = db.Column(db.String(200), unique=True, nullable=False)
    fields = db.Column(db.JSON, nullable=False, default=list)
    billing_formula = db.Column(db.Text, nullable=True,
                                comment="Arithmetic over formula keys, e.g. quantity * new_rate")
    config_workflow_type_id = db.Column(
        db.String(36), db.ForeignKey("workflow_types.id"), nullable=False,
    )
    lifecycle_workflow_type_id = db.Column(
        db.String(36), db.ForeignKey("workflow_types.id"), nullable=False,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    config_workflow_type = db.relationship("WorkflowType", foreign_keys=[config_workflow_type_id])
    lifecycle_workflow_type = db.relationship("WorkflowType", foreign_keys=[lifecycle_workflow_type_id])

    def field_by_key(self, key):
        for field in self.fields or []:
            if field.get("key") == key:
                return field
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "fields": self.fields or [],
            "billing_formula": self.billing_formula,
            "config_workflow_type_id": self.config_workflow_type_id,
            "lifecycle_workflow_type_id": self.lifecycle_workflow_type_id,
        }

    def __repr__(self):
        return f"<RunTemplate {self.name}>"


class ProcessRunDefinition(db.Model):
    """One run template inside a process; each order batch gets one run per definition."""

    __tablename__ = "process_run_definitions"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    process_id = db.Column(
        db.String(36), db.ForeignKey("processes.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    run_template_id = db.Column(
        db.String(36), db.ForeignKey("run_templates.id"), nullable=False,
    )
    display_name = db.Column(db.String(200), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    run_template = db.relationship("RunTemplate")

    def to_dict(self):
        return {
            "id": self.id,
            "process_id": self.process_id,
            "run_template_id": self.run_template_id,
            "display_name": self.display_name,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<ProcessRunDefinition {self.display_name}>"

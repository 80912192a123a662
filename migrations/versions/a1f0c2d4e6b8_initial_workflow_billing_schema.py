"""initial_workflow_billing_schema

Workflow definitions, order / process / run aggregates, transactional
outbox, billing contexts and snapshots, fiscal sequences, scheduled jobs.

Revision ID: a1f0c2d4e6b8
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1f0c2d4e6b8"
down_revision = None
branch_labels = None
depends_on = None


def _uuid(name, **kwargs):
    return sa.Column(name, sa.String(length=36), **kwargs)


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    # ── Workflow definitions ─────────────────────────────────────────────
    if "workflow_types" not in existing_tables:
        op.create_table(
            "workflow_types",
            _uuid("id", nullable=False),
            sa.Column("code", sa.String(length=60), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("aggregate_type", sa.String(length=20), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if "workflow_statuses" not in existing_tables:
        op.create_table(
            "workflow_statuses",
            _uuid("id", nullable=False),
            _uuid("workflow_type_id", nullable=False),
            sa.Column("code", sa.String(length=60), nullable=False),
            sa.Column("is_initial", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_terminal", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["workflow_type_id"], ["workflow_types.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workflow_type_id", "code", name="uq_wfs_type_code"),
        )
        op.create_index("ix_workflow_statuses_workflow_type_id", "workflow_statuses",
                        ["workflow_type_id"])
        op.create_index(
            "uq_wfs_one_initial", "workflow_statuses", ["workflow_type_id"], unique=True,
            postgresql_where=sa.text("is_initial"),
            sqlite_where=sa.text("is_initial = 1"),
        )

    if "workflow_transitions" not in existing_tables:
        op.create_table(
            "workflow_transitions",
            _uuid("id", nullable=False),
            _uuid("workflow_type_id", nullable=False),
            _uuid("from_status_id", nullable=False),
            _uuid("to_status_id", nullable=False),
            sa.ForeignKeyConstraint(["workflow_type_id"], ["workflow_types.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["from_status_id"], ["workflow_statuses.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["to_status_id"], ["workflow_statuses.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workflow_type_id", "from_status_id", name="uq_wft_type_from"),
        )
        op.create_index("ix_workflow_transitions_workflow_type_id", "workflow_transitions",
                        ["workflow_type_id"])

    if "workflow_audit_logs" not in existing_tables:
        op.create_table(
            "workflow_audit_logs",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            _uuid("workflow_type_id", nullable=True),
            sa.Column("aggregate_type", sa.String(length=20), nullable=False),
            _uuid("aggregate_id", nullable=False),
            sa.Column("from_status", sa.String(length=60), nullable=True),
            sa.Column("to_status", sa.String(length=60), nullable=False),
            sa.Column("trigger", sa.String(length=100), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["workflow_type_id"], ["workflow_types.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_wfal_aggregate", "workflow_audit_logs",
                        ["aggregate_type", "aggregate_id"])

    # ── Catalog ──────────────────────────────────────────────────────────
    if "processes" not in existing_tables:
        op.create_table(
            "processes",
            _uuid("id", nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    if "run_templates" not in existing_tables:
        op.create_table(
            "run_templates",
            _uuid("id", nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("fields", sa.JSON(), nullable=False),
            sa.Column("billing_formula", sa.Text(), nullable=True),
            _uuid("config_workflow_type_id", nullable=False),
            _uuid("lifecycle_workflow_type_id", nullable=False),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["config_workflow_type_id"], ["workflow_types.id"]),
            sa.ForeignKeyConstraint(["lifecycle_workflow_type_id"], ["workflow_types.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    if "process_run_definitions" not in existing_tables:
        op.create_table(
            "process_run_definitions",
            _uuid("id", nullable=False),
            _uuid("process_id", nullable=False),
            _uuid("run_template_id", nullable=False),
            sa.Column("display_name", sa.String(length=200), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["process_id"], ["processes.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["run_template_id"], ["run_templates.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_process_run_definitions_process_id", "process_run_definitions",
                        ["process_id"])

    # ── Aggregates ───────────────────────────────────────────────────────
    if "orders" not in existing_tables:
        op.create_table(
            "orders",
            _uuid("id", nullable=False),
            sa.Column("code", sa.String(length=40), nullable=False),
            sa.Column("customer_ref", sa.String(length=100), nullable=True),
            sa.Column("job_code", sa.String(length=100), nullable=True),
            sa.Column("quantity", sa.Numeric(18, 4), nullable=True),
            sa.Column("status_code", sa.String(length=60), nullable=False),
            _uuid("workflow_type_id", nullable=False),
            sa.Column("total_processes", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("completed_processes", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("lifecycle_completion_sent", sa.Boolean(), nullable=False,
                      server_default=sa.false()),
            _ts("created_at"),
            _ts("updated_at"),
            sa.CheckConstraint("completed_processes <= total_processes",
                               name="ck_order_completed_le_total"),
            sa.ForeignKeyConstraint(["workflow_type_id"], ["workflow_types.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if "order_processes" not in existing_tables:
        op.create_table(
            "order_processes",
            _uuid("id", nullable=False),
            _uuid("order_id", nullable=False),
            _uuid("process_id", nullable=False),
            sa.Column("status_code", sa.String(length=60), nullable=False),
            _uuid("workflow_type_id", nullable=False),
            sa.Column("total_runs", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("config_completed_runs", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("lifecycle_completed_runs", sa.Integer(), nullable=False, server_default="0"),
            _ts("created_at"),
            sa.CheckConstraint("lifecycle_completed_runs <= total_runs",
                               name="ck_op_lifecycle_le_total"),
            sa.CheckConstraint("config_completed_runs <= total_runs",
                               name="ck_op_config_le_total"),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["process_id"], ["processes.id"]),
            sa.ForeignKeyConstraint(["workflow_type_id"], ["workflow_types.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_id", "process_id", name="uq_order_process"),
        )
        op.create_index("ix_order_processes_order_id", "order_processes", ["order_id"])

    if "process_runs" not in existing_tables:
        op.create_table(
            "process_runs",
            _uuid("id", nullable=False),
            _uuid("order_process_id", nullable=False),
            _uuid("run_template_id", nullable=False),
            sa.Column("run_number", sa.Integer(), nullable=False),
            sa.Column("display_name", sa.String(length=200), nullable=False),
            sa.Column("status_code", sa.String(length=60), nullable=False),
            _uuid("config_workflow_type_id", nullable=False),
            sa.Column("life_cycle_status_code", sa.String(length=60), nullable=False),
            _uuid("lifecycle_workflow_type_id", nullable=False),
            sa.Column("fields", sa.JSON(), nullable=False),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["order_process_id"], ["order_processes.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["run_template_id"], ["run_templates.id"]),
            sa.ForeignKeyConstraint(["config_workflow_type_id"], ["workflow_types.id"]),
            sa.ForeignKeyConstraint(["lifecycle_workflow_type_id"], ["workflow_types.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_process_id", "run_number", name="uq_run_number"),
        )
        op.create_index("ix_process_runs_order_process_id", "process_runs", ["order_process_id"])

    # ── Outbox ───────────────────────────────────────────────────────────
    if "outbox_events" not in existing_tables:
        op.create_table(
            "outbox_events",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("aggregate_type", sa.String(length=30), nullable=False),
            _uuid("aggregate_id", nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("processed_at"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            _ts("next_attempt_at"),
            sa.Column("parked", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("parked_at"),
            _ts("created_at", nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_outbox_pending", "outbox_events", ["processed", "parked", "created_at"])
        op.create_index("idx_outbox_aggregate", "outbox_events", ["aggregate_id", "processed"])

    # ── Billing ──────────────────────────────────────────────────────────
    if "billing_contexts" not in existing_tables:
        op.create_table(
            "billing_contexts",
            _uuid("id", nullable=False),
            sa.Column("type", sa.String(length=10), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
        )

    if "billing_context_orders" not in existing_tables:
        op.create_table(
            "billing_context_orders",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            _uuid("billing_context_id", nullable=False),
            _uuid("order_id", nullable=False),
            sa.ForeignKeyConstraint(["billing_context_id"], ["billing_contexts.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("billing_context_id", "order_id", name="uq_bco_context_order"),
        )
        op.create_index("ix_billing_context_orders_billing_context_id", "billing_context_orders",
                        ["billing_context_id"])
        op.create_index("ix_billing_context_orders_order_id", "billing_context_orders", ["order_id"])

    if "billing_snapshots" not in existing_tables:
        op.create_table(
            "billing_snapshots",
            _uuid("id", nullable=False),
            _uuid("billing_context_id", nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("intent", sa.String(length=10), nullable=False),
            sa.Column("calculation_type", sa.String(length=20), nullable=False),
            sa.Column("currency", sa.String(length=3), nullable=False),
            sa.Column("result", sa.Numeric(18, 4), nullable=False),
            sa.Column("inputs", sa.JSON(), nullable=False),
            sa.Column("line_items", sa.JSON(), nullable=False),
            sa.Column("formula_checksum", sa.String(length=64), nullable=True),
            sa.Column("reason", sa.String(length=200), nullable=True),
            sa.Column("created_by", sa.String(length=100), nullable=True),
            sa.Column("is_latest", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["billing_context_id"], ["billing_contexts.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("billing_context_id", "version", name="uq_bs_context_version"),
        )
        op.create_index("ix_billing_snapshots_billing_context_id", "billing_snapshots",
                        ["billing_context_id"])
        op.create_index(
            "uq_bs_one_latest", "billing_snapshots", ["billing_context_id"], unique=True,
            postgresql_where=sa.text("is_latest"),
            sqlite_where=sa.text("is_latest = 1"),
        )

    # ── Fiscal sequences & scheduler ─────────────────────────────────────
    if "fiscal_sequences" not in existing_tables:
        op.create_table(
            "fiscal_sequences",
            sa.Column("prefix", sa.String(length=20), nullable=False),
            sa.Column("fiscal_year", sa.String(length=5), nullable=False),
            sa.Column("next_value", sa.Integer(), nullable=False, server_default="1"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("prefix", "fiscal_year"),
        )

    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("interval_seconds", sa.Float(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            _ts("last_run_at"),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    for table in (
        "scheduled_jobs",
        "fiscal_sequences",
        "billing_snapshots",
        "billing_context_orders",
        "billing_contexts",
        "outbox_events",
        "process_runs",
        "order_processes",
        "orders",
        "process_run_definitions",
        "run_templates",
        "processes",
        "workflow_audit_logs",
        "workflow_transitions",
        "workflow_statuses",
        "workflow_types",
    ):
        op.drop_table(table)

"""Create WhatsApp job, schedule, template, message, and dispatch run tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "whatsapp_jobs",
        sa.Column("job_id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("dedupe_key", sa.String(length=256), nullable=True),
        sa.Column("to_phone", sa.String(length=64), nullable=False),
        sa.Column("template_key", sa.String(length=128), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
        sa.UniqueConstraint("tenant_id", "dedupe_key", name="uq_whatsapp_jobs_tenant_dedupe"),
    )
    op.create_index("ix_whatsapp_jobs_tenant_id", "whatsapp_jobs", ["tenant_id"], unique=False)
    op.create_index("ix_whatsapp_jobs_status", "whatsapp_jobs", ["status"], unique=False)
    op.create_index("ix_whatsapp_jobs_run_at", "whatsapp_jobs", ["run_at"], unique=False)
    op.create_index("ix_whatsapp_jobs_locked_by", "whatsapp_jobs", ["locked_by"], unique=False)
    op.create_index("ix_whatsapp_jobs_updated_at", "whatsapp_jobs", ["updated_at"], unique=False)

    op.create_table(
        "whatsapp_schedules",
        sa.Column("schedule_id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("schedule_key", sa.String(length=128), nullable=False),
        sa.Column("template_key", sa.String(length=128), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("interval_seconds", sa.Integer(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("schedule_id"),
    )
    op.create_index("ix_whatsapp_schedules_tenant_id", "whatsapp_schedules", ["tenant_id"], unique=False)
    op.create_index("ix_whatsapp_schedules_next_run_at", "whatsapp_schedules", ["next_run_at"], unique=False)

    op.create_table(
        "whatsapp_templates",
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id", "key"),
    )

    op.create_table(
        "whatsapp_messages",
        sa.Column("message_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("from_number", sa.String(length=64), nullable=True),
        sa.Column("to_number", sa.String(length=64), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("raw_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index("ix_whatsapp_messages_tenant_id", "whatsapp_messages", ["tenant_id"], unique=False)

    op.create_table(
        "whatsapp_dispatch_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("picked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retried", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("schedules_picked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("jobs_created_from_schedules", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("ran_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_whatsapp_dispatch_runs_source", "whatsapp_dispatch_runs", ["source"], unique=False)
    op.create_index("ix_whatsapp_dispatch_runs_ran_at", "whatsapp_dispatch_runs", ["ran_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_whatsapp_dispatch_runs_ran_at", table_name="whatsapp_dispatch_runs")
    op.drop_index("ix_whatsapp_dispatch_runs_source", table_name="whatsapp_dispatch_runs")
    op.drop_table("whatsapp_dispatch_runs")

    op.drop_index("ix_whatsapp_messages_tenant_id", table_name="whatsapp_messages")
    op.drop_table("whatsapp_messages")

    op.drop_table("whatsapp_templates")

    op.drop_index("ix_whatsapp_schedules_next_run_at", table_name="whatsapp_schedules")
    op.drop_index("ix_whatsapp_schedules_tenant_id", table_name="whatsapp_schedules")
    op.drop_table("whatsapp_schedules")

    op.drop_index("ix_whatsapp_jobs_updated_at", table_name="whatsapp_jobs")
    op.drop_index("ix_whatsapp_jobs_locked_by", table_name="whatsapp_jobs")
    op.drop_index("ix_whatsapp_jobs_run_at", table_name="whatsapp_jobs")
    op.drop_index("ix_whatsapp_jobs_status", table_name="whatsapp_jobs")
    op.drop_index("ix_whatsapp_jobs_tenant_id", table_name="whatsapp_jobs")
    op.drop_table("whatsapp_jobs")

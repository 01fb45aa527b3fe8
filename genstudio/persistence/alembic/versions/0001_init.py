"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "credit_balances",
        sa.Column("principal_id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("general_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("aux_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # Balances never go negative, even under concurrent deductions.
        sa.CheckConstraint("general_credits >= 0", name="ck_credit_balances_general_nonneg"),
        sa.CheckConstraint("aux_credits >= 0", name="ck_credit_balances_aux_nonneg"),
    )

    op.create_table(
        "workspaces",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("instance_name", sa.String(), nullable=False),
        sa.Column("instance_class", sa.String(), nullable=False),
        sa.Column("image_urls_json", postgresql.JSONB(), nullable=False),
        sa.Column("images_zip_url", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="not_created"),
        sa.Column("training_job_id", sa.String(), nullable=True),
        sa.Column("provider_model_name", sa.String(), nullable=True),
        sa.Column("model_version", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_workspaces_principal_id", "workspaces", ["principal_id"])
    op.create_index("ix_workspaces_principal_created", "workspaces", ["principal_id", "created_at"])

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("provider_job_id", sa.String(), nullable=True),
        sa.Column("state", sa.String(), nullable=False, server_default="starting"),
        sa.Column("input_json", postgresql.JSONB(), nullable=False),
        sa.Column(
            "workspace_id",
            sa.String(),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "parent_job_id",
            sa.String(),
            sa.ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("output_url", sa.String(), nullable=True),
        sa.Column("raw_output_json", postgresql.JSONB(), nullable=True),
        sa.Column("artifact_id", sa.String(), nullable=True),
        sa.Column("seed", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("bookmarked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("upscale_status", sa.String(), nullable=False, server_default="NO"),
        sa.Column("upscale_job_id", sa.String(), nullable=True),
        sa.Column("upscale_output_url", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        # Webhooks and polls locate the job by the provider's id.
        sa.UniqueConstraint("provider_job_id", name="uq_jobs_provider_job_id"),
    )
    op.create_index("ix_jobs_principal_id", "jobs", ["principal_id"])
    op.create_index("ix_jobs_workspace_id", "jobs", ["workspace_id"])
    op.create_index("ix_jobs_parent_job_id", "jobs", ["parent_job_id"])
    op.create_index("ix_jobs_principal_kind_created", "jobs", ["principal_id", "kind", "created_at"])
    # Reconciliation scans non-terminal jobs by age.
    op.create_index("ix_jobs_state_updated", "jobs", ["state", "updated_at"])

    op.create_table(
        "artifacts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("original_url", sa.String(), nullable=False),
        sa.Column("hd_url", sa.String(), nullable=True),
        sa.Column("source_tag", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=True),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "principal_id", "original_url", name="uq_artifacts_principal_original_url"
        ),
    )
    op.create_index("ix_artifacts_principal_url", "artifacts", ["principal_id", "url"])
    op.create_index("ix_artifacts_principal_created", "artifacts", ["principal_id", "created_at"])
    op.create_index("ix_artifacts_job_id", "artifacts", ["job_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("purpose", sa.String(), nullable=False),
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="paid"),
        sa.Column("general_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("aux_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("session_id", "purpose", name="uq_payments_session_purpose"),
    )
    op.create_index("ix_payments_principal_id", "payments", ["principal_id"])
    op.create_index("ix_payments_workspace_purpose", "payments", ["workspace_id", "purpose"])

    op.create_table(
        "tool_configs",
        sa.Column("slug", sa.String(), primary_key=True),
        sa.Column("model_identifier", sa.String(), nullable=False),
        sa.Column("prompt_template", sa.Text(), nullable=False),
        sa.Column("negative_prompt", sa.Text(), nullable=True),
        sa.Column("default_aspect_ratio", sa.String(), nullable=False),
        sa.Column("default_output_format", sa.String(), nullable=False),
        sa.Column("credit_cost", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("principal_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
    )
    op.create_index(
        "ix_audit_events_principal_occurred", "audit_events", ["principal_id", "occurred_at"]
    )
    op.create_index("ix_audit_events_type_occurred", "audit_events", ["event_type", "occurred_at"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_type_occurred", table_name="audit_events")
    op.drop_index("ix_audit_events_principal_occurred", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("tool_configs")
    op.drop_index("ix_payments_workspace_purpose", table_name="payments")
    op.drop_index("ix_payments_principal_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_artifacts_job_id", table_name="artifacts")
    op.drop_index("ix_artifacts_principal_created", table_name="artifacts")
    op.drop_index("ix_artifacts_principal_url", table_name="artifacts")
    op.drop_table("artifacts")
    op.drop_index("ix_jobs_state_updated", table_name="jobs")
    op.drop_index("ix_jobs_principal_kind_created", table_name="jobs")
    op.drop_index("ix_jobs_parent_job_id", table_name="jobs")
    op.drop_index("ix_jobs_workspace_id", table_name="jobs")
    op.drop_index("ix_jobs_principal_id", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("ix_workspaces_principal_created", table_name="workspaces")
    op.drop_index("ix_workspaces_principal_id", table_name="workspaces")
    op.drop_table("workspaces")
    op.drop_table("credit_balances")

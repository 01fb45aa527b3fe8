from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from genstudio.domain.states import JOB_STARTING, UPSCALE_NO, WORKSPACE_NOT_CREATED


# Use JSONB on Postgres while keeping sqlite-backed tests portable.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class CreditBalance(Base):
    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("general_credits >= 0", name="ck_credit_balances_general_nonneg"),
        CheckConstraint("aux_credits >= 0", name="ck_credit_balances_aux_nonneg"),
    )

    principal_id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    general_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Secondary metered resource spent by prompt-assist calls.
    aux_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Workspace(Base):
    __tablename__ = "workspaces"
    __table_args__ = (Index("ix_workspaces_principal_created", "principal_id", "created_at"),)

    # Fine-tuning target owning a provider-side trainable model.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    principal_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    instance_name: Mapped[str] = mapped_column(String)
    instance_class: Mapped[str] = mapped_column(String)
    image_urls_json: Mapped[list[str]] = mapped_column(JsonType, default=list)
    # Training images archive consumed by the trainer.
    images_zip_url: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default=WORKSPACE_NOT_CREATED, nullable=False)
    training_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_model_name: Mapped[str | None] = mapped_column(String, nullable=True)
    model_version: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_principal_kind_created", "principal_id", "kind", "created_at"),
        Index("ix_jobs_state_updated", "state", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    principal_id: Mapped[str] = mapped_column(String, index=True)
    kind: Mapped[str] = mapped_column(String)
    # Set once at submission; the idempotency anchor for webhooks and polls.
    provider_job_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    state: Mapped[str] = mapped_column(String, default=JOB_STARTING, nullable=False)
    # Prompt and parameters; never rewritten after creation.
    input_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    workspace_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=True, index=True
    )
    parent_job_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=True, index=True
    )
    output_url: Mapped[str | None] = mapped_column(String, nullable=True)
    raw_output_json: Mapped[Any | None] = mapped_column(JsonType, nullable=True)
    artifact_id: Mapped[str | None] = mapped_column(String, nullable=True)
    seed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    bookmarked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Upscale bookkeeping lives on the parent generation job.
    upscale_status: Mapped[str] = mapped_column(String, default=UPSCALE_NO, nullable=False)
    upscale_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    upscale_output_url: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Artifact(Base):
    __tablename__ = "artifacts"
    __table_args__ = (
        # De-dup anchor; a duplicate-key error means a concurrent writer won.
        UniqueConstraint("principal_id", "original_url", name="uq_artifacts_principal_original_url"),
        Index("ix_artifacts_principal_url", "principal_id", "url"),
        Index("ix_artifacts_principal_created", "principal_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    principal_id: Mapped[str] = mapped_column(String)
    url: Mapped[str] = mapped_column(String)
    original_url: Mapped[str] = mapped_column(String)
    # Secondary high-resolution URL added by a completed upscale.
    hd_url: Mapped[str | None] = mapped_column(String, nullable=True)
    source_tag: Mapped[str] = mapped_column(String, default="tool")
    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        # Guards against applying the same checkout session twice for one purpose.
        UniqueConstraint("session_id", "purpose", name="uq_payments_session_purpose"),
        Index("ix_payments_workspace_purpose", "workspace_id", "purpose"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String)
    purpose: Mapped[str] = mapped_column(String)
    principal_id: Mapped[str] = mapped_column(String, index=True)
    workspace_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="paid")
    general_credits: Mapped[int] = mapped_column(Integer, default=0)
    aux_credits: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ToolConfig(Base):
    __tablename__ = "tool_configs"

    # Slug is the tool route, e.g. "ai-photo-filter/ai-anime-filter".
    slug: Mapped[str] = mapped_column(String, primary_key=True)
    model_identifier: Mapped[str] = mapped_column(String)
    # Template with a {{prompt}} placeholder.
    prompt_template: Mapped[str] = mapped_column(Text, default="{{prompt}}")
    negative_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    default_aspect_ratio: Mapped[str] = mapped_column(String, default="1:1")
    default_output_format: Mapped[str] = mapped_column(String, default="jpg")
    credit_cost: Mapped[int] = mapped_column(Integer, default=1)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_principal_occurred", "principal_id", "occurred_at"),
        Index("ix_audit_events_type_occurred", "event_type", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    principal_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)

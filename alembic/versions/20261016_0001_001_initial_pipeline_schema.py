"""001 initial pipeline schema

Revision ID: 001_initial_pipeline
Revises:
Create Date: 2026-10-16

Creates the pipeline core tables (projects, story_progress, story_stages,
retry_queue, usage_metrics, cost_rates, error_logs) and seeds the default
cost rates.
"""

from datetime import date, datetime, timezone
from typing import Sequence
from uuid import uuid4

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from animatevdo.constants import DEFAULT_COST_RATES

# revision identifiers, used by Alembic.
revision: str = "001_initial_pipeline"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

STAGE_VALUES = ("research", "script", "characters", "audio", "video")

pipeline_stage = postgresql.ENUM(*STAGE_VALUES, name="pipelinestage", create_type=False)
stage_status = postgresql.ENUM("completed", "failed", name="stagestatus", create_type=False)
recovery_status = postgresql.ENUM(
    "pending", "processing", "completed", "failed", name="recoverystatus", create_type=False
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Create pipeline tables and seed cost rates."""
    bind = op.get_bind()
    for enum_type in (pipeline_stage, stage_status, recovery_status):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "projects",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("topic", sa.String(500), nullable=False),
        sa.Column("stage", sa.String(20), nullable=False, server_default="research"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "stage IN ('research', 'script', 'characters', 'audio', 'video', 'complete')",
            name="ck_projects_stage",
        ),
    )

    op.create_table(
        "story_progress",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "project_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        *[sa.Column(name, sa.Boolean(), nullable=False, server_default=sa.false()) for name in STAGE_VALUES],
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", name="uq_story_progress_project_id"),
    )

    op.create_table(
        "story_stages",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "project_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stage", pipeline_stage, nullable=False),
        sa.Column("status", stage_status, nullable=False),
        sa.Column("content", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_story_stages_project_stage_status",
        "story_stages",
        ["project_id", "stage", "status", "created_at"],
    )

    op.create_table(
        "retry_queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "project_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stage", pipeline_stage, nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", recovery_status, nullable=False, server_default="pending"),
        *_timestamps(),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("retry_count >= 0", name="ck_retry_queue_retry_count_non_negative"),
    )
    op.create_index("ix_retry_queue_status_next_retry_at", "retry_queue", ["status", "next_retry_at"])

    op.create_table(
        "usage_metrics",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column(
            "project_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("projects.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("service_type", sa.String(20), nullable=False),
        sa.Column("api_calls", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("input_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("model_used", sa.String(100), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("cost", sa.Numeric(12, 6), nullable=False, server_default="0"),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_usage_metrics_user_created_at", "usage_metrics", ["user_id", "created_at"])

    cost_rates = op.create_table(
        "cost_rates",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("service_type", sa.String(20), nullable=False),
        sa.Column("model_name", sa.String(100), nullable=False),
        sa.Column("input_token_cost", sa.Numeric(12, 8), nullable=False, server_default="0"),
        sa.Column("output_token_cost", sa.Numeric(12, 8), nullable=False, server_default="0"),
        sa.Column("request_cost", sa.Numeric(12, 8), nullable=False, server_default="0"),
        sa.Column("effective_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_cost_rates_service_model",
        "cost_rates",
        ["service_type", "model_name", "effective_date"],
    )

    op.create_table(
        "error_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("error_code", sa.String(50), nullable=False, index=True),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("service", sa.String(50), nullable=True),
        sa.Column(
            "project_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("projects.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("technical_details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.bulk_insert(
        cost_rates,
        [
            {
                "id": uuid4(),
                "service_type": service_type,
                "model_name": model_name,
                "input_token_cost": input_cost,
                "output_token_cost": output_cost,
                "request_cost": request_cost,
                "effective_date": date(2024, 1, 1),
                "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
            }
            for (service_type, model_name), (input_cost, output_cost, request_cost) in DEFAULT_COST_RATES.items()
        ],
    )


def downgrade() -> None:
    """Drop pipeline tables and enum types."""
    for table in (
        "error_logs",
        "cost_rates",
        "usage_metrics",
        "retry_queue",
        "story_stages",
        "story_progress",
        "projects",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_type in (recovery_status, stage_status, pipeline_stage):
        enum_type.drop(bind, checkfirst=True)

"""SQLAlchemy 2.0 ORM models.

This module contains every persisted record of the pipeline core.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Records:
    Project: one user-initiated pipeline run and its current stage pointer.
    ProgressRecord: exactly one per Project, one completion flag per stage.
    StageResult: append-only log of Stage Runner invocations.
    RecoveryQueueEntry: durable retry record for retryable stage failures.
    UsageRecord: one row per external API invocation attempt.
    CostRate: per (service type, model) pricing used to compute usage cost.
    ErrorLog: persistent copy of reported ServiceErrors.

Table names match the hosted schema (``story_progress``,
``story_stages``, ``retry_queue``, ``usage_metrics``) so existing dashboards
keep reading the same tables.
"""

import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from animatevdo.constants import PIPELINE_COMPLETE, STAGE_ORDER


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


class Stage(enum.Enum):
    """The five fixed pipeline stages, in execution order."""

    RESEARCH = "research"
    SCRIPT = "script"
    CHARACTERS = "characters"
    AUDIO = "audio"
    VIDEO = "video"

    @property
    def next_stage_name(self) -> str:
        """Stage pointer value after this stage completes.

        Returns:
            The next stage's value, or "complete" after the video stage.

        Example:
            >>> Stage.RESEARCH.next_stage_name
            'script'
            >>> Stage.VIDEO.next_stage_name
            'complete'
        """
        index = STAGE_ORDER.index(self.value)
        if index + 1 < len(STAGE_ORDER):
            return STAGE_ORDER[index + 1]
        return PIPELINE_COMPLETE


class StageStatus(enum.Enum):
    """Outcome of a single Stage Runner invocation."""

    COMPLETED = "completed"
    FAILED = "failed"


class RecoveryStatus(enum.Enum):
    """Lifecycle of a recovery queue entry.

    pending → processing → completed
                        ↘ pending (rescheduled) | failed (retry_count >= max_retries)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Project(Base):
    """One user-initiated pipeline run.

    Attributes:
        id: Project UUID.
        user_id: Owning user (authentication is handled upstream).
        topic: Free-text topic the story is about.
        stage: Current stage pointer: a Stage value, or "complete".
        created_at: Creation timestamp.
        updated_at: Last stage pointer change.
    """

    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    topic: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    stage: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=Stage.RESEARCH.value,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    progress: Mapped["ProgressRecord"] = relationship(
        "ProgressRecord",
        back_populates="project",
        uselist=False,
    )

    __table_args__ = (
        CheckConstraint(
            "stage IN ('research', 'script', 'characters', 'audio', 'video', 'complete')",
            name="ck_projects_stage",
        ),
    )

    @property
    def is_complete(self) -> bool:
        return self.stage == PIPELINE_COMPLETE

    def __repr__(self) -> str:
        return f"<Project(id={self.id!s:.8}, topic={self.topic!r}, stage={self.stage!r})>"


class ProgressRecord(Base):
    """Per-project completion flags, one per stage.

    Flags are monotonic: the core only ever sets them False → True.
    A flag being True does not imply the previous stage's flag is True
    (stages can be re-triggered manually out of order).
    """

    __tablename__ = "story_progress"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    research: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    script: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    characters: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    audio: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    video: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    project: Mapped["Project"] = relationship("Project", back_populates="progress")

    def is_complete(self, stage: Stage) -> bool:
        return bool(getattr(self, stage.value))

    @property
    def completed_stages(self) -> list[Stage]:
        return [stage for stage in Stage if self.is_complete(stage)]

    @property
    def next_stage(self) -> Stage | None:
        """First stage (in pipeline order) whose flag is still False."""
        for stage in Stage:
            if not self.is_complete(stage):
                return stage
        return None

    def as_flags(self) -> dict[str, bool]:
        return {stage.value: self.is_complete(stage) for stage in Stage}


class StageResult(Base):
    """Append-only record of one Stage Runner invocation.

    The most recent ``completed`` row for a (project, stage) pair is the
    authoritative output consumed by later stages. Rows are never updated.
    """

    __tablename__ = "story_stages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    # values_callable stores enum.value (lowercase) rather than enum.name
    stage: Mapped[Stage] = mapped_column(
        Enum(
            Stage,
            native_enum=True,
            name="pipelinestage",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    status: Mapped[StageStatus] = mapped_column(
        Enum(
            StageStatus,
            native_enum=True,
            name="stagestatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    content: Mapped[dict[str, Any] | None] = mapped_column(
        JSON,
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    error_code: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        # Latest-completed lookups: WHERE project_id=? AND stage=? AND status=? ORDER BY created_at DESC
        Index("ix_story_stages_project_stage_status", "project_id", "stage", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<StageResult(project={self.project_id!s:.8}, stage={self.stage.value!r}, "
            f"status={self.status.value!r})>"
        )


class RecoveryQueueEntry(Base):
    """A retryable stage failure waiting for the recovery worker."""

    __tablename__ = "retry_queue"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage: Mapped[Stage] = mapped_column(
        Enum(
            Stage,
            native_enum=True,
            name="pipelinestage",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    next_retry_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    status: Mapped[RecoveryStatus] = mapped_column(
        Enum(
            RecoveryStatus,
            native_enum=True,
            name="recoverystatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=RecoveryStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="ck_retry_queue_retry_count_non_negative"),
        # Drain query: WHERE status='pending' AND next_retry_at <= now()
        Index("ix_retry_queue_status_next_retry_at", "status", "next_retry_at"),
    )

    @property
    def is_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


class UsageRecord(Base):
    """One external API invocation attempt (successful or not)."""

    __tablename__ = "usage_metrics"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    project_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
    )
    service_type: Mapped[str] = mapped_column(String(20), nullable=False)
    api_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    model_used: Mapped[str | None] = mapped_column(String(100), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 6),
        nullable=False,
        default=Decimal("0"),
    )
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_usage_metrics_user_created_at", "user_id", "created_at"),
    )


class CostRate(Base):
    """Pricing for one (service type, model) pair.

    Rates are per 1000 tokens plus a flat per-request charge. When several
    rows exist for the same pair, the one with the latest effective_date wins.
    """

    __tablename__ = "cost_rates"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    service_type: Mapped[str] = mapped_column(String(20), nullable=False)
    model_name: Mapped[str] = mapped_column(String(100), nullable=False)
    input_token_cost: Mapped[Decimal] = mapped_column(Numeric(12, 8), nullable=False, default=Decimal("0"))
    output_token_cost: Mapped[Decimal] = mapped_column(Numeric(12, 8), nullable=False, default=Decimal("0"))
    request_cost: Mapped[Decimal] = mapped_column(Numeric(12, 8), nullable=False, default=Decimal("0"))
    effective_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        default=lambda: utcnow().date(),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_cost_rates_service_model", "service_type", "model_name", "effective_date"),
    )


class ErrorLog(Base):
    """Persistent copy of a reported ServiceError."""

    __tablename__ = "error_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    error_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    service: Mapped[str | None] = mapped_column(String(50), nullable=True)
    project_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    technical_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

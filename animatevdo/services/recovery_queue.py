"""Durable queue of retryable stage failures.

Entry lifecycle:
    pending ──claim_due──► processing ──mark_completed──► completed
                               │
                               ├─mark_attempt_failed─► pending (rescheduled)
                               │                     └► failed (non-retryable,
                               │                        or retry_count >= max_retries)
                               └─claim expired──► processing (claimed again)

A Stage Runner enqueues an entry (``retry_count = 0``, due after
``recovery_delay_seconds``) when a stage fails with a retryable error. The
recovery worker claims due entries and re-runs the stage. Rescheduling
doubles the delay with every failed recovery attempt.
"""

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from animatevdo.config import Settings
from animatevdo.exceptions import ServiceError
from animatevdo.models import RecoveryQueueEntry, RecoveryStatus, Stage, utcnow
from animatevdo.utils.logging import get_logger

log = get_logger(__name__)


class RecoveryQueue:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings):
        self.session_factory = session_factory
        self.delay = timedelta(seconds=settings.recovery_delay_seconds)
        self.max_retries = settings.recovery_max_retries
        self.claim_timeout = timedelta(seconds=settings.recovery_claim_timeout_seconds)

    async def enqueue(
        self,
        project_id: UUID,
        stage: Stage,
        error: ServiceError,
        db: AsyncSession | None = None,
    ) -> RecoveryQueueEntry:
        """Queue a failed stage for a later retry.

        Example:
            >>> entry = await queue.enqueue(project.id, Stage.AUDIO, error)
            >>> entry.status, entry.retry_count
            (<RecoveryStatus.PENDING: 'pending'>, 0)
        """
        if db is None:
            async with self.session_factory() as db, db.begin():
                return await self.enqueue(project_id, stage, error, db)

        entry = RecoveryQueueEntry(
            project_id=project_id,
            stage=stage,
            retry_count=0,
            max_retries=self.max_retries,
            error_message=error.message,
            error_code=error.code.value,
            next_retry_at=utcnow() + self.delay,
            status=RecoveryStatus.PENDING,
        )
        db.add(entry)
        await db.flush()

        log.info(
            "recovery_entry_queued",
            project_id=project_id,
            stage=stage.value,
            error_code=error.code.value,
            next_retry_at=entry.next_retry_at,
        )
        return entry

    async def claim_due(self, limit: int = 10, now: datetime | None = None) -> list[RecoveryQueueEntry]:
        """Move up to ``limit`` due entries to processing and return them.

        Due means pending with ``next_retry_at`` reached, or processing with a
        claim older than ``recovery_claim_timeout_seconds`` (the worker that
        claimed it died or lost its database connection). Rows are locked
        with FOR UPDATE SKIP LOCKED so concurrent workers never claim the
        same entry (the clause is a no-op on SQLite).
        """
        now = now or utcnow()
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                select(RecoveryQueueEntry)
                .where(
                    or_(
                        and_(
                            RecoveryQueueEntry.status == RecoveryStatus.PENDING,
                            RecoveryQueueEntry.next_retry_at <= now,
                        ),
                        and_(
                            RecoveryQueueEntry.status == RecoveryStatus.PROCESSING,
                            RecoveryQueueEntry.claimed_at <= now - self.claim_timeout,
                        ),
                    )
                )
                .order_by(RecoveryQueueEntry.next_retry_at.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            entries = list(result.scalars())
            for entry in entries:
                if entry.status == RecoveryStatus.PROCESSING:
                    log.warning("recovery_entry_reclaimed", entry_id=entry.id, claimed_at=entry.claimed_at)
                entry.status = RecoveryStatus.PROCESSING
                entry.claimed_at = now

        if entries:
            log.info("recovery_entries_claimed", count=len(entries))
        return entries

    async def mark_completed(self, entry_id: UUID) -> None:
        async with self.session_factory() as db, db.begin():
            entry = await db.get(RecoveryQueueEntry, entry_id)
            if entry is None:
                return
            entry.status = RecoveryStatus.COMPLETED
            entry.completed_at = utcnow()

        log.info("recovery_entry_completed", entry_id=entry_id)

    async def mark_attempt_failed(self, entry_id: UUID, error: ServiceError) -> RecoveryQueueEntry | None:
        """Record a failed recovery attempt and reschedule or give up.

        Returns:
            The updated entry (status ``pending`` or ``failed``), or None if
            the entry no longer exists.
        """
        async with self.session_factory() as db, db.begin():
            entry = await db.get(RecoveryQueueEntry, entry_id)
            if entry is None:
                return None

            entry.retry_count += 1
            entry.error_message = error.message
            entry.error_code = error.code.value

            if not error.retryable or entry.is_exhausted:
                entry.status = RecoveryStatus.FAILED
                entry.completed_at = utcnow()
            else:
                entry.status = RecoveryStatus.PENDING
                entry.next_retry_at = utcnow() + self.delay * (2 ** entry.retry_count)

        log.warning(
            "recovery_attempt_failed",
            entry_id=entry_id,
            retry_count=entry.retry_count,
            max_retries=entry.max_retries,
            status=entry.status.value,
            error_code=error.code.value,
        )
        return entry

    async def list_for_project(self, project_id: UUID) -> list[RecoveryQueueEntry]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(RecoveryQueueEntry)
                .where(RecoveryQueueEntry.project_id == project_id)
                .order_by(RecoveryQueueEntry.created_at.asc())
            )
            return list(result.scalars())

"""Project and per-stage progress tracking.

A Project and its ProgressRecord are created together in one transaction, so
a project without progress flags can never be observed. Progress flags are
only ever set (False → True) by a Stage Runner after a successful stage.

Methods that write accept an optional ``db`` session so a Stage Runner can
persist its StageResult, the progress flag and the stage pointer in a single
transaction; without one they open their own short transaction.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from animatevdo.exceptions import ErrorCode, ServiceError
from animatevdo.models import ProgressRecord, Project, Stage, StageResult, StageStatus
from animatevdo.utils.logging import get_logger

log = get_logger(__name__)


def _project_not_found(project_id: UUID) -> ServiceError:
    return ServiceError(
        ErrorCode.INVALID_PROJECT_DATA,
        f"Project {project_id} not found",
        user_message="This project could not be found.",
        retryable=False,
        technical_details={"project_id": str(project_id)},
    )


class ProgressTracker:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_project(self, user_id: UUID, topic: str) -> Project:
        """Create a Project and its all-False ProgressRecord atomically.

        Raises:
            ServiceError: INVALID_PROJECT_DATA for an empty topic.
        """
        topic = topic.strip()
        if not topic:
            raise ServiceError(
                ErrorCode.INVALID_PROJECT_DATA,
                "Project topic must not be empty",
                user_message="Please enter a topic for your story.",
                retryable=False,
            )

        async with self.session_factory() as db, db.begin():
            project = Project(user_id=user_id, topic=topic, stage=Stage.RESEARCH.value)
            db.add(project)
            await db.flush()
            progress = ProgressRecord(project_id=project.id)
            db.add(progress)

        log.info("project_created", project_id=project.id, user_id=user_id)
        return project

    async def get_project(self, project_id: UUID) -> Project:
        async with self.session_factory() as db:
            project = await db.get(Project, project_id)
        if project is None:
            raise _project_not_found(project_id)
        return project

    async def _get_progress(self, db: AsyncSession, project_id: UUID) -> ProgressRecord:
        result = await db.execute(select(ProgressRecord).where(ProgressRecord.project_id == project_id))
        progress = result.scalar_one_or_none()
        if progress is None:
            raise _project_not_found(project_id)
        return progress

    async def get(self, project_id: UUID) -> ProgressRecord:
        """Return the ProgressRecord for ``project_id``.

        Raises:
            ServiceError: INVALID_PROJECT_DATA if the project does not exist.
        """
        async with self.session_factory() as db:
            return await self._get_progress(db, project_id)

    async def mark_complete(self, project_id: UUID, stage: Stage, db: AsyncSession | None = None) -> None:
        """Set the progress flag for ``stage`` (never cleared by the core)."""
        if db is None:
            async with self.session_factory() as db, db.begin():
                await self.mark_complete(project_id, stage, db)
            return

        progress = await self._get_progress(db, project_id)
        setattr(progress, stage.value, True)

    async def advance_stage(self, project_id: UUID, stage_name: str, db: AsyncSession | None = None) -> None:
        """Move the project's stage pointer to ``stage_name``."""
        if db is None:
            async with self.session_factory() as db, db.begin():
                await self.advance_stage(project_id, stage_name, db)
            return

        project = await db.get(Project, project_id)
        if project is None:
            raise _project_not_found(project_id)
        project.stage = stage_name

    async def latest_result(
        self,
        project_id: UUID,
        stage: Stage,
        status: StageStatus | None = StageStatus.COMPLETED,
    ) -> StageResult | None:
        """Most recent StageResult for (project, stage), completed ones by default."""
        stmt = select(StageResult).where(StageResult.project_id == project_id, StageResult.stage == stage)
        if status is not None:
            stmt = stmt.where(StageResult.status == status)
        stmt = stmt.order_by(StageResult.created_at.desc()).limit(1)

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def list_results(self, project_id: UUID, stage: Stage | None = None) -> list[StageResult]:
        """All StageResults for a project, oldest first."""
        stmt = select(StageResult).where(StageResult.project_id == project_id)
        if stage is not None:
            stmt = stmt.where(StageResult.stage == stage)
        stmt = stmt.order_by(StageResult.created_at.asc())

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars())

"""Pipeline Orchestrator: single entry point for running stages.

The orchestrator owns one Stage Runner per stage and the shared collaborators
(progress tracker, recovery queue, usage recorder, error reporter). Routes and
the recovery worker go through it rather than through runners directly.

Key Responsibilities:
- ``run_stage``: dispatch to the stage's runner, serialising concurrent runs of
  the same (project, stage) within this process
- ``run_pipeline``: run from the project's current stage to the end, stopping
  at the first failure
- Auto-advance: with ``settings.auto_advance`` a successful stage schedules
  the next one in the background
- Project creation behind the monthly plan limit

Architecture Pattern: "Short Transaction + Long Processing"
- Runners hold no transaction while calling providers; the orchestrator holds
  only an in-process asyncio.Lock. Runs in separate processes may still race
  and both append a StageResult; the last write of the stage pointer wins.

Usage:
    orchestrator = PipelineOrchestrator.from_settings(settings, session_factory, capabilities)
    project = await orchestrator.create_project(user_id, "space exploration")
    await orchestrator.run_pipeline(project.id)
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from animatevdo.clients.factory import Capabilities
from animatevdo.config import Settings
from animatevdo.constants import PIPELINE_COMPLETE, STAGE_ORDER
from animatevdo.exceptions import ErrorCode, ServiceError
from animatevdo.models import Project, Stage, StageResult
from animatevdo.services.error_reporter import ErrorReporter
from animatevdo.services.progress_tracker import ProgressTracker
from animatevdo.services.recovery_queue import RecoveryQueue
from animatevdo.services.retry import RetryOptions, Sleep
from animatevdo.services.stage_runner import StageInputs, StageRunner
from animatevdo.services.usage_recorder import UsageRecorder
from animatevdo.stages import AudioStage, CharactersStage, ResearchStage, ScriptStage, VideoStage
from animatevdo.utils.logging import get_logger

log = get_logger(__name__)


def parse_stage(stage: Stage | str) -> Stage:
    """Accept a Stage or its name.

    Raises:
        ServiceError: INVALID_PROJECT_DATA for an unknown stage name.
    """
    if isinstance(stage, Stage):
        return stage
    try:
        return Stage(stage)
    except ValueError as e:
        raise ServiceError(
            ErrorCode.INVALID_PROJECT_DATA,
            f"Unknown stage: {stage}",
            user_message=f"Unknown stage '{stage}'. Expected one of: {', '.join(STAGE_ORDER)}.",
            retryable=False,
        ) from e


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        runners: dict[Stage, StageRunner],
        progress: ProgressTracker,
        recovery_queue: RecoveryQueue,
        usage_recorder: UsageRecorder,
        error_reporter: ErrorReporter,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.runners = runners
        self.progress = progress
        self.recovery_queue = recovery_queue
        self.usage_recorder = usage_recorder
        self.error_reporter = error_reporter
        # (project, stage) -> [lock, number of runs holding or waiting for it]
        self._locks: dict[tuple[UUID, Stage], list] = {}
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        capabilities: Capabilities,
        *,
        retry_options: RetryOptions | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> "PipelineOrchestrator":
        """Wire the five runners and their shared collaborators."""
        progress = ProgressTracker(session_factory)
        recovery_queue = RecoveryQueue(session_factory, settings)
        usage_recorder = UsageRecorder(session_factory)
        error_reporter = ErrorReporter(session_factory)
        shared = {
            "settings": settings,
            "session_factory": session_factory,
            "progress": progress,
            "recovery_queue": recovery_queue,
            "usage_recorder": usage_recorder,
            "error_reporter": error_reporter,
            "retry_options": retry_options,
            "sleep": sleep,
        }
        runners: dict[Stage, StageRunner] = {
            Stage.RESEARCH: ResearchStage(capability=capabilities.research, **shared),
            Stage.SCRIPT: ScriptStage(capability=capabilities.script, **shared),
            Stage.CHARACTERS: CharactersStage(capability=capabilities.images, storage=capabilities.storage, **shared),
            Stage.AUDIO: AudioStage(capability=capabilities.speech, storage=capabilities.storage, **shared),
            Stage.VIDEO: VideoStage(capability=capabilities.media, **shared),
        }
        return cls(
            settings=settings,
            session_factory=session_factory,
            runners=runners,
            progress=progress,
            recovery_queue=recovery_queue,
            usage_recorder=usage_recorder,
            error_reporter=error_reporter,
        )

    async def create_project(self, user_id: UUID, topic: str, plan: str = "hobby") -> Project:
        """Create a project once the user's monthly plan allows another story.

        Raises:
            ServiceError: USAGE_LIMIT_EXCEEDED, SUBSCRIPTION_REQUIRED or
                INVALID_PROJECT_DATA.
        """
        await self.usage_recorder.enforce_usage_limit(user_id, plan)
        return await self.progress.create_project(user_id, topic)

    async def run_stage(
        self,
        stage: Stage | str,
        project_id: UUID,
        inputs: StageInputs | None = None,
        *,
        enqueue_recovery: bool = True,
        auto_advance: bool | None = None,
    ) -> StageResult:
        """Run one stage for a project.

        Args:
            stage: Stage or stage name.
            project_id: Target project.
            inputs: Dependency overrides and stage options.
            enqueue_recovery: Queue a recovery entry on retryable failure.
            auto_advance: Schedule the next stage after success; defaults to
                ``settings.auto_advance``.

        Raises:
            ServiceError: The classified stage failure (already persisted).
        """
        stage = parse_stage(stage)
        async with self._stage_lock(project_id, stage):
            result = await self.runners[stage].run(project_id, inputs, enqueue_recovery=enqueue_recovery)

        if auto_advance is None:
            auto_advance = self.settings.auto_advance
        if auto_advance and stage.next_stage_name != PIPELINE_COMPLETE:
            self._schedule_next(Stage(stage.next_stage_name), project_id)
        return result

    @asynccontextmanager
    async def _stage_lock(self, project_id: UUID, stage: Stage) -> AsyncIterator[None]:
        key = (project_id, stage)
        entry = self._locks.setdefault(key, [asyncio.Lock(), 0])
        lock = entry[0]
        if lock.locked():
            log.info("stage_run_waiting", project_id=project_id, stage=stage.value)

        entry[1] += 1
        try:
            async with lock:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def _schedule_next(self, stage: Stage, project_id: UUID) -> None:
        task = asyncio.create_task(self._advance(stage, project_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _advance(self, stage: Stage, project_id: UUID) -> None:
        log.info("auto_advance_started", project_id=project_id, stage=stage.value)
        try:
            await self.run_stage(stage, project_id, auto_advance=True)
        except ServiceError as e:
            # Failure is already persisted and queued for recovery by the runner
            log.warning("auto_advance_stopped", project_id=project_id, stage=stage.value, error_code=e.code.value)

    async def wait_for_background(self) -> None:
        """Wait until every auto-advance chain scheduled so far has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def run_pipeline(self, project_id: UUID) -> list[StageResult]:
        """Run every stage from the project's current stage to the end.

        Raises:
            ServiceError: The first stage failure; later stages are not run.
        """
        project = await self.progress.get_project(project_id)
        if project.is_complete:
            log.info("pipeline_already_complete", project_id=project_id)
            return []

        results = []
        for name in STAGE_ORDER[STAGE_ORDER.index(project.stage):]:
            results.append(await self.run_stage(name, project_id, auto_advance=False))

        log.info("pipeline_completed", project_id=project_id, stages_run=len(results))
        return results

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)

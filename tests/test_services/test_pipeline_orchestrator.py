"""Unit tests for PipelineOrchestrator.

Tests cover:
- Project creation behind the monthly plan limit
- Full pipeline run against mock capabilities
- Resume from the project's current stage and stop at the first failure
- Auto-advance chains in the background
- Unknown stage names
- Serialisation of concurrent runs of the same (project, stage)

Test Strategy:
- In-memory SQLite database shared by every collaborator
- Mock capabilities (deterministic, no network); AsyncMock where a provider
  must fail
- Recording sleep so retry backoff never waits
"""

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from animatevdo.clients.base import ProviderAPIError, ResearchFindings
from animatevdo.exceptions import ErrorCode, ServiceError
from animatevdo.models import Stage, StageStatus
from animatevdo.services.pipeline_orchestrator import PipelineOrchestrator, parse_stage


def _orchestrator_with(settings, session_factory, capabilities, retry_options, recorded_sleep, **overrides):
    return PipelineOrchestrator.from_settings(
        settings,
        session_factory,
        replace(capabilities, **overrides),
        retry_options=retry_options,
        sleep=recorded_sleep,
    )


@pytest.fixture
def failing_speech():
    speech = AsyncMock()
    speech.list_voices.return_value = []
    speech.synthesize.side_effect = ProviderAPIError("ElevenLabs", 401, "Unauthorized")
    return speech


class TestParseStage:
    def test_accepts_names_and_members(self):
        assert parse_stage("audio") is Stage.AUDIO
        assert parse_stage(Stage.VIDEO) is Stage.VIDEO

    def test_p1_unknown_stage(self):
        with pytest.raises(ServiceError) as exc_info:
            parse_stage("thumbnails")

        assert exc_info.value.code == ErrorCode.INVALID_PROJECT_DATA
        assert exc_info.value.retryable is False


class TestCreateProject:
    async def test_p0_creates_project_with_empty_progress(self, orchestrator, user_id):
        project = await orchestrator.create_project(user_id, "  volcanoes  ")

        assert project.topic == "volcanoes"
        assert project.stage == "research"
        progress = await orchestrator.progress.get(project.id)
        assert progress.completed_stages == []

    async def test_p1_plan_limit_enforced(self, orchestrator, user_id):
        """[P1] The sixth hobby story in a month is refused."""
        for number in range(5):
            await orchestrator.create_project(user_id, f"topic {number}")

        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.create_project(user_id, "one too many")

        assert exc_info.value.code == ErrorCode.USAGE_LIMIT_EXCEEDED

    async def test_empty_topic(self, orchestrator, user_id):
        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.create_project(user_id, "   ")

        assert exc_info.value.code == ErrorCode.INVALID_PROJECT_DATA


class TestRunPipeline:
    async def test_p0_full_pipeline_with_mock_providers(self, orchestrator, project):
        """[P0] All five stages complete in order and the project is complete.

        GIVEN: A new project and deterministic mock providers
        WHEN: run_pipeline is called
        THEN: Five completed StageResults in stage order
        AND: Every progress flag is set and the pointer reads "complete"
        """
        results = await orchestrator.run_pipeline(project.id)

        assert [r.stage for r in results] == list(Stage)
        assert all(r.status == StageStatus.COMPLETED for r in results)

        progress = await orchestrator.progress.get(project.id)
        assert progress.as_flags() == {stage.value: True for stage in Stage}
        assert (await orchestrator.progress.get_project(project.id)).stage == "complete"

        video = results[-1].content
        assert video["video_url"].endswith(f"{project.id}/final_video.mp4")
        assert video["scenes_compiled"] == 4

    async def test_p1_complete_project_runs_nothing(self, orchestrator, project):
        await orchestrator.run_pipeline(project.id)

        assert await orchestrator.run_pipeline(project.id) == []

    async def test_p1_resumes_from_current_stage(self, orchestrator, project):
        await orchestrator.run_stage("research", project.id)

        results = await orchestrator.run_pipeline(project.id)

        assert [r.stage for r in results] == [Stage.SCRIPT, Stage.CHARACTERS, Stage.AUDIO, Stage.VIDEO]

    async def test_p0_stops_at_first_failure(
        self, settings, session_factory, mock_capabilities, retry_options, recorded_sleep, failing_speech, project
    ):
        """[P0] A failing audio stage stops the run; video never starts."""
        orchestrator = _orchestrator_with(
            settings, session_factory, mock_capabilities, retry_options, recorded_sleep, speech=failing_speech
        )

        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.run_pipeline(project.id)

        assert exc_info.value.code == ErrorCode.API_KEY_MISSING
        progress = await orchestrator.progress.get(project.id)
        assert progress.completed_stages == [Stage.RESEARCH, Stage.SCRIPT, Stage.CHARACTERS]
        assert (await orchestrator.progress.get_project(project.id)).stage == "audio"
        assert await orchestrator.progress.list_results(project.id, Stage.VIDEO) == []


class TestRunStage:
    async def test_p1_unknown_stage_name(self, orchestrator, project):
        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.run_stage("thumbnails", project.id)

        assert exc_info.value.code == ErrorCode.INVALID_PROJECT_DATA

    async def test_p0_auto_advance_runs_remaining_stages(self, orchestrator, project):
        """[P0] With auto-advance a successful stage schedules the next one."""
        await orchestrator.run_stage(Stage.RESEARCH, project.id, auto_advance=True)
        await orchestrator.wait_for_background()

        assert (await orchestrator.progress.get_project(project.id)).is_complete

    async def test_p1_auto_advance_stops_on_failure(
        self, settings, session_factory, mock_capabilities, retry_options, recorded_sleep, failing_speech, project
    ):
        orchestrator = _orchestrator_with(
            settings, session_factory, mock_capabilities, retry_options, recorded_sleep, speech=failing_speech
        )

        await orchestrator.run_stage(Stage.RESEARCH, project.id, auto_advance=True)
        await orchestrator.wait_for_background()

        assert (await orchestrator.progress.get_project(project.id)).stage == "audio"
        failed = await orchestrator.progress.latest_result(project.id, Stage.AUDIO, status=StageStatus.FAILED)
        assert failed.error_code == "API_KEY_MISSING"
        assert await orchestrator.progress.list_results(project.id, Stage.VIDEO) == []

    async def test_auto_advance_off_by_default(self, orchestrator, project):
        await orchestrator.run_stage(Stage.RESEARCH, project.id)
        await orchestrator.wait_for_background()

        assert (await orchestrator.progress.get_project(project.id)).stage == "script"
        assert await orchestrator.progress.list_results(project.id, Stage.SCRIPT) == []

    async def test_p1_same_stage_runs_are_serialised(
        self, settings, session_factory, mock_capabilities, retry_options, recorded_sleep, project
    ):
        """[P1] Two concurrent research runs for one project never overlap."""
        active = 0
        peak = 0

        async def research(topic: str) -> ResearchFindings:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return ResearchFindings(summary=f"About {topic}", key_points=[], sources=[])

        researcher = AsyncMock()
        researcher.research.side_effect = research
        orchestrator = _orchestrator_with(
            settings, session_factory, mock_capabilities, retry_options, recorded_sleep, research=researcher
        )

        first, second = await asyncio.gather(
            orchestrator.run_stage(Stage.RESEARCH, project.id),
            orchestrator.run_stage(Stage.RESEARCH, project.id),
        )

        assert peak == 1
        assert first.id != second.id
        assert len(await orchestrator.progress.list_results(project.id, Stage.RESEARCH)) == 2
        assert orchestrator._locks == {}

    async def test_p1_stage_locks_released_after_runs(self, orchestrator, project):
        """[P1] Per-stage locks are dropped once no run holds or waits for them.

        GIVEN: A successful run and a failed run (missing dependencies)
        WHEN: Both have finished
        THEN: The orchestrator keeps no lock entries behind
        """
        await orchestrator.run_stage(Stage.RESEARCH, project.id)
        with pytest.raises(ServiceError):
            await orchestrator.run_stage(Stage.AUDIO, project.id)

        assert orchestrator._locks == {}

"""Shared pytest fixtures for the pipeline core.

Database fixtures use an in-memory SQLite database (aiosqlite + StaticPool)
with every table created from the ORM metadata. Stage fixtures wire runners
against that database with a recording sleep so retry backoff never waits.
"""

from collections.abc import Callable
from typing import Any
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

from animatevdo.clients.factory import Capabilities
from animatevdo.clients.mock import (
    MockImageGenerator,
    MockMediaAssembler,
    MockResearcher,
    MockScriptWriter,
    MockSpeechSynthesizer,
    MockStorage,
)
from animatevdo.config import Settings
from animatevdo.database import SessionFactory, create_test_engine
from animatevdo.models import Base, Project, Stage, StageResult, StageStatus, utcnow
from animatevdo.services.error_reporter import ErrorReporter
from animatevdo.services.pipeline_orchestrator import PipelineOrchestrator
from animatevdo.services.progress_tracker import ProgressTracker
from animatevdo.services.recovery_queue import RecoveryQueue
from animatevdo.services.retry import RetryOptions
from animatevdo.services.usage_recorder import UsageRecorder


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def settings() -> Settings:
    """Settings for tests: mock providers, default retry and recovery policy."""
    return Settings(use_mock_data=True)


@pytest.fixture
def retry_options() -> RetryOptions:
    return RetryOptions(max_retries=3, initial_delay=1.0, max_delay=30.0, backoff_factor=2.0)


@pytest.fixture
def recorded_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def session_factory():
    """Session factory over a fresh in-memory database with all tables created.

    Yields:
        async_sessionmaker bound to the test engine.
    """
    engine, factory = create_test_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


@pytest.fixture
def progress(session_factory: SessionFactory) -> ProgressTracker:
    return ProgressTracker(session_factory)


@pytest.fixture
def recovery_queue(session_factory: SessionFactory, settings: Settings) -> RecoveryQueue:
    return RecoveryQueue(session_factory, settings)


@pytest.fixture
def usage_recorder(session_factory: SessionFactory) -> UsageRecorder:
    return UsageRecorder(session_factory)


@pytest_asyncio.fixture
async def project(progress: ProgressTracker, user_id: UUID) -> Project:
    """A fresh project about space exploration (stage pointer at research)."""
    return await progress.create_project(user_id, "space exploration")


@pytest.fixture
def runner_kwargs(
    settings: Settings,
    session_factory: SessionFactory,
    progress: ProgressTracker,
    recovery_queue: RecoveryQueue,
    usage_recorder: UsageRecorder,
    retry_options: RetryOptions,
    recorded_sleep: RecordingSleep,
) -> dict[str, Any]:
    """Keyword arguments shared by every Stage Runner constructor."""
    return {
        "settings": settings,
        "session_factory": session_factory,
        "progress": progress,
        "recovery_queue": recovery_queue,
        "usage_recorder": usage_recorder,
        "error_reporter": ErrorReporter(session_factory),
        "retry_options": retry_options,
        "sleep": recorded_sleep,
    }


@pytest.fixture
def mock_capabilities() -> Capabilities:
    return Capabilities(
        research=MockResearcher(),
        script=MockScriptWriter(),
        images=MockImageGenerator(),
        speech=MockSpeechSynthesizer(),
        media=MockMediaAssembler(),
        storage=MockStorage(),
    )


@pytest_asyncio.fixture
async def orchestrator(
    settings: Settings,
    session_factory: SessionFactory,
    mock_capabilities: Capabilities,
    retry_options: RetryOptions,
    recorded_sleep: RecordingSleep,
):
    orchestrator = PipelineOrchestrator.from_settings(
        settings,
        session_factory,
        mock_capabilities,
        retry_options=retry_options,
        sleep=recorded_sleep,
    )
    yield orchestrator
    await orchestrator.close()


@pytest.fixture
def add_stage_result(session_factory: SessionFactory) -> Callable:
    """Insert a completed StageResult directly, bypassing the runner."""

    async def _add(project_id: UUID, stage: Stage, content: dict[str, Any]) -> StageResult:
        async with session_factory() as db, db.begin():
            result = StageResult(
                project_id=project_id,
                stage=stage,
                status=StageStatus.COMPLETED,
                content=content,
                completed_at=utcnow(),
            )
            db.add(result)
        return result

    return _add


@pytest.fixture
def research_content() -> dict[str, Any]:
    return {
        "summary": "Humans have explored space since the 1950s.",
        "key_points": ["Sputnik launched in 1957", "Apollo 11 landed on the Moon in 1969"],
        "sources": [{"title": "NASA History", "url": "https://history.nasa.gov"}],
    }


@pytest.fixture
def script_content() -> dict[str, Any]:
    """Five-scene script; scenes 1, 3 and 5 are the key scenes."""
    scenes = [
        {
            "scene_number": number,
            "title": f"Part {number}",
            "description": f"Rocket scene {number}",
            "narration": "We fly higher and higher toward the stars above us.",
            "characters": ["Narrator", "Astronaut Ada"] if number == 1 else ["Narrator"],
            "dialogue": [],
            "duration": 30.0,
        }
        for number in range(1, 6)
    ]
    return {
        "title": "Journey to the Stars",
        "scenes": scenes,
        "duration_estimate": "2:30",
        "tone": "Educational and engaging",
    }


@pytest.fixture
def characters_content() -> dict[str, Any]:
    return {
        "characters": [
            {"name": "Narrator", "image_url": "https://storage.example.com/p/characters/narrator.png"},
        ],
        "scenes": [
            {"scene_number": 1, "image_url": "https://storage.example.com/p/scenes/scene-1.png"},
            {
                "scene_number": 3,
                "image_url": "https://placehold.co/1920x1080.png?text=ERROR-Scene-3&reason=blocked",
                "error": "CHARACTER_DESIGN_FAILED",
            },
        ],
        "style_guide": {"art_style": "Modern, clean illustration with scientific accuracy"},
    }


@pytest.fixture
def audio_content() -> dict[str, Any]:
    files = [
        {"scene_number": n, "audio_url": f"https://storage.example.com/p/audio/scene_{n}.mp3", "duration": 4.0}
        for n in (1, 2, 3, 4)
    ]
    files.append(
        {
            "scene_number": 5,
            "audio_url": "ERROR-scene-5?reason=Too%20many%20requests",
            "duration": 30.0,
            "error": "API_RATE_LIMIT",
        }
    )
    return {"audio_files": files, "voice_settings": {"voice_id": "21m00Tcm4TlvDq8ikWAM"}, "total_duration": "0:46"}

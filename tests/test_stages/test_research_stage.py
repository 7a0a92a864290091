"""Tests for the research stage."""

from unittest.mock import AsyncMock

import pytest

from animatevdo.clients.base import ProviderAPIError, ResearchFindings
from animatevdo.clients.research import NoSearchResultsError
from animatevdo.exceptions import ErrorCode, ServiceError
from animatevdo.models import Stage
from animatevdo.stages.research import ResearchStage


@pytest.fixture
def researcher():
    return AsyncMock()


@pytest.fixture
def stage(runner_kwargs, researcher):
    return ResearchStage(capability=researcher, **runner_kwargs)


async def test_p0_research_succeeds_first_attempt(stage, researcher, progress, recorded_sleep, project):
    """[P0] Happy path on the first attempt.

    GIVEN: A new project about "space exploration"
    WHEN: The research provider answers on the first call
    THEN: Content holds summary, key points and sources, with no retry sleeps
    AND: The research flag is set and the pointer moves to script
    """
    researcher.research.return_value = ResearchFindings(
        summary="Humans first reached orbit in 1961.",
        key_points=["Vostok 1", "Apollo 11", "ISS"],
        sources=[{"title": "ESA", "url": "https://esa.int"}],
    )

    result = await stage.run(project.id)

    assert result.content == {
        "summary": "Humans first reached orbit in 1961.",
        "key_points": ["Vostok 1", "Apollo 11", "ISS"],
        "sources": [{"title": "ESA", "url": "https://esa.int"}],
    }
    assert recorded_sleep.delays == []
    assert (await progress.get(project.id)).research is True
    assert (await progress.get_project(project.id)).stage == Stage.SCRIPT.value


async def test_p1_rate_limit_recovers_on_retry(stage, researcher, recorded_sleep, project):
    """[P1] A single 429 is retried after one second and then succeeds."""
    researcher.research.side_effect = [
        ProviderAPIError("Tavily", 429, "Too Many Requests"),
        ResearchFindings(summary="Recovered", key_points=[], sources=[]),
    ]

    result = await stage.run(project.id)

    assert result.content["summary"] == "Recovered"
    assert recorded_sleep.delays == [1.0]


async def test_p1_no_search_results_is_permanent(stage, researcher, recovery_queue, project):
    researcher.research.side_effect = NoSearchResultsError("No search results for 'qwzx'")

    with pytest.raises(ServiceError) as exc_info:
        await stage.run(project.id)

    assert exc_info.value.code == ErrorCode.RESEARCH_FAILED
    assert exc_info.value.retryable is False
    assert researcher.research.await_count == 1
    assert await recovery_queue.list_for_project(project.id) == []

"""Tests for building the capability set from Settings."""

from dataclasses import replace

import pytest

from animatevdo.clients.elevenlabs import ElevenLabsClient
from animatevdo.clients.factory import build_capabilities
from animatevdo.clients.llm import OpenAIClient
from animatevdo.clients.media import RenderServiceClient
from animatevdo.clients.mock import MockResearcher, MockStorage
from animatevdo.clients.research import WebResearcher
from animatevdo.clients.storage import SupabaseStorage
from animatevdo.config import Settings
from animatevdo.exceptions import ConfigurationError

PRODUCTION = Settings(
    anthropic_api_key="sk-ant",
    openai_api_key="sk-openai",
    tavily_api_key="tvly",
    supabase_url="https://proj.supabase.co",
    supabase_service_key="service-key",
    render_service_url="https://render.example.com",
)


def test_mock_mode_uses_mocks():
    capabilities = build_capabilities(Settings(use_mock_data=True))

    assert isinstance(capabilities.research, MockResearcher)
    assert isinstance(capabilities.storage, MockStorage)
    assert capabilities.http_clients == ()


async def test_production_clients():
    capabilities = build_capabilities(PRODUCTION)

    try:
        assert isinstance(capabilities.research, WebResearcher)
        assert isinstance(capabilities.images, OpenAIClient)
        assert capabilities.images.rate_limiter is not None
        assert isinstance(capabilities.speech, ElevenLabsClient)
        assert isinstance(capabilities.storage, SupabaseStorage)
        assert isinstance(capabilities.media, RenderServiceClient)
        assert len(capabilities.http_clients) == 8
    finally:
        await capabilities.close()

    assert all(client.client.is_closed for client in capabilities.http_clients)


@pytest.mark.parametrize(
    ("missing", "message"),
    [("supabase_url", "SUPABASE_URL"), ("render_service_url", "RENDER_SERVICE_URL")],
)
def test_p1_missing_infrastructure_config(missing, message):
    with pytest.raises(ConfigurationError, match=message):
        build_capabilities(replace(PRODUCTION, **{missing: None}))

"""Build the capability set for a process from Settings."""

from dataclasses import dataclass

from animatevdo.clients.base import (
    ImageCapability,
    MediaAssemblyCapability,
    ObjectStorage,
    ProviderClient,
    ResearchCapability,
    ScriptCapability,
    SpeechCapability,
)
from animatevdo.clients.elevenlabs import ElevenLabsClient
from animatevdo.clients.llm import AnthropicClient, OpenAIClient
from animatevdo.clients.media import RenderServiceClient
from animatevdo.clients.mock import (
    MockImageGenerator,
    MockMediaAssembler,
    MockResearcher,
    MockScriptWriter,
    MockSpeechSynthesizer,
    MockStorage,
)
from animatevdo.clients.research import WebResearcher
from animatevdo.clients.script_writer import LLMScriptWriter
from animatevdo.clients.search import SerperClient, TavilyClient
from animatevdo.clients.storage import SupabaseStorage
from animatevdo.config import Settings
from animatevdo.exceptions import ConfigurationError


@dataclass
class Capabilities:
    """One implementation per external capability the stages depend on."""

    research: ResearchCapability
    script: ScriptCapability
    images: ImageCapability
    speech: SpeechCapability
    media: MediaAssemblyCapability
    storage: ObjectStorage
    http_clients: tuple[ProviderClient, ...] = ()

    async def close(self) -> None:
        for client in self.http_clients:
            await client.close()


def build_capabilities(settings: Settings) -> Capabilities:
    """Real provider clients, or mocks when ``settings.use_mock_data`` is set.

    Raises:
        ConfigurationError: If storage or the render service is not configured
            outside mock mode. Missing provider API keys are not an error
            here; calls fail with 401 and are classified as API_KEY_MISSING.
    """
    if settings.use_mock_data:
        return Capabilities(
            research=MockResearcher(),
            script=MockScriptWriter(),
            images=MockImageGenerator(),
            speech=MockSpeechSynthesizer(),
            media=MockMediaAssembler(),
            storage=MockStorage(),
        )

    if not settings.supabase_url:
        raise ConfigurationError("SUPABASE_URL is required unless USE_MOCK_DATA is enabled")
    if not settings.render_service_url:
        raise ConfigurationError("RENDER_SERVICE_URL is required unless USE_MOCK_DATA is enabled")

    timeout = settings.http_timeout_seconds
    anthropic = AnthropicClient(settings.anthropic_api_key, timeout=timeout)
    openai = OpenAIClient(settings.openai_api_key, timeout=timeout)
    # DALL-E 3 allows 5 images per minute on the lowest tier
    openai_images = OpenAIClient(settings.openai_api_key, timeout=timeout, max_rate=5, time_period=60)
    tavily = TavilyClient(settings.tavily_api_key, timeout=timeout)
    serper = SerperClient(settings.serper_api_key, timeout=timeout)
    elevenlabs = ElevenLabsClient(settings.elevenlabs_api_key, timeout=timeout)
    storage = SupabaseStorage(
        settings.supabase_url,
        settings.supabase_service_key,
        settings.storage_bucket,
        timeout=timeout,
    )
    renderer = RenderServiceClient(settings.render_service_url)

    return Capabilities(
        research=WebResearcher(tavily, serper, anthropic, openai),
        script=LLMScriptWriter(anthropic, openai),
        images=openai_images,
        speech=elevenlabs,
        media=renderer,
        storage=storage,
        http_clients=(anthropic, openai, openai_images, tavily, serper, elevenlabs, storage, renderer),
    )

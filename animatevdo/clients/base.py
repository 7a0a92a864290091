"""Capability interfaces and the shared HTTP provider base.

Each pipeline stage depends on one abstract capability. Stage Runners only
see these interfaces, so production (httpx) and mock implementations are
interchangeable and tests can pass an ``AsyncMock`` with the same shape.

Failures must surface as exceptions the error classifier understands:
``ProviderAPIError`` (carries the HTTP status and the provider's own error
text, which is where markers such as "safety system" live) or httpx
transport errors.
"""

import contextlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import httpx
from aiolimiter import AsyncLimiter


class ProviderAPIError(Exception):
    """Raised when a provider answers with an HTTP error status."""

    def __init__(self, provider: str, status_code: int, message: str, response_body: str = ""):
        self.provider = provider
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"{provider} API error {status_code}: {message}")


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class TextGeneration:
    """Text returned by an LLM together with billing metadata."""

    text: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str | None = None


@dataclass
class SearchResult:
    title: str
    url: str
    content: str = ""


@dataclass
class ResearchFindings:
    """Search-and-summarize output for one topic."""

    summary: str
    key_points: list[str]
    sources: list[dict[str, str]]
    model: str = "unknown"
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class GeneratedImage:
    """An image either hosted by the provider (url) or returned inline (data)."""

    url: str | None = None
    data: bytes | None = None
    content_type: str = "image/png"
    model: str = "dall-e-3"
    revised_prompt: str | None = None


@dataclass
class SynthesizedSpeech:
    audio: bytes
    content_type: str = "audio/mpeg"
    model: str = "elevenlabs-standard"
    characters: int = 0


@dataclass
class Voice:
    voice_id: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class AssembledVideo:
    video_url: str
    thumbnail_url: str | None = None
    duration: float = 0.0
    file_size: int = 0
    model: str = "ffmpeg"


class ResearchCapability(ABC):
    """Web search plus summarization (research stage)."""

    @abstractmethod
    async def research(self, topic: str) -> ResearchFindings:
        ...


class ScriptCapability(ABC):
    """Story script text generation (script stage)."""

    @abstractmethod
    async def generate_script(self, topic: str, research: dict[str, Any]) -> TextGeneration:
        ...


class ImageCapability(ABC):
    """Image generation (characters stage)."""

    @abstractmethod
    async def generate_image(self, prompt: str, size: str = "1024x1024") -> GeneratedImage:
        ...


class SpeechCapability(ABC):
    """Text-to-speech (audio stage)."""

    @abstractmethod
    async def synthesize(
        self,
        text: str,
        voice_id: str,
        voice_settings: dict[str, Any],
    ) -> SynthesizedSpeech:
        ...

    @abstractmethod
    async def list_voices(self) -> list[Voice]:
        ...


class MediaAssemblyCapability(ABC):
    """Final video assembly, delegated to an external render process (video stage)."""

    @abstractmethod
    async def assemble(
        self,
        project_id: UUID,
        scenes: list[dict[str, Any]],
        render_settings: dict[str, Any],
    ) -> AssembledVideo:
        ...


class ObjectStorage(ABC):
    """Binary artifact storage returning a retrievable URL."""

    @abstractmethod
    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        ...


class ProviderClient:
    """Shared httpx plumbing for provider clients.

    Subclasses set ``provider`` and ``base_url``. Requests optionally pass
    through an ``AsyncLimiter`` when the provider publishes a hard rate limit.
    Error responses are raised as ``ProviderAPIError`` carrying the provider's
    own message so classification can see markers in it.
    """

    provider = "provider"
    base_url = ""
    requires_api_key = True

    def __init__(
        self,
        api_key: str | None,
        *,
        timeout: float = 60.0,
        max_rate: float | None = None,
        time_period: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self.rate_limiter = AsyncLimiter(max_rate, time_period) if max_rate else None

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:500] or response.reason_phrase
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return str(error.get("message") or error)
        if isinstance(body, dict) and "detail" in body:
            detail = body["detail"]
            if isinstance(detail, dict):
                # ElevenLabs puts the machine-readable code (voice_not_found) in "status"
                parts = [str(detail[key]) for key in ("status", "message") if detail.get(key)]
                return ": ".join(parts) or str(detail)
            return str(detail)
        return str(error or body)[:500]

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request; raise ProviderAPIError on HTTP error statuses.

        Raises:
            ProviderAPIError: When the provider key is missing (401) or the
                provider answers with status >= 400.
            httpx.TransportError: On connection failures and timeouts.
        """
        if self.requires_api_key and not self.api_key:
            raise ProviderAPIError(self.provider, 401, f"{self.provider} API key not configured")

        limiter = self.rate_limiter or contextlib.nullcontext()
        async with limiter:
            response = await self.client.request(
                method,
                url,
                headers={**self._headers(), **kwargs.pop("headers", {})},
                **kwargs,
            )

        if response.status_code >= 400:
            raise ProviderAPIError(
                self.provider,
                response.status_code,
                self._error_message(response),
                response.text[:1000],
            )
        return response

    async def close(self) -> None:
        await self.client.aclose()

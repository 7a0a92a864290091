"""LLM and image-generation clients (Anthropic, OpenAI).

Both clients return ``TextGeneration`` objects carrying the model id and
token usage so the Stage Runner can record cost per call.

OpenAI marks filtered completions with ``finish_reason == "content_filter"``
rather than an HTTP error; that case is raised as a ProviderAPIError whose
message contains "content filter" so the classifier maps it to a
non-retryable script failure.
"""

from typing import Any

from animatevdo.clients.base import (
    GeneratedImage,
    ImageCapability,
    ProviderAPIError,
    ProviderClient,
    TextGeneration,
)
from animatevdo.services.usage_recorder import parse_anthropic_usage, parse_openai_usage


class AnthropicClient(ProviderClient):
    """Anthropic Messages API client."""

    provider = "Anthropic"
    base_url = "https://api.anthropic.com/v1"
    api_version = "2023-06-01"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        model: str = "claude-3-haiku-20240307",
        max_tokens: int = 1500,
    ) -> TextGeneration:
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            body["system"] = system

        response = await self._request("POST", f"{self.base_url}/messages", json=body)
        payload = response.json()
        text = "".join(
            block.get("text", "") for block in payload.get("content", []) if block.get("type") == "text"
        )
        return TextGeneration(
            text=text,
            model=payload.get("model", model),
            usage=parse_anthropic_usage(payload),
            finish_reason=payload.get("stop_reason"),
        )


class OpenAIClient(ProviderClient, ImageCapability):
    """OpenAI chat completions and DALL-E image generation."""

    provider = "OpenAI"
    base_url = "https://api.openai.com/v1"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        model: str = "gpt-3.5-turbo",
        max_tokens: int = 1500,
    ) -> TextGeneration:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        response = await self._request(
            "POST",
            f"{self.base_url}/chat/completions",
            json={"model": model, "messages": messages, "max_tokens": max_tokens, "temperature": 0.7},
        )
        payload = response.json()
        choice = (payload.get("choices") or [{}])[0]
        finish_reason = choice.get("finish_reason")
        if finish_reason == "content_filter":
            raise ProviderAPIError(self.provider, 400, "Response blocked by content filter")

        return TextGeneration(
            text=(choice.get("message") or {}).get("content") or "",
            model=payload.get("model", model),
            usage=parse_openai_usage(payload),
            finish_reason=finish_reason,
        )

    async def generate_image(self, prompt: str, size: str = "1024x1024") -> GeneratedImage:
        """Generate one image with DALL-E 3.

        Safety rejections come back as HTTP 400 with "safety system" in the
        error message.
        """
        response = await self._request(
            "POST",
            f"{self.base_url}/images/generations",
            json={
                "model": "dall-e-3",
                "prompt": prompt,
                "n": 1,
                "size": size,
                "quality": "standard",
                "style": "vivid",
            },
        )
        data = (response.json().get("data") or [{}])[0]
        if not data.get("url"):
            raise ProviderAPIError(self.provider, 502, "Image generation returned no image URL")
        return GeneratedImage(url=data["url"], model="dall-e-3", revised_prompt=data.get("revised_prompt"))

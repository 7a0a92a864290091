"""ElevenLabs text-to-speech client.

ElevenLabs allows a small number of concurrent requests per key, so calls
go through an AsyncLimiter in addition to the audio stage's semaphore.
An unknown voice id comes back as HTTP 400/404 with ``voice_not_found`` in
the error detail, which the classifier treats as retryable.
"""

from typing import Any

import httpx

from animatevdo.clients.base import ProviderClient, SpeechCapability, SynthesizedSpeech, Voice


class ElevenLabsClient(ProviderClient, SpeechCapability):
    provider = "ElevenLabs"
    base_url = "https://api.elevenlabs.io/v1"
    model_id = "eleven_monolingual_v1"

    def __init__(
        self,
        api_key: str | None,
        *,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(api_key, timeout=timeout, max_rate=60, time_period=60, transport=transport)

    def _headers(self) -> dict[str, str]:
        return {"xi-api-key": self.api_key or "", "Content-Type": "application/json"}

    async def synthesize(
        self,
        text: str,
        voice_id: str,
        voice_settings: dict[str, Any],
    ) -> SynthesizedSpeech:
        response = await self._request(
            "POST",
            f"{self.base_url}/text-to-speech/{voice_id}",
            json={"text": text, "model_id": self.model_id, "voice_settings": voice_settings},
            headers={"Accept": "audio/mpeg"},
        )
        return SynthesizedSpeech(
            audio=response.content,
            content_type=response.headers.get("content-type", "audio/mpeg"),
            characters=len(text),
        )

    async def list_voices(self) -> list[Voice]:
        response = await self._request("GET", f"{self.base_url}/voices")
        return [
            Voice(voice_id=item["voice_id"], name=item.get("name", ""), labels=item.get("labels") or {})
            for item in response.json().get("voices", [])
        ]

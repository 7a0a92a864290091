"""Deterministic mock capabilities for local development (USE_MOCK_DATA).

Every mock returns plausible, stable output without network access so the
whole pipeline can be driven end to end from the API.
"""

from typing import Any
from urllib.parse import quote_plus
from uuid import UUID

from animatevdo.clients.base import (
    AssembledVideo,
    GeneratedImage,
    ImageCapability,
    MediaAssemblyCapability,
    ObjectStorage,
    ResearchCapability,
    ResearchFindings,
    ScriptCapability,
    SpeechCapability,
    SynthesizedSpeech,
    TextGeneration,
    TokenUsage,
    Voice,
)
from animatevdo.constants import DEFAULT_VOICE_ID, DEFAULT_VOICE_NAME
from animatevdo.services.usage_recorder import estimate_tokens


class MockResearcher(ResearchCapability):
    async def research(self, topic: str) -> ResearchFindings:
        summary = (
            f"{topic.title()} is a rich subject with a long history of discovery. "
            f"This overview covers the key ideas, people and moments behind {topic}."
        )
        return ResearchFindings(
            summary=summary,
            key_points=[
                f"The origins of {topic}",
                f"Key figures associated with {topic}",
                f"Major milestones in {topic}",
                f"Why {topic} matters today",
            ],
            sources=[
                {"title": f"{topic.title()} - Encyclopedia", "url": f"https://example.com/wiki/{quote_plus(topic)}"},
                {"title": f"A short history of {topic}", "url": f"https://example.com/history/{quote_plus(topic)}"},
            ],
            model="mock-research",
            usage=TokenUsage(estimate_tokens(topic), estimate_tokens(summary)),
        )


class MockScriptWriter(ScriptCapability):
    async def generate_script(self, topic: str, research: dict[str, Any]) -> TextGeneration:
        points = research.get("key_points") or [f"An introduction to {topic}"]
        lines = [f"Title: The Story of {topic.title()}", ""]
        for number, point in enumerate(points, start=1):
            lines += [
                f"Scene {number}: {point}",
                f"Description: An animated scene illustrating {point.lower()}.",
                f"Narration: Let's explore {point.lower()}.",
                "Characters: Narrator, Guide",
                "GUIDE: Follow me, there is more to see!",
                "",
            ]
        text = "\n".join(lines)
        return TextGeneration(
            text=text,
            model="mock-script",
            usage=TokenUsage(estimate_tokens(str(research)), estimate_tokens(text)),
        )


class MockImageGenerator(ImageCapability):
    async def generate_image(self, prompt: str, size: str = "1024x1024") -> GeneratedImage:
        return GeneratedImage(
            url=f"https://placehold.co/{size}.png?text={quote_plus(prompt[:40])}",
            model="mock-image",
        )


class MockSpeechSynthesizer(SpeechCapability):
    async def synthesize(self, text: str, voice_id: str, voice_settings: dict[str, Any]) -> SynthesizedSpeech:
        return SynthesizedSpeech(audio=b"ID3" + text.encode()[:64], model="mock-tts", characters=len(text))

    async def list_voices(self) -> list[Voice]:
        return [Voice(voice_id=DEFAULT_VOICE_ID, name=DEFAULT_VOICE_NAME, labels={"accent": "american"})]


class MockMediaAssembler(MediaAssemblyCapability):
    async def assemble(
        self,
        project_id: UUID,
        scenes: list[dict[str, Any]],
        render_settings: dict[str, Any],
    ) -> AssembledVideo:
        return AssembledVideo(
            video_url=f"https://storage.example.com/{project_id}/final_video.mp4",
            thumbnail_url=scenes[0]["visual_url"] if scenes else None,
            duration=sum(float(scene["duration"]) for scene in scenes),
            file_size=50 * 1024 * 1024,
            model="mock-render",
        )


class MockStorage(ObjectStorage):
    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        return f"https://storage.example.com/{path}"

"""Audio stage: per-scene narration through text-to-speech.

One TTS call per scene that has narration text, bounded by
``MAX_CONCURRENT_TTS``. Audio is uploaded to object storage under
``<project_id>/audio/scene_<n>.mp3``. A scene whose synthesis fails keeps its
slot with an ``ERROR-scene-<n>`` audio marker and a 30 second default
duration so the video stage can still lay out the timeline.
"""

from typing import Any

from animatevdo.clients.base import ObjectStorage, SpeechCapability, Voice
from animatevdo.constants import (
    DEFAULT_VOICE_ID,
    DEFAULT_VOICE_NAME,
    DEFAULT_VOICE_SETTINGS,
    FAILED_AUDIO_DEFAULT_DURATION,
    NARRATION_WORDS_PER_MINUTE,
)
from animatevdo.exceptions import ServiceError
from animatevdo.models import Stage
from animatevdo.schemas.stage_content import AudioContent, AudioFile, ScriptContent, ScriptScene
from animatevdo.services.error_classifier import graceful_degradation
from animatevdo.services.stage_runner import StageContext, StageRunner, error_marker_url
from animatevdo.stages.script_parser import format_duration

# (topic/tone keywords, preferred voice name fragments)
VOICE_PREFERENCES: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (("children", "kids"), ("josh", "elli")),
    (("professional", "educational"), ("adam", "rachel")),
    (("story", "narrative"), ("antoni", "bella")),
)


def estimate_duration(text: str) -> float:
    """Narration length in seconds at 150 words per minute."""
    words = len(text.split())
    return round(words / NARRATION_WORDS_PER_MINUTE * 60, 2)


def select_voice(topic: str, tone: str, voices: list[Voice]) -> tuple[str, str]:
    """Pick a voice matching the content, defaulting to Rachel.

    Children's topics prefer Josh/Elli, professional or educational tones
    Adam/Rachel, story topics Antoni/Bella.
    """
    haystack = f"{topic} {tone}".lower()
    for keywords, preferred in VOICE_PREFERENCES:
        if not any(keyword in haystack for keyword in keywords):
            continue
        for voice in voices:
            if any(fragment in voice.name.lower() for fragment in preferred):
                return voice.voice_id, voice.name
        break
    return DEFAULT_VOICE_ID, DEFAULT_VOICE_NAME


class AudioStage(StageRunner):
    """Options: ``voice_id`` and ``voice_settings`` override voice selection."""

    stage = Stage.AUDIO

    def __init__(self, *, capability: SpeechCapability, storage: ObjectStorage, **kwargs: Any):
        super().__init__(**kwargs)
        self.capability = capability
        self.storage = storage

    async def _voice_settings(self, ctx: StageContext, script: ScriptContent) -> dict[str, Any]:
        settings = {**DEFAULT_VOICE_SETTINGS, **(ctx.options.get("voice_settings") or {})}
        if ctx.options.get("voice_id"):
            return {
                "voice_id": ctx.options["voice_id"],
                "voice_name": ctx.options.get("voice_name", "Custom"),
                **settings,
            }

        voices = await graceful_degradation(self.capability.list_voices, [], self.service_name)
        voice_id, voice_name = select_voice(ctx.project.topic, script.tone, voices)
        return {"voice_id": voice_id, "voice_name": voice_name, **settings}

    async def _synthesize_scene(
        self, ctx: StageContext, scene: ScriptScene, voice_settings: dict[str, Any]
    ) -> AudioFile:
        tts_settings = {key: value for key, value in voice_settings.items() if key not in ("voice_id", "voice_name")}
        speech = await self.invoke(
            ctx,
            lambda: self.capability.synthesize(scene.narration, voice_settings["voice_id"], tts_settings),
            model_hint="elevenlabs-standard",
            label=f"scene-{scene.scene_number}",
        )
        path = f"{ctx.project.id}/audio/scene_{scene.scene_number}.mp3"
        audio_url = await self.upload(
            ctx,
            lambda: self.storage.upload(path, speech.audio, speech.content_type),
            path,
        )
        return AudioFile(
            scene_number=scene.scene_number,
            audio_url=audio_url,
            duration=estimate_duration(scene.narration),
            text=scene.narration,
            voice_id=voice_settings["voice_id"],
            format="mp3",
        )

    async def execute(self, ctx: StageContext) -> AudioContent:
        script: ScriptContent = ctx.dependencies["script"]
        voice_settings = await self._voice_settings(ctx, script)
        scenes = [scene for scene in script.scenes if scene.narration.strip()]

        def placeholder(scene: ScriptScene, error: ServiceError) -> AudioFile:
            return AudioFile(
                scene_number=scene.scene_number,
                audio_url=error_marker_url("audio", f"scene-{scene.scene_number}", error.user_message),
                duration=FAILED_AUDIO_DEFAULT_DURATION,
                text=scene.narration,
                voice_id=voice_settings["voice_id"],
                format="mp3",
                error=error.code.value,
            )

        result = await self.fan_out(
            ctx,
            scenes,
            lambda scene: self._synthesize_scene(ctx, scene, voice_settings),
            placeholder,
            self.settings.max_concurrent_tts,
        )
        if result.all_failed:
            raise result.errors[0]

        total_seconds = sum(audio.duration for audio in result.outputs)
        ctx.log.info(
            "narration_synthesized",
            voice=voice_settings["voice_name"],
            scenes=len(scenes),
            failed_scenes=len(result.errors),
            total_seconds=total_seconds,
        )
        return AudioContent(
            audio_files=result.outputs,
            voice_settings=voice_settings,
            total_duration=format_duration(total_seconds),
            total_duration_seconds=round(total_seconds, 2),
        )

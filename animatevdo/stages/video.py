"""Video stage: lay out scene assets and hand them to the render service.

Encoding happens outside this process. This stage pairs each scripted scene
with its narration audio and (when the characters stage illustrated it) its
scene visual, builds the render settings and an ffmpeg command preview, and
delegates to the media-assembly capability.
"""

from typing import Any

from animatevdo.clients.base import MediaAssemblyCapability
from animatevdo.clients.media import build_ffmpeg_command
from animatevdo.constants import DEFAULT_RENDER_SETTINGS, DEFAULT_SCENE_VISUAL, ERROR_MARKER
from animatevdo.exceptions import ErrorCode, ServiceError
from animatevdo.models import Stage
from animatevdo.schemas.stage_content import AudioContent, CharactersContent, ScriptContent, VideoContent
from animatevdo.services.stage_runner import StageContext, StageRunner
from animatevdo.stages.script_parser import format_duration


def _failed(url: str | None, error: str | None) -> bool:
    return bool(error) or not url or ERROR_MARKER in url


def prepare_scene_assets(
    script: ScriptContent,
    characters: CharactersContent,
    audio: AudioContent,
) -> list[dict[str, Any]]:
    """Ordered render inputs, one per scene with usable narration audio.

    Scenes without a usable visual get a numbered placeholder frame; scenes
    whose audio failed are left out of the render.
    """
    visuals = {
        visual.scene_number: visual.image_url
        for visual in characters.scenes
        if not _failed(visual.image_url, visual.error)
    }
    audio_files = {
        audio_file.scene_number: audio_file
        for audio_file in audio.audio_files
        if not _failed(audio_file.audio_url, audio_file.error)
    }

    assets = []
    for scene in script.scenes:
        audio_file = audio_files.get(scene.scene_number)
        if audio_file is None:
            continue
        assets.append(
            {
                "scene_number": scene.scene_number,
                "visual_url": visuals.get(scene.scene_number, f"{DEFAULT_SCENE_VISUAL}+{scene.scene_number}"),
                "audio_url": audio_file.audio_url,
                "duration": audio_file.duration,
                "narration": scene.narration,
            }
        )
    return assets


class VideoStage(StageRunner):
    """Options: ``render_settings`` overrides individual render defaults."""

    stage = Stage.VIDEO

    def __init__(self, *, capability: MediaAssemblyCapability, **kwargs: Any):
        super().__init__(**kwargs)
        self.capability = capability

    async def execute(self, ctx: StageContext) -> VideoContent:
        script: ScriptContent = ctx.dependencies["script"]
        characters: CharactersContent = ctx.dependencies["characters"]
        audio: AudioContent = ctx.dependencies["audio"]

        assets = prepare_scene_assets(script, characters, audio)
        if not assets:
            raise ServiceError(
                ErrorCode.VIDEO_COMPILATION_FAILED,
                "No scene has usable narration audio to compile",
                user_message="There is no narration audio to build a video from. Please re-run the audio stage.",
                retryable=False,
                technical_details={"scenes": len(script.scenes), "audio_files": len(audio.audio_files)},
            )

        render_settings = {**DEFAULT_RENDER_SETTINGS, **(ctx.options.get("render_settings") or {})}
        ffmpeg_command = build_ffmpeg_command(assets, render_settings)
        video = await self.invoke(
            ctx,
            lambda: self.capability.assemble(ctx.project.id, assets, render_settings),
            label="render",
        )

        illustrated = [visual.image_url for visual in characters.scenes if not _failed(visual.image_url, visual.error)]
        duration_seconds = video.duration or sum(float(asset["duration"]) for asset in assets)
        ctx.log.info(
            "video_compiled",
            scenes_compiled=len(assets),
            scenes_skipped=len(script.scenes) - len(assets),
            duration_seconds=duration_seconds,
        )
        return VideoContent(
            video_url=video.video_url,
            thumbnail_url=illustrated[0] if illustrated else video.thumbnail_url,
            duration=format_duration(duration_seconds),
            resolution=str(render_settings["resolution"]),
            format="mp4",
            file_size=video.file_size,
            scenes_compiled=len(assets),
            render_settings=render_settings,
            ffmpeg_command=ffmpeg_command,
        )

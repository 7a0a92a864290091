"""Media assembly client for the external render service.

Encoding itself happens outside this process. The client sends the ordered
scene assets, the render settings and the ffmpeg command the renderer should
run, and gets back the final video location.
"""

import shlex
from typing import Any
from uuid import UUID

import httpx

from animatevdo.clients.base import AssembledVideo, MediaAssemblyCapability, ProviderAPIError, ProviderClient


def build_ffmpeg_command(scenes: list[dict[str, Any]], render_settings: dict[str, Any]) -> str:
    """Build the ffmpeg invocation that renders ``scenes`` into one video.

    Each scene contributes an image input (Ken Burns zoom for its duration)
    and an audio input; video and audio streams are concatenated in order.
    """
    fps = int(render_settings.get("fps", 30))
    width, height = str(render_settings.get("resolution", "1920x1080")).split("x")
    inputs: list[str] = []
    filters: list[str] = []

    for index, scene in enumerate(scenes):
        inputs.append(f"-i {shlex.quote(scene['visual_url'])}")
        inputs.append(f"-i {shlex.quote(scene['audio_url'])}")
        frames = int(round(float(scene["duration"]) * fps))
        filters.append(
            f"[{index * 2}:v]scale={width}:{height},"
            f"zoompan=z='if(lte(zoom,1.0),1.5,max(1.001,zoom-0.0015))':"
            f"d={frames}:s={width}x{height}:fps={fps}[v{index}]"
        )

    count = len(scenes)
    filters.append("".join(f"[v{i}]" for i in range(count)) + f"concat=n={count}:v=1:a=0[outv]")
    filters.append("".join(f"[{i * 2 + 1}:a]" for i in range(count)) + f"concat=n={count}:v=0:a=1[outa]")

    return (
        f"ffmpeg {' '.join(inputs)} "
        f"-filter_complex \"{';'.join(filters)}\" "
        '-map "[outv]" -map "[outa]" '
        f"-c:v libx264 -b:v {render_settings.get('bitrate', '5000k')} -preset slow "
        "-c:a aac -b:a 192k -pix_fmt yuv420p output.mp4"
    )


class RenderServiceClient(ProviderClient, MediaAssemblyCapability):
    """Submits render jobs to the render service and waits for the result."""

    provider = "Render"
    requires_api_key = False

    def __init__(
        self,
        render_service_url: str,
        *,
        timeout: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(None, timeout=timeout, transport=transport)
        self.base_url = render_service_url.rstrip("/")

    async def assemble(
        self,
        project_id: UUID,
        scenes: list[dict[str, Any]],
        render_settings: dict[str, Any],
    ) -> AssembledVideo:
        response = await self._request(
            "POST",
            f"{self.base_url}/render",
            json={
                "project_id": str(project_id),
                "scenes": scenes,
                "render_settings": render_settings,
                "ffmpeg_command": build_ffmpeg_command(scenes, render_settings),
            },
        )
        payload = response.json()
        if payload.get("error"):
            # The renderer reports encoder failures in the body with a 200
            raise ProviderAPIError(self.provider, 500, f"ffmpeg: {payload['error']}")
        return AssembledVideo(
            video_url=payload["video_url"],
            thumbnail_url=payload.get("thumbnail_url"),
            duration=float(payload.get("duration", 0.0)),
            file_size=int(payload.get("file_size", 0)),
        )

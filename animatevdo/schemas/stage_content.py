"""Pydantic schemas for persisted StageResult content.

Each completed StageResult stores ``content`` as JSON. Stage Runners build
content through these models (``model_dump(mode="json")``) and validate the
prior stages' content they consume, so a hand-edited or truncated row is
reported as DATA_CORRUPTION instead of failing deep inside a stage.

Extra keys are preserved (``extra="allow"``) so older rows written with
additional fields still validate.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _Content(BaseModel):
    model_config = ConfigDict(extra="allow")


class ResearchContent(_Content):
    summary: str
    key_points: list[str] = Field(default_factory=list)
    sources: list[dict[str, Any]] = Field(default_factory=list)


class DialogueLine(_Content):
    character: str
    line: str


class ScriptScene(_Content):
    scene_number: int = Field(..., ge=1)
    title: str = ""
    description: str = ""
    narration: str = ""
    characters: list[str] = Field(default_factory=list)
    dialogue: list[DialogueLine] = Field(default_factory=list)
    duration: float = Field(default=30.0, ge=0)


class ScriptContent(_Content):
    title: str
    scenes: list[ScriptScene] = Field(..., min_length=1)
    duration_estimate: str = ""
    narration_style: str = "educational"
    target_audience: str = "general"
    tone: str = "informative"
    parse_fallback: bool = False


class CharacterImage(_Content):
    name: str
    description: str = ""
    style: str = ""
    image_url: str
    error: str | None = None


class SceneVisual(_Content):
    scene_number: int = Field(..., ge=1)
    description: str = ""
    image_url: str
    error: str | None = None


class CharactersContent(_Content):
    characters: list[CharacterImage] = Field(default_factory=list)
    scenes: list[SceneVisual] = Field(default_factory=list)
    style_guide: dict[str, Any] = Field(default_factory=dict)


class AudioFile(_Content):
    scene_number: int = Field(..., ge=1)
    audio_url: str
    duration: float = Field(..., ge=0)
    text: str = ""
    error: str | None = None


class AudioContent(_Content):
    audio_files: list[AudioFile] = Field(default_factory=list)
    voice_settings: dict[str, Any] = Field(default_factory=dict)
    total_duration: str = "0:00"
    total_duration_seconds: float = 0.0


class VideoContent(_Content):
    video_url: str
    thumbnail_url: str | None = None
    duration: str = "0:00"
    resolution: str = "1920x1080"
    format: str = "mp4"
    file_size: int = 0
    scenes_compiled: int = 0
    render_settings: dict[str, Any] = Field(default_factory=dict)
    ffmpeg_command: str | None = None


STAGE_CONTENT_MODELS: dict[str, type[_Content]] = {
    "research": ResearchContent,
    "script": ScriptContent,
    "characters": CharactersContent,
    "audio": AudioContent,
    "video": VideoContent,
}

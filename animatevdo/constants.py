"""Project-wide constants and mapping tables.

Stage keys are the string values of ``animatevdo.models.Stage``.
"""

from decimal import Decimal

# Fixed pipeline order; a project's stage pointer walks this list
STAGE_ORDER: tuple[str, ...] = ("research", "script", "characters", "audio", "video")

# Stage pointer value once the video stage has completed
PIPELINE_COMPLETE = "complete"

# Prior stages whose latest completed output a stage consumes
STAGE_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "research": (),
    "script": ("research",),
    "characters": ("script",),
    "audio": ("script",),
    "video": ("script", "characters", "audio"),
}

# Service names used for error classification and logs
STAGE_SERVICE_NAMES: dict[str, str] = {
    "research": "Research",
    "script": "Script Generation",
    "characters": "Character Design",
    "audio": "Voice Synthesis",
    "video": "Video Compilation",
}

# Default cost rate table: (service_type, model) -> (per 1k input, per 1k output, per request)
DEFAULT_COST_RATES: dict[tuple[str, str], tuple[Decimal, Decimal, Decimal]] = {
    ("research", "gpt-3.5-turbo"): (Decimal("0.0005"), Decimal("0.0015"), Decimal("0")),
    ("script", "gpt-4-turbo"): (Decimal("0.01"), Decimal("0.03"), Decimal("0")),
    ("characters", "dall-e-3"): (Decimal("0"), Decimal("0"), Decimal("0.04")),
    ("research", "claude-3-haiku"): (Decimal("0.00025"), Decimal("0.00125"), Decimal("0")),
    ("script", "claude-3-sonnet"): (Decimal("0.003"), Decimal("0.015"), Decimal("0")),
    ("audio", "elevenlabs-standard"): (Decimal("0"), Decimal("0"), Decimal("0.00018")),
    ("research", "tavily-search"): (Decimal("0"), Decimal("0"), Decimal("0.001")),
    ("research", "serper-search"): (Decimal("0"), Decimal("0"), Decimal("0.005")),
}

# Subscription plans: stories per month
PLAN_STORY_LIMITS: dict[str, int] = {
    "hobby": 5,
    "creator": 30,
    "studio": 100,
}
USAGE_WARNING_THRESHOLD = 0.8

# ElevenLabs defaults
DEFAULT_VOICE_ID = "21m00Tcm4TlvDq8ikWAM"
DEFAULT_VOICE_NAME = "Rachel"
DEFAULT_VOICE_SETTINGS: dict[str, float | bool] = {
    "stability": 0.5,
    "similarity_boost": 0.75,
    "style": 0.0,
    "use_speaker_boost": True,
}
NARRATION_WORDS_PER_MINUTE = 150
FAILED_AUDIO_DEFAULT_DURATION = 30.0

# Character stage bounds
MAX_CHARACTERS = 5
MAX_KEY_SCENES = 5

# Marker embedded in placeholder URLs of failed fan-out items
ERROR_MARKER = "ERROR"

# Video render defaults
DEFAULT_RENDER_SETTINGS: dict[str, object] = {
    "resolution": "1920x1080",
    "fps": 30,
    "codec": "h264",
    "bitrate": "5000k",
    "transitions": "fade",
    "watermark": True,
}
DEFAULT_SCENE_VISUAL = "https://placehold.co/1920x1080.png?text=Scene"

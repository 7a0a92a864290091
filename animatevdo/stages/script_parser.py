"""Best-effort parser from LLM script text to structured scenes.

LLM output is free text, so parsing is layered:

1. Structured: ``Scene <n>: <title>`` headers followed by ``Description:``,
   ``Narration:``, ``Visual:``, ``Characters:`` and ``NAME: line`` dialogue.
   Unlabelled lines inside a scene are appended to its narration. Scenes are
   numbered 1..N in order of appearance whatever the header says (LLMs
   start at 0 or repeat numbers).
2. Paragraphs: when no scene header is found, every paragraph longer than
   50 characters becomes a narrated scene.
3. Nothing usable: ``parse_script`` raises ScriptParseError.

``parse_script_with_fallback`` turns case 3 into a single generic scene about
the topic and marks the result with ``parse_fallback=True`` so callers and
the UI can tell a real script from the fallback.
"""

import re

from animatevdo.exceptions import ScriptParseError
from animatevdo.schemas.stage_content import DialogueLine, ScriptContent, ScriptScene
from animatevdo.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_SCENE_SECONDS = 30.0
MIN_PARAGRAPH_LENGTH = 50

_TITLE = re.compile(r"^\s*\**title\**\s*:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_AUDIENCE = re.compile(r"^\s*(?:target\s+)?audience\s*:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_TONE = re.compile(r"^\s*tone\s*:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_SCENE_HEADER = re.compile(r"^\s*[#*]*\s*scene\s+(\d+)\s*[:.\-]?\s*(.*?)[*#]*\s*$", re.IGNORECASE)
_FIELD = re.compile(r"^\s*(description|narration|visual|visuals|characters)\s*:\s*(.*)$", re.IGNORECASE)
_DIALOGUE = re.compile(r"^\s*([A-Z][A-Z .'\-]{1,40}):\s*(.+)$")


def format_duration(seconds: float) -> str:
    """Format seconds as ``m:ss``."""
    total = int(round(seconds))
    return f"{total // 60}:{total % 60:02d}"


def _match(pattern: re.Pattern, text: str, default: str) -> str:
    match = pattern.search(text)
    return match.group(1).strip().strip("*").strip() if match else default


def _title_case(name: str) -> str:
    return " ".join(part.capitalize() for part in name.split())


def _parse_scenes(text: str) -> list[ScriptScene]:
    scenes: list[ScriptScene] = []
    current: dict | None = None

    def flush() -> None:
        if current is not None:
            scenes.append(
                ScriptScene(
                    scene_number=len(scenes) + 1,
                    title=current["title"],
                    description=current["description"].strip(),
                    narration=" ".join(current["narration"]).strip(),
                    characters=current["characters"],
                    dialogue=current["dialogue"],
                    duration=DEFAULT_SCENE_SECONDS,
                    visuals=current["visuals"],
                )
            )

    for line in text.splitlines():
        header = _SCENE_HEADER.match(line)
        if header:
            flush()
            current = {
                "title": header.group(2).strip(),
                "description": "",
                "narration": [],
                "characters": [],
                "dialogue": [],
                "visuals": [],
            }
            continue

        if current is None or not line.strip():
            continue

        field = _FIELD.match(line)
        if field:
            name, value = field.group(1).lower(), field.group(2).strip()
            if name == "description":
                current["description"] = value
            elif name == "narration":
                current["narration"].append(value)
            elif name in ("visual", "visuals"):
                current["visuals"].append(value)
            else:
                current["characters"] = [c.strip() for c in value.split(",") if c.strip()]
            continue

        dialogue = _DIALOGUE.match(line)
        if dialogue:
            speaker = _title_case(dialogue.group(1))
            current["dialogue"].append(DialogueLine(character=speaker, line=dialogue.group(2).strip()))
            if speaker not in current["characters"]:
                current["characters"].append(speaker)
            continue

        current["narration"].append(line.strip())

    flush()
    return scenes


def _paragraph_scenes(text: str) -> list[ScriptScene]:
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if len(p.strip()) > MIN_PARAGRAPH_LENGTH]
    return [
        ScriptScene(
            scene_number=index,
            title=f"Scene {index}",
            description=f"Visual representation of: {paragraph[:50]}...",
            narration=paragraph,
            duration=DEFAULT_SCENE_SECONDS,
        )
        for index, paragraph in enumerate(paragraphs, start=1)
    ]


def parse_script(text: str, topic: str) -> ScriptContent:
    """Parse LLM script text.

    Args:
        text: Raw LLM output.
        topic: Project topic, used as the title when none is present.

    Returns:
        ScriptContent with at least one scene.

    Raises:
        ScriptParseError: If neither scene headers nor usable paragraphs exist.
    """
    scenes = _parse_scenes(text) or _paragraph_scenes(text)
    if not scenes:
        raise ScriptParseError("No scenes could be parsed from script text", raw_text=text)

    return ScriptContent(
        title=_match(_TITLE, text, topic),
        scenes=scenes,
        duration_estimate=format_duration(sum(scene.duration for scene in scenes)),
        narration_style="conversational",
        target_audience=_match(_AUDIENCE, text, "General audience"),
        tone=_match(_TONE, text, "Educational and engaging"),
    )


def fallback_script(topic: str) -> ScriptContent:
    """Single generic scene used when the LLM output cannot be parsed."""
    return ScriptContent(
        title=topic,
        scenes=[
            ScriptScene(
                scene_number=1,
                title=topic,
                description=f"An animated introduction to {topic}.",
                narration=f"Welcome! Today we are going to explore {topic}.",
                characters=["Narrator"],
                duration=DEFAULT_SCENE_SECONDS,
            )
        ],
        duration_estimate=format_duration(DEFAULT_SCENE_SECONDS),
        narration_style="conversational",
        target_audience="General audience",
        tone="Educational and engaging",
        parse_fallback=True,
    )


def parse_script_with_fallback(text: str, topic: str) -> ScriptContent:
    """``parse_script``, substituting ``fallback_script`` on ScriptParseError."""
    try:
        return parse_script(text, topic)
    except ScriptParseError as e:
        log.warning("script_parse_fallback", topic=topic, error=str(e), raw_text=e.raw_text[:200])
        return fallback_script(topic)

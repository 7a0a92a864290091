"""Characters stage: character designs and key scene illustrations.

Fan-out: one image generation call per character and per key scene. A
failed item keeps its slot with a placeholder image URL containing
``ERROR-<name>`` so one blocked image does not discard the rest. The stage
only fails when every single image failed.
"""

import asyncio
import re
from typing import Any

from animatevdo.clients.base import GeneratedImage, ImageCapability, ObjectStorage
from animatevdo.constants import MAX_CHARACTERS, MAX_KEY_SCENES
from animatevdo.exceptions import ServiceError
from animatevdo.models import Stage
from animatevdo.schemas.stage_content import CharacterImage, CharactersContent, SceneVisual, ScriptContent, ScriptScene
from animatevdo.services.stage_runner import StageContext, StageRunner, error_marker_url

CHARACTER_IMAGE_SIZE = "1024x1024"
SCENE_IMAGE_SIZE = "1792x1024"

ART_STYLES: tuple[tuple[tuple[str, ...], dict[str, Any]], ...] = (
    (
        ("history", "ancient", "war"),
        {
            "art_style": "Semi-realistic illustration with historical accuracy",
            "color_palette": ["#8B4513", "#D2691E", "#F4A460", "#FFE4B5", "#2F4F4F"],
            "visual_themes": ["Historical accuracy", "Period appropriate", "Educational"],
            "animation_notes": "Smooth transitions with educational overlays",
        },
    ),
    (
        ("science", "space", "technology"),
        {
            "art_style": "Modern, clean illustration with scientific accuracy",
            "color_palette": ["#000080", "#4169E1", "#00CED1", "#E0FFFF", "#FF6347"],
            "visual_themes": ["Scientific", "Futuristic", "Educational"],
            "animation_notes": "Dynamic animations with data visualizations",
        },
    ),
    (
        ("nature", "animal"),
        {
            "art_style": "Vibrant, nature-inspired illustration",
            "color_palette": ["#228B22", "#32CD32", "#FFD700", "#87CEEB", "#8B4513"],
            "visual_themes": ["Natural", "Organic", "Wildlife"],
            "animation_notes": "Smooth, nature-inspired movements",
        },
    ),
)

DEFAULT_ART_STYLE: dict[str, Any] = {
    "art_style": "Friendly, colorful cartoon illustration",
    "color_palette": ["#FF6B6B", "#4ECDC4", "#45B7D1", "#FFA07A", "#98D8C8"],
    "visual_themes": ["Friendly", "Engaging", "Educational"],
    "animation_notes": "Energetic animations with clear storytelling",
}

NARRATOR = {
    "name": "Narrator",
    "description": "Friendly and knowledgeable guide",
    "role": "Main narrator",
}


def select_art_style(topic: str) -> dict[str, Any]:
    """Style guide chosen from keywords in the topic."""
    lowered = topic.lower()
    for keywords, style in ART_STYLES:
        if any(keyword in lowered for keyword in keywords):
            return dict(style)
    return dict(DEFAULT_ART_STYLE)


def extract_characters(script: ScriptContent) -> list[dict[str, str]]:
    """Narrator plus every character named in the scenes, at most five."""
    characters = [dict(NARRATOR)]
    seen = {NARRATOR["name"].lower()}
    for scene in script.scenes:
        for name in scene.characters:
            if name.lower() in seen:
                continue
            seen.add(name.lower())
            characters.append(
                {
                    "name": name,
                    "description": f"Character in {scene.description or scene.title}",
                    "role": "Supporting character",
                }
            )
    return characters[:MAX_CHARACTERS]


def normalize_requested_characters(requested: list[Any]) -> list[dict[str, str]]:
    """Accept plain names or ``{name, description, style}`` objects."""
    characters = []
    for item in requested:
        if isinstance(item, str):
            characters.append({"name": item, "description": "", "role": "Character"})
        else:
            characters.append(
                {
                    "name": str(item["name"]),
                    "description": str(item.get("description", "")),
                    "role": str(item.get("role", "Character")),
                    "style": str(item.get("style", "")),
                }
            )
    return characters


def select_key_scenes(scenes: list[ScriptScene]) -> list[ScriptScene]:
    """Opening, middle (>4 scenes), quarter (>6 scenes) and closing scene, at most five."""
    if not scenes:
        return []

    picks = [0]
    if len(scenes) > 4:
        picks.append(len(scenes) // 2)
        if len(scenes) > 6:
            picks.append(len(scenes) // 4)
    if len(scenes) > 1:
        picks.append(len(scenes) - 1)

    unique = sorted(set(picks))
    return [scenes[index] for index in unique][:MAX_KEY_SCENES]


def build_character_prompt(character: dict[str, str], art_style: str, topic: str) -> str:
    return (
        f"Create a character design for an animated YouTube story about {topic}.\n\n"
        f"Character: {character['name']}\n"
        f"Description: {character.get('description') or 'Friendly narrator'}\n"
        f"Role: {character.get('role') or 'Narrator'}\n\n"
        "Style Requirements:\n"
        f"- {character.get('style') or art_style} art style\n"
        "- Suitable for family-friendly YouTube content\n"
        "- Clear, expressive features\n"
        "- Front-facing view with neutral expression\n"
        "- Simple background"
    )


def build_scene_prompt(scene: ScriptScene, art_style: str, topic: str) -> str:
    visuals = getattr(scene, "visuals", None) or []
    return (
        f"Create a scene illustration for an animated YouTube story about {topic}.\n\n"
        f"Scene: {scene.description or scene.title}\n"
        f"Visual Elements: {', '.join(visuals) if visuals else 'General scene'}\n\n"
        "Style Requirements:\n"
        f"- {art_style} art style\n"
        "- Widescreen composition (16:9)\n"
        "- Family-friendly, no text in the image"
    )


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "item"


class CharactersStage(StageRunner):
    """Options: ``characters`` (names or objects) and ``custom_prompts`` (name → overrides)."""

    stage = Stage.CHARACTERS

    def __init__(self, *, capability: ImageCapability, storage: ObjectStorage, **kwargs: Any):
        super().__init__(**kwargs)
        self.capability = capability
        self.storage = storage

    async def _store(self, ctx: StageContext, image: GeneratedImage, path: str) -> str:
        if image.data is None:
            return image.url or ""
        return await self.upload(ctx, lambda: self.storage.upload(path, image.data, image.content_type), path)

    async def _generate_character(
        self, ctx: StageContext, character: dict[str, str], art_style: str
    ) -> CharacterImage:
        prompt = build_character_prompt(character, art_style, ctx.project.topic)
        image = await self.invoke(
            ctx,
            lambda: self.capability.generate_image(prompt, CHARACTER_IMAGE_SIZE),
            model_hint="dall-e-3",
            label=character["name"],
        )
        path = f"{ctx.project.id}/characters/{_slug(character['name'])}.png"
        return CharacterImage(
            name=character["name"],
            description=character.get("description", ""),
            style=character.get("style") or art_style,
            image_url=await self._store(ctx, image, path),
            prompt=prompt,
        )

    async def _generate_scene(self, ctx: StageContext, scene: ScriptScene, art_style: str) -> SceneVisual:
        prompt = build_scene_prompt(scene, art_style, ctx.project.topic)
        image = await self.invoke(
            ctx,
            lambda: self.capability.generate_image(prompt, SCENE_IMAGE_SIZE),
            model_hint="dall-e-3",
            label=f"scene-{scene.scene_number}",
        )
        path = f"{ctx.project.id}/scenes/scene-{scene.scene_number}.png"
        return SceneVisual(
            scene_number=scene.scene_number,
            description=scene.description,
            image_url=await self._store(ctx, image, path),
            prompt=prompt,
        )

    async def execute(self, ctx: StageContext) -> CharactersContent:
        script: ScriptContent = ctx.dependencies["script"]
        style_guide = select_art_style(ctx.project.topic)
        art_style = style_guide["art_style"]

        requested = ctx.options.get("characters")
        characters = normalize_requested_characters(requested) if requested else extract_characters(script)
        custom_prompts: dict[str, dict[str, str]] = ctx.options.get("custom_prompts") or {}
        for character in characters:
            override = custom_prompts.get(character["name"], {})
            character.update({key: value for key, value in override.items() if value})

        key_scenes = select_key_scenes(script.scenes)
        # Character and scene images share one bound on concurrent image calls
        image_slots = asyncio.Semaphore(max(self.settings.max_concurrent_images, 1))

        def character_placeholder(character: dict[str, str], error: ServiceError) -> CharacterImage:
            return CharacterImage(
                name=character["name"],
                description=character.get("description", ""),
                style=character.get("style") or art_style,
                image_url=error_marker_url("image", character["name"], error.user_message),
                error=error.code.value,
            )

        def scene_placeholder(scene: ScriptScene, error: ServiceError) -> SceneVisual:
            return SceneVisual(
                scene_number=scene.scene_number,
                description=scene.description,
                image_url=error_marker_url("image", f"Scene-{scene.scene_number}", error.user_message, "1920x1080"),
                error=error.code.value,
            )

        character_result, scene_result = await asyncio.gather(
            self.fan_out(
                ctx,
                characters,
                lambda character: self._generate_character(ctx, character, art_style),
                character_placeholder,
                image_slots,
            ),
            self.fan_out(
                ctx,
                key_scenes,
                lambda scene: self._generate_scene(ctx, scene, art_style),
                scene_placeholder,
                image_slots,
            ),
        )

        errors = character_result.errors + scene_result.errors
        total = len(character_result.outputs) + len(scene_result.outputs)
        if total and len(errors) == total:
            raise errors[0]

        ctx.log.info(
            "character_designs_generated",
            characters=len(characters),
            scenes=len(key_scenes),
            failed_items=len(errors),
        )
        return CharactersContent(
            characters=character_result.outputs,
            scenes=scene_result.outputs,
            style_guide=style_guide,
        )

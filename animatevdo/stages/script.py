"""Script stage: turn research into a scene-by-scene story script."""

from typing import Any

from animatevdo.clients.base import ScriptCapability
from animatevdo.models import Stage
from animatevdo.schemas.stage_content import ResearchContent, ScriptContent
from animatevdo.services.stage_runner import StageContext, StageRunner
from animatevdo.stages.script_parser import parse_script_with_fallback


class ScriptStage(StageRunner):
    stage = Stage.SCRIPT

    def __init__(self, *, capability: ScriptCapability, **kwargs: Any):
        super().__init__(**kwargs)
        self.capability = capability

    async def execute(self, ctx: StageContext) -> ScriptContent:
        research: ResearchContent = ctx.dependencies["research"]
        topic = ctx.project.topic

        generation = await self.invoke(
            ctx,
            lambda: self.capability.generate_script(topic, research.model_dump(mode="json")),
            label="script",
        )
        script = parse_script_with_fallback(generation.text, topic)

        ctx.log.info(
            "script_parsed",
            scenes=len(script.scenes),
            parse_fallback=script.parse_fallback,
            model=generation.model,
        )
        return script

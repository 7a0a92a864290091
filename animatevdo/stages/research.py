"""Research stage: search the web for the topic and summarise it."""

from typing import Any

from animatevdo.clients.base import ResearchCapability
from animatevdo.models import Stage
from animatevdo.schemas.stage_content import ResearchContent
from animatevdo.services.stage_runner import StageContext, StageRunner


class ResearchStage(StageRunner):
    """Needs only the project topic (``options["topic"]`` overrides it)."""

    stage = Stage.RESEARCH

    def __init__(self, *, capability: ResearchCapability, **kwargs: Any):
        super().__init__(**kwargs)
        self.capability = capability

    async def execute(self, ctx: StageContext) -> ResearchContent:
        topic = ctx.options.get("topic") or ctx.project.topic
        findings = await self.invoke(ctx, lambda: self.capability.research(topic), label="research")
        ctx.log.info(
            "research_gathered",
            key_points=len(findings.key_points),
            sources=len(findings.sources),
        )
        return ResearchContent(
            summary=findings.summary,
            key_points=findings.key_points,
            sources=findings.sources,
        )

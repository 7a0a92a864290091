"""Search-and-summarize research capability.

``WebResearcher`` searches the web (Tavily, falling back to Serper), asks an
LLM (Anthropic, falling back to OpenAI) to summarise the results, and parses
the answer into summary, key points and sources.

An empty search is raised as "No search results ..." which the classifier
maps to a non-retryable research failure: repeating the same query will not
find anything new.
"""

import re

from animatevdo.clients.base import (
    ResearchCapability,
    ResearchFindings,
    SearchResult,
    TextGeneration,
)
from animatevdo.clients.llm import AnthropicClient, OpenAIClient
from animatevdo.clients.search import SerperClient, TavilyClient
from animatevdo.services.error_classifier import use_alternative_service

MAX_KEY_POINTS = 7
MAX_SOURCES = 5
SUMMARY_PARAGRAPHS = 3

_KEY_POINT_PATTERN = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+(.+)$")

RESEARCH_SYSTEM_PROMPT = (
    "You are a research assistant preparing material for a short animated educational story. "
    "Write a concise overview in a few short paragraphs, then list the most important facts "
    "as a numbered list."
)


class NoSearchResultsError(Exception):
    """Raised when every search provider came back empty."""


def parse_research_response(text: str, results: list[SearchResult]) -> ResearchFindings:
    """Split an LLM research answer into summary, key points and sources.

    Summary is the first three prose paragraphs; key points are numbered or
    bulleted lines (at most seven); sources are the first five search hits.
    """
    paragraphs = [block.strip() for block in re.split(r"\n\s*\n", text) if block.strip()]
    prose = [p for p in paragraphs if not _KEY_POINT_PATTERN.match(p.splitlines()[0])]
    summary = "\n\n".join(prose[:SUMMARY_PARAGRAPHS]) or text.strip()

    key_points = []
    for line in text.splitlines():
        match = _KEY_POINT_PATTERN.match(line)
        if match:
            key_points.append(match.group(1).strip())
        if len(key_points) == MAX_KEY_POINTS:
            break

    sources = [{"title": result.title, "url": result.url} for result in results[:MAX_SOURCES]]
    return ResearchFindings(summary=summary, key_points=key_points, sources=sources)


def _format_results(results: list[SearchResult]) -> str:
    return "\n\n".join(
        f"[{index}] {result.title} ({result.url})\n{result.content}"
        for index, result in enumerate(results, start=1)
    )


class WebResearcher(ResearchCapability):
    """Production research capability built from search and LLM clients."""

    def __init__(
        self,
        tavily: TavilyClient,
        serper: SerperClient,
        anthropic: AnthropicClient,
        openai: OpenAIClient,
    ):
        self.tavily = tavily
        self.serper = serper
        self.anthropic = anthropic
        self.openai = openai

    async def _search(self, topic: str) -> list[SearchResult]:
        results = await use_alternative_service(
            lambda: self.tavily.search(topic),
            lambda: self.serper.search(topic),
            "Research",
        )
        if not results and self.serper.api_key:
            results = await self.serper.search(topic)
        if not results:
            raise NoSearchResultsError(f"No search results for topic: {topic}")
        return results

    async def _summarize(self, topic: str, results: list[SearchResult]) -> TextGeneration:
        prompt = f"Topic: {topic}\n\nSearch results:\n{_format_results(results)}"
        return await use_alternative_service(
            lambda: self.anthropic.complete(prompt, system=RESEARCH_SYSTEM_PROMPT, model="claude-3-haiku-20240307"),
            lambda: self.openai.complete(prompt, system=RESEARCH_SYSTEM_PROMPT, model="gpt-3.5-turbo"),
            "Research",
        )

    async def research(self, topic: str) -> ResearchFindings:
        results = await self._search(topic)
        generation = await self._summarize(topic, results)
        findings = parse_research_response(generation.text, results)
        findings.model = generation.model
        findings.usage = generation.usage
        return findings

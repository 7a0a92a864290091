"""LLM-backed script generation capability."""

from typing import Any

from animatevdo.clients.base import ScriptCapability, TextGeneration
from animatevdo.clients.llm import AnthropicClient, OpenAIClient
from animatevdo.services.error_classifier import use_alternative_service

SCRIPT_SYSTEM_PROMPT = (
    "You write scripts for short animated educational stories for YouTube. "
    "Start with 'Title: <title>'. Then write 4 to 8 scenes, each starting with "
    "'Scene <n>: <scene title>', followed by 'Description:', 'Narration:', "
    "'Characters:' (comma separated) and optional 'CHARACTER NAME: line' dialogue."
)


def build_script_prompt(topic: str, research: dict[str, Any]) -> str:
    key_points = "\n".join(f"- {point}" for point in research.get("key_points", []))
    return (
        f"Topic: {topic}\n\n"
        f"Research summary:\n{research.get('summary', '')}\n\n"
        f"Key facts:\n{key_points}\n\n"
        "Write the story script now."
    )


class LLMScriptWriter(ScriptCapability):
    """Claude 3 Sonnet first, GPT-4 Turbo when Anthropic is unavailable."""

    def __init__(self, anthropic: AnthropicClient, openai: OpenAIClient):
        self.anthropic = anthropic
        self.openai = openai

    async def generate_script(self, topic: str, research: dict[str, Any]) -> TextGeneration:
        prompt = build_script_prompt(topic, research)
        return await use_alternative_service(
            lambda: self.anthropic.complete(
                prompt, system=SCRIPT_SYSTEM_PROMPT, model="claude-3-sonnet-20240229", max_tokens=3000
            ),
            lambda: self.openai.complete(
                prompt, system=SCRIPT_SYSTEM_PROMPT, model="gpt-4-turbo", max_tokens=3000
            ),
            "Script Generation",
        )

"""
LLM-generated analytics summaries.

Output is held to a strict schema and fails loudly on mismatch.
"""

import json
import re

from openai import AsyncOpenAI
from pydantic import ValidationError

from school_ops.config import Settings
from school_ops.schemas.analytics import InsightsPayload


SYSTEM_PROMPT = """You are a business analyst for a German language school.
You receive a JSON snapshot of revenue, outstanding balances and student payment statuses.
Produce 3-6 short, concrete insights and 1-3 recommended actions for the founders.
Focus on: {focus}

Output ONLY valid JSON matching this exact schema (no markdown, no extra text):
{{
  "summary": "one sentence",
  "insights": ["..."],
  "recommendations": ["..."]
}}"""

FOCUS = {
    "revenue": "revenue trend and currency mix",
    "collections": "outstanding balances, overdue and partial payers",
    "overview": "overall financial health",
}


class LLMResponseError(Exception):
    """The model returned nothing usable."""


class InsightsGenerator:
    def __init__(self, settings: Settings):
        self.settings = settings

    def _build_client(self) -> AsyncOpenAI:
        """Build the AsyncOpenAI client, optionally with a custom base URL."""
        kwargs: dict = {"api_key": self.settings.openai_api_key}
        if self.settings.openai_base_url:
            kwargs["base_url"] = self.settings.openai_base_url
        return AsyncOpenAI(**kwargs)

    async def generate(self, insight_type: str, snapshot: dict) -> InsightsPayload:
        """
        Summarize a revenue snapshot.
        Returns a strict InsightsPayload, raises LLMResponseError on mismatch.
        """
        client = self._build_client()
        system = SYSTEM_PROMPT.format(focus=FOCUS.get(insight_type, FOCUS["overview"]))

        response = await client.chat.completions.create(
            model=self.settings.openai_model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": json.dumps(snapshot, default=str)},
            ],
            temperature=0.2,
        )

        content = response.choices[0].message.content
        if not content:
            raise LLMResponseError("LLM returned empty response")

        try:
            data = json.loads(_strip_markdown_json(content))
            return InsightsPayload.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise LLMResponseError(f"LLM response did not match schema: {e}") from e


def _strip_markdown_json(text: str) -> str:
    """Remove ```json ... ``` wrapper if present."""
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    return text

from types import SimpleNamespace

import pytest

from school_ops.config import Settings
from school_ops.services.insights import InsightsGenerator, LLMResponseError, _strip_markdown_json


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _generator(monkeypatch, content) -> tuple[InsightsGenerator, FakeCompletions]:
    completions = FakeCompletions(content)
    generator = InsightsGenerator(Settings(openai_api_key="sk-test", openai_model="test-model"))
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    monkeypatch.setattr(generator, "_build_client", lambda: client)
    return generator, completions


async def test_generate_parses_fenced_json(monkeypatch):
    content = '```json\n{"summary": "Steady", "insights": ["EUR dominates"], "recommendations": []}\n```'
    generator, completions = _generator(monkeypatch, content)

    payload = await generator.generate("collections", {"revenue_eur": "600.00"})

    assert payload.summary == "Steady"
    assert payload.insights == ["EUR dominates"]
    request = completions.requests[0]
    assert request["model"] == "test-model"
    assert "outstanding balances" in request["messages"][0]["content"]
    assert '"revenue_eur": "600.00"' in request["messages"][1]["content"]


async def test_generate_rejects_empty_content(monkeypatch):
    generator, _ = _generator(monkeypatch, "")

    with pytest.raises(LLMResponseError, match="empty"):
        await generator.generate("overview", {})


async def test_generate_rejects_schema_mismatch(monkeypatch):
    generator, _ = _generator(monkeypatch, '{"summary": "x", "insights": []}')

    with pytest.raises(LLMResponseError, match="schema"):
        await generator.generate("overview", {})


async def test_generate_rejects_prose(monkeypatch):
    generator, _ = _generator(monkeypatch, "Revenue looks fine.")

    with pytest.raises(LLMResponseError):
        await generator.generate("revenue", {})


def test_strip_markdown_json():
    assert _strip_markdown_json('```\n{"a": 1}\n```') == '{"a": 1}'
    assert _strip_markdown_json('  {"a": 1} ') == '{"a": 1}'

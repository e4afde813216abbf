import asyncio
from types import SimpleNamespace

import pytest

from certify.ai_generator import DraftStatus, TemplateDraftAssistant, strip_code_fence


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))],
            usage=SimpleNamespace(total_tokens=42),
        )


@pytest.fixture
def assistant(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("AI_MAX_RETRIES", "0")
    return TemplateDraftAssistant()


def use_completions(assistant, completions):
    assistant._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))


def test_strip_code_fence():
    assert strip_code_fence("```html\n<h1>{{nome}}</h1>\n```") == "<h1>{{nome}}</h1>"
    assert strip_code_fence("<p>plain</p>") == "<p>plain</p>"


def test_prompt_lists_placeholders(assistant):
    prompt = assistant.build_prompt("Python course", ["nome", "curso"])
    assert "{{nome}}" in prompt
    assert "{{curso}}" in prompt
    assert "Python course" in prompt


def test_draft_template_detects_fields(assistant):
    completions = FakeCompletions(content="```html\n<h1>{{nome}}</h1><p>{{curso}}</p>\n```")
    use_completions(assistant, completions)

    result = asyncio.run(assistant.draft_template("Python course", ["nome", "curso"]))

    assert result.status == DraftStatus.SUCCESS
    assert result.document == "<h1>{{nome}}</h1><p>{{curso}}</p>"
    assert result.detected_fields == ["nome", "curso"]
    assert result.tokens_used == 42
    assert completions.calls[0]["model"] == assistant.model


def test_draft_template_reports_rate_limit(assistant):
    use_completions(assistant, FakeCompletions(error=RuntimeError("Rate limit reached")))

    result = asyncio.run(assistant.draft_template("Python course"))

    assert result.status == DraftStatus.QUOTA_EXCEEDED
    assert "1 attempts" in result.error_message


def test_draft_template_without_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    result = asyncio.run(TemplateDraftAssistant().draft_template("Python course"))
    assert result.status == DraftStatus.FAILED

"""Prompt rendering and the generation timeout boundary."""

from __future__ import annotations

import asyncio

import pytest

from conftest import ScriptedBackend, make_generator
from rss_digest.services.ai_service import (
    DELETE_TIMEOUT_S,
    AIServiceError,
    OpenCodeBackend,
    extract_text_parts,
    load_prompts,
    parse_model,
    render_prompt,
)
from rss_digest.utils.error_monitoring import GenerationTimeout


def test_parse_model_defaults_to_openai():
    assert parse_model("gpt-4.1") == {"providerID": "openai", "modelID": "gpt-4.1"}
    assert parse_model("anthropic/claude-x/variant") == {"providerID": "anthropic", "modelID": "claude-x/variant"}


def test_extract_text_parts_reads_parts_and_info_parts():
    assert extract_text_parts({"parts": [{"type": "text", "text": "a"}, {"type": "tool"}, {"content": "b"}]}) == "a\nb"
    assert extract_text_parts({"data": {"info": {"parts": [{"text": " c "}]}}}) == "c"
    assert extract_text_parts({"parts": "nope"}) == ""
    assert extract_text_parts(None) == ""


def test_render_prompt_orders_blocks():
    prompts = {
        "master_persona": "Persona in {language}.",
        "summary": {"system": "System.", "template": "Title: {title}"},
    }
    rendered = render_prompt(prompts, "summary", {"language": "English", "title": "X"}, ["Extra."])
    assert rendered == "Persona in English.\n\nSystem.\n\nExtra.\n\nTitle: X"


def test_render_prompt_reports_missing_template_and_fields():
    with pytest.raises(AIServiceError):
        render_prompt({}, "summary", {})
    with pytest.raises(AIServiceError):
        render_prompt({"summary": {"template": "{missing}"}}, "summary", {})


def test_packaged_prompts_render():
    prompts = load_prompts()
    assert prompts["parameters"]["temperatures"]["briefing"] == 0.6
    assert "briefing" in prompts and "summary" in prompts


@pytest.mark.asyncio
async def test_generate_times_out():
    class HangingBackend(ScriptedBackend):
        async def complete(self, prompt, temperature):
            await asyncio.sleep(1)
            return "late"

    generator = make_generator(HangingBackend(), timeout_s=0.05)
    with pytest.raises(GenerationTimeout):
        await generator.generate("prompt", purpose="summary")


@pytest.mark.asyncio
async def test_generate_passes_purpose_temperature_and_warms_once():
    seen = []

    class RecordingBackend(ScriptedBackend):
        async def complete(self, prompt, temperature):
            seen.append(temperature)
            return ""

    backend = RecordingBackend()
    generator = make_generator(backend)
    await generator.warmup()
    await generator.warmup()

    assert await generator.generate("p", purpose="briefing") == ""
    assert seen == [0.6]
    assert backend.warmups == 1


class FakeResponse:
    def __init__(self, status=200, payload=None, error=None):
        self.status = status
        self.payload = payload
        self.error = error

    async def __aenter__(self):
        if self.error is not None:
            raise self.error
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, content_type=None):
        return self.payload


class FakeSession:
    """Stands in for aiohttp.ClientSession; records each request and its kwargs."""

    closed = False

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def _next(self, method, url, kwargs):
        self.requests.append((method, url, kwargs))
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)

    def delete(self, url, **kwargs):
        return self._next("DELETE", url, kwargs)


@pytest.mark.asyncio
async def test_opencode_warmup_wraps_timeout():
    session = FakeSession([FakeResponse(error=asyncio.TimeoutError())])
    backend = OpenCodeBackend("http://127.0.0.1:4096/", "openai/gpt-4.1", session=session)

    with pytest.raises(AIServiceError, match="unreachable at http://127.0.0.1:4096"):
        await backend.warmup()


@pytest.mark.asyncio
async def test_opencode_complete_deletes_session_with_bounded_timeout():
    session = FakeSession([
        FakeResponse(payload={"id": "s1"}),
        FakeResponse(payload={"parts": [{"type": "text", "text": "ABSTRACT: ok"}]}),
        FakeResponse(status=204),
    ])
    backend = OpenCodeBackend("http://127.0.0.1:4096", "openai/gpt-4.1", agent="summarizer", session=session)

    assert await backend.complete("prompt", 0.4) == "ABSTRACT: ok"

    methods = [(method, url) for method, url, _ in session.requests]
    assert methods == [
        ("POST", "http://127.0.0.1:4096/session"),
        ("POST", "http://127.0.0.1:4096/session/s1/message"),
        ("DELETE", "http://127.0.0.1:4096/session/s1"),
    ]
    assert session.requests[1][2]["json"]["agent"] == "summarizer"
    assert session.requests[2][2]["timeout"].total == DELETE_TIMEOUT_S


def test_backends_name_their_provider():
    assert OpenCodeBackend("http://localhost:4096", "openai/gpt-4.1").provider == "opencode"
    assert make_generator(ScriptedBackend()).provider == "model"

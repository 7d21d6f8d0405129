import json

import httpx
import pytest

from dynamics_agent.domain.errors import ConfigurationError, ModelProviderError
from dynamics_agent.infrastructure.llm.anthropic_client import ModelClient, response_text
from dynamics_agent.infrastructure.observability.logging import metrics
from tests.conftest import completion


class Recorder:
    """Serves scripted responses and remembers the request bodies"""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.bodies = []
        self.headers = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        self.headers.append(request.headers)
        return self.responses.pop(0)


def _client(settings, recorder, sleeps=None):
    async def fake_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return ModelClient(settings, transport=httpx.MockTransport(recorder), sleep=fake_sleep)


@pytest.mark.asyncio
async def test_complete_sends_model_and_headers(settings):
    recorder = Recorder(httpx.Response(200, json=completion("hello")))
    client = _client(settings, recorder)

    response = await client.complete("system prompt", [{"role": "user", "content": "hi"}], max_tokens=64)

    assert response_text(response) == "hello"
    body = recorder.bodies[0]
    assert body["model"] == "claude-sonnet-4-20250514"
    assert body["max_tokens"] == 64
    assert body["system"] == "system prompt"
    assert "stream" not in body
    assert recorder.headers[0]["x-api-key"] == "test-key"
    assert recorder.headers[0]["anthropic-version"] == "2023-06-01"
    await client.aclose()


@pytest.mark.asyncio
async def test_rate_limit_waits_retry_after_capped(settings):
    sleeps = []
    recorder = Recorder(
        httpx.Response(429, headers={"retry-after": "600"}, text="slow down"),
        httpx.Response(200, json=completion("ok")),
    )
    client = _client(settings, recorder, sleeps)

    response = await client.complete("s", [{"role": "user", "content": "hi"}])

    assert response_text(response) == "ok"
    assert sleeps == [60.0]
    assert len(recorder.bodies) == 2
    assert metrics.metrics["model.rate_limited"] == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_rate_limit_without_header_uses_default_wait(settings):
    sleeps = []
    recorder = Recorder(httpx.Response(429), httpx.Response(200, json=completion("ok")))
    client = _client(settings, recorder, sleeps)

    await client.complete("s", [{"role": "user", "content": "hi"}])

    assert sleeps == [30.0]
    await client.aclose()


@pytest.mark.asyncio
async def test_second_rate_limit_is_final(settings):
    recorder = Recorder(httpx.Response(429, text="again"), httpx.Response(429, text="again"))
    client = _client(settings, recorder, [])

    with pytest.raises(ModelProviderError) as info:
        await client.complete("s", [{"role": "user", "content": "hi"}])

    assert info.value.status_code == 429
    await client.aclose()


@pytest.mark.asyncio
async def test_overload_switches_to_fallback_model(settings):
    recorder = Recorder(
        httpx.Response(529, text="overloaded"),
        httpx.Response(200, json=completion("ok", model="claude-3-5-haiku-20241022")),
    )
    client = _client(settings, recorder)

    await client.complete("s", [{"role": "user", "content": "hi"}])

    assert [b["model"] for b in recorder.bodies] == ["claude-sonnet-4-20250514", "claude-3-5-haiku-20241022"]
    assert metrics.metrics["model.fallback"] == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(settings):
    recorder = Recorder(httpx.Response(500, text="boom"))
    client = _client(settings, recorder)

    with pytest.raises(ModelProviderError, match=r"Claude API error \(500\): boom"):
        await client.complete("s", [{"role": "user", "content": "hi"}])

    assert len(recorder.bodies) == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_stream_yields_bytes_and_retries_on_overload(settings):
    payload = b'event: message_stop\ndata: {"type": "message_stop"}\n\n'
    recorder = Recorder(httpx.Response(529, text="overloaded"), httpx.Response(200, content=payload))
    client = _client(settings, recorder)

    chunks = [chunk async for chunk in client.stream_message("s", [{"role": "user", "content": "hi"}], tools=[{"name": "search"}])]

    assert b"".join(chunks) == payload
    assert recorder.bodies[0]["stream"] is True
    assert recorder.bodies[0]["tools"] == [{"name": "search"}]
    assert recorder.bodies[1]["model"] == "claude-3-5-haiku-20241022"
    await client.aclose()


@pytest.mark.asyncio
async def test_missing_api_key(settings):
    settings = settings.model_copy(update={"anthropic_api_key": None})
    client = _client(settings, Recorder())

    with pytest.raises(ConfigurationError):
        await client.complete("s", [{"role": "user", "content": "hi"}])
    await client.aclose()


def test_response_text_ignores_non_text_blocks():
    response = {"content": [
        {"type": "text", "text": "a"},
        {"type": "tool_use", "id": "t", "name": "search", "input": {}},
        {"type": "text", "text": "b"},
    ]}

    assert response_text(response) == "ab"

"""
Tests for the streaming completion adapter.
"""

from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.relay.config import get_config
from src.relay.conversation import Role, Turn
from src.relay.exceptions import UpstreamStreamError
from src.relay.llm import CompletionStream, validate_model


def _chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


def _client(stream=None, error=None):
    create = AsyncMock(return_value=stream, side_effect=error)
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


async def _chunks(*items, error=None):
    for item in items:
        yield item
    if error is not None:
        raise error


TRANSCRIPT = [
    Turn(role=Role.SYSTEM, content="Be brief."),
    Turn(role=Role.USER, content="Hello?"),
]


@pytest.mark.asyncio
async def test_stream_yields_text_deltas_in_order():
    client = _client(_chunks(_chunk("Hel"), _chunk("lo. "), _chunk("Bye")))
    completion = CompletionStream(get_config(), client=client)

    fragments = [f async for f in completion.stream(TRANSCRIPT)]

    assert fragments == ["Hel", "lo. ", "Bye"]


@pytest.mark.asyncio
async def test_stream_sends_full_transcript_with_streaming():
    client = _client(_chunks())
    completion = CompletionStream(get_config(), client=client)

    _ = [f async for f in completion.stream(TRANSCRIPT)]

    kwargs = client.chat.completions.create.await_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["stream"] is True
    assert kwargs["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Hello?"},
    ]
    assert "temperature" not in kwargs


@pytest.mark.asyncio
async def test_stream_accepts_message_dicts():
    client = _client(_chunks(_chunk("ok")))
    completion = CompletionStream(get_config(), client=client)

    messages = [{"role": "system", "content": "x"}, {"role": "user", "content": "y"}]
    _ = [f async for f in completion.stream(messages)]

    assert client.chat.completions.create.await_args.kwargs["messages"] == messages


@pytest.mark.asyncio
async def test_stream_skips_empty_and_choiceless_chunks():
    stream = _chunks(
        SimpleNamespace(choices=[]),
        _chunk(None),
        _chunk(""),
        _chunk("Hi."),
    )
    completion = CompletionStream(get_config(), client=_client(stream))

    fragments = [f async for f in completion.stream(TRANSCRIPT)]

    assert fragments == ["Hi."]


@pytest.mark.asyncio
async def test_request_failure_raises_upstream_error():
    completion = CompletionStream(get_config(), client=_client(error=RuntimeError("401")))

    with pytest.raises(UpstreamStreamError):
        async for _ in completion.stream(TRANSCRIPT):
            pass


@pytest.mark.asyncio
async def test_mid_stream_drop_raises_after_partial_output():
    stream = _chunks(_chunk("First. "), error=ConnectionResetError("reset"))
    completion = CompletionStream(get_config(), client=_client(stream))

    received = []
    with pytest.raises(UpstreamStreamError) as exc_info:
        async for fragment in completion.stream(TRANSCRIPT):
            received.append(fragment)

    assert received == ["First. "]
    assert isinstance(exc_info.value.__cause__, ConnectionResetError)


def test_groq_provider_uses_groq_model():
    config = get_config()
    groq = replace(config, llm_provider="groq", groq_api_key="gk", groq_model="llama-3.3-70b-versatile")

    completion = CompletionStream(groq, client=_client())

    assert completion.model == "llama-3.3-70b-versatile"
    assert groq.llm_base_url == "https://api.groq.com/openai/v1"


class TestValidateModel:
    """Startup model validation against GET /models."""

    def _patch_transport(self, handler):
        real_client = httpx.AsyncClient

        def factory(*args, **kwargs):
            return real_client(transport=httpx.MockTransport(handler))

        return patch("src.relay.llm.httpx.AsyncClient", side_effect=factory)

    @pytest.mark.asyncio
    async def test_model_found(self):
        def handler(request):
            assert request.url.path.endswith("/models")
            assert request.headers["Authorization"] == "Bearer key"
            return httpx.Response(200, json={"data": [{"id": "gpt-4o-mini"}]})

        with self._patch_transport(handler):
            assert await validate_model("key", "gpt-4o-mini", "https://api.openai.com/v1") is True

    @pytest.mark.asyncio
    async def test_model_missing_exits(self):
        def handler(request):
            return httpx.Response(200, json={"data": [{"id": "other"}]})

        with self._patch_transport(handler):
            with pytest.raises(SystemExit):
                await validate_model("key", "gpt-4o-mini", "https://api.openai.com/v1")

    @pytest.mark.asyncio
    async def test_bad_status_exits(self):
        def handler(request):
            return httpx.Response(401, text="unauthorized")

        with self._patch_transport(handler):
            with pytest.raises(SystemExit):
                await validate_model("key", "gpt-4o-mini", "https://api.openai.com/v1")

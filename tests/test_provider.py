# Tests for the echo and OpenAI-compatible model providers.
# Created: 2026-10-18

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from lmbridge.bridge.cancellation import CancellationToken
from lmbridge.bridge.provider import (
    ChatMessage,
    EchoProvider,
    ModelFilter,
    ModelInfo,
    OpenAIProvider,
    create_provider,
)
from lmbridge.errors import LanguageModelError
from fakes import make_settings


async def _collect(response) -> list[str]:
    return [fragment async for fragment in response.text]


class TestModelFilter:
    def test_empty_filter_matches_everything(self):
        assert ModelFilter().matches(ModelInfo("a", "v"))

    def test_all_set_fields_must_match(self):
        model = ModelInfo("mock:gpt", "mock", "gpt", "1")
        assert ModelFilter(vendor="mock", family="gpt").matches(model)
        assert not ModelFilter(vendor="mock", family="llama").matches(model)

    def test_summary_shape(self):
        assert ModelInfo("a", "v", "f", "1", 10).summary() == {
            "id": "a",
            "vendor": "v",
            "family": "f",
            "version": "1",
            "maxInputTokens": 10,
        }


class TestEchoProvider:
    @pytest.mark.asyncio
    async def test_streams_last_user_message(self):
        provider = EchoProvider()
        messages = [ChatMessage.user("first"), ChatMessage.assistant("x"), ChatMessage.user("hello big world")]
        model = (await provider.select_models())[0]
        response = await provider.send_request(model, messages, None, CancellationToken())
        assert await _collect(response) == ["hello", " big", " world"]

    @pytest.mark.asyncio
    async def test_max_output_tokens_limits_words(self):
        provider = EchoProvider()
        model = (await provider.select_models())[0]
        response = await provider.send_request(
            model,
            [ChatMessage.user("a b c d")],
            {"modelOptions": {"maxOutputTokens": 2}},
            CancellationToken(),
        )
        assert await _collect(response) == ["a", " b"]

    @pytest.mark.asyncio
    async def test_stops_when_cancelled(self):
        provider = EchoProvider()
        token = CancellationToken()
        token.cancel()
        model = (await provider.select_models())[0]
        response = await provider.send_request(model, [ChatMessage.user("a b")], None, token)
        assert await _collect(response) == []

    @pytest.mark.asyncio
    async def test_selector(self):
        models = await EchoProvider().select_models(ModelFilter(family="echo-large"))
        assert [m.id for m in models] == ["echo:large"]


class _FakeStream:
    def __init__(self, deltas):
        self._deltas = deltas
        self.closed = False

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for delta in self._deltas:
            choices = [] if delta is None else [SimpleNamespace(delta=SimpleNamespace(content=delta))]
            yield SimpleNamespace(choices=choices)

    async def close(self):
        self.closed = True


def _openai_client(stream=None, create_error=None):
    client = MagicMock()
    client.models.list = AsyncMock(
        return_value=SimpleNamespace(
            data=[SimpleNamespace(id="gpt-4o", owned_by="openai"), SimpleNamespace(id="local", owned_by=None)]
        )
    )
    client.chat.completions.create = AsyncMock(return_value=stream, side_effect=create_error)
    return client


def _status_error(cls, status):
    request = httpx.Request("POST", "http://upstream/v1/chat/completions")
    return cls("upstream says no", response=httpx.Response(status, request=request), body=None)


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_lists_models(self):
        provider = OpenAIProvider(client=_openai_client())
        models = await provider.select_models()
        assert [(m.id, m.vendor) for m in models] == [("gpt-4o", "openai"), ("local", "openai")]
        assert await provider.select_models(ModelFilter(id="local")) == [models[1]]

    @pytest.mark.asyncio
    async def test_streams_deltas_and_maps_options(self):
        stream = _FakeStream(["Hel", None, "", "lo"])
        client = _openai_client(stream)
        provider = OpenAIProvider(client=client)

        response = await provider.send_request(
            ModelInfo("gpt-4o", "openai"),
            [ChatMessage.user("hi")],
            {"modelOptions": {"temperature": 0.3, "maxOutputTokens": 5}},
            CancellationToken(),
        )
        assert await _collect(response) == ["Hel", "lo"]
        assert stream.closed

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
        assert kwargs["stream"] is True
        assert kwargs["temperature"] == 0.3
        assert kwargs["max_tokens"] == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "cls,status,code",
        [
            (openai.RateLimitError, 429, "quota_exceeded"),
            (openai.NotFoundError, 404, "model_not_found"),
            (openai.PermissionDeniedError, 403, "not_allowed"),
            (openai.InternalServerError, 500, "unknown"),
        ],
    )
    async def test_errors_become_language_model_errors(self, cls, status, code):
        provider = OpenAIProvider(client=_openai_client(create_error=_status_error(cls, status)))
        with pytest.raises(LanguageModelError) as exc_info:
            await provider.send_request(
                ModelInfo("gpt-4o", "openai"), [ChatMessage.user("hi")], None, CancellationToken()
            )
        assert exc_info.value.code == code


class TestCreateProvider:
    def test_echo_by_default(self):
        assert isinstance(create_provider(make_settings()), EchoProvider)

    def test_openai(self):
        provider = create_provider(
            make_settings(provider="openai", openai_base_url="http://localhost:1234/v1", openai_api_key="k")
        )
        assert isinstance(provider, OpenAIProvider)

# Tests for the MCP sidecar tools and their wiring onto an MCP server.
# Created: 2026-10-18

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from mcp.shared.memory import create_connected_server_and_client_session

from fakes import OTHER_MODEL, ScriptedProvider, make_settings
from lmbridge.bridge.server import create_bridge_app
from lmbridge.errors import BridgeError
from lmbridge.proxy.client import BridgeClient, ChatResult
from lmbridge.sidecar import (
    CHAT_TOOL,
    LIST_MODELS_TOOL,
    SidecarTools,
    bridge_chat_payload,
    build_error_result,
    create_sidecar_server,
)

MODELS = [
    {"id": "m1", "vendor": "acme", "family": "gpt", "version": "1"},
    {"id": "m2", "vendor": "acme", "family": "llama", "version": "3"},
    {"id": "m3", "vendor": "other", "family": "gpt", "version": "2"},
]


def _stub_client(models=MODELS, chat=None) -> MagicMock:
    client = MagicMock()
    client.list_models = AsyncMock(return_value=list(models))

    async def default_chat(payload, handlers):
        await handlers.on_metadata({"model": {"id": "stub"}})
        await handlers.on_chunk("partial")
        await handlers.on_done({"status": "completed"})
        return ChatResult(
            status="completed",
            received=0,
            output="partial",
            stats={"chunks": 1, "outputChars": 7},
        )

    client.chat = AsyncMock(side_effect=chat or default_chat)
    return client


class _Progress:
    def __init__(self):
        self.messages: list[str] = []

    async def __call__(self, message: str) -> None:
        self.messages.append(message)


class TestListModels:
    """Model listing filters by vendor and family and returns structured data."""

    @pytest.mark.asyncio
    async def test_filters(self):
        tools = SidecarTools(_stub_client())

        result = await tools.list_models(vendor="acme", family="gpt")

        assert result.content[0].text == "Returned 1 model."
        assert result.structuredContent == {"models": [MODELS[0]]}
        assert not result.isError

    @pytest.mark.asyncio
    async def test_no_filters_returns_all(self):
        result = await SidecarTools(_stub_client()).list_models()
        assert result.content[0].text == "Returned 3 models."
        assert len(result.structuredContent["models"]) == 3

    @pytest.mark.asyncio
    async def test_no_match(self):
        result = await SidecarTools(_stub_client()).list_models(vendor="nobody")
        assert result.content[0].text == "No models matched the provided filters."
        assert result.structuredContent == {"models": []}

    @pytest.mark.asyncio
    async def test_bridge_error(self):
        client = _stub_client()
        client.list_models.side_effect = BridgeError("Bridge service unavailable", status_code=503)

        result = await SidecarTools(client).list_models()

        assert result.isError is True
        assert result.content[0].text == "Bridge service unavailable"
        assert result.structuredContent is None


class TestChat:
    """Chat forwards to the bridge and reports chunks as progress."""

    @pytest.mark.asyncio
    async def test_progress_and_result(self):
        client = _stub_client()
        progress = _Progress()

        result = await SidecarTools(client).chat("stream", {"id": "m1", "vendor": ""}, progress)

        assert progress.messages == ["partial", "Status: completed; Details: 7 chars, 1 chunks"]
        assert result.content[0].text == "partial"
        assert result.structuredContent == {
            "status": "completed",
            "received": 0,
            "output": "partial",
            "metadata": {"model": {"id": "stub"}},
            "stats": {"chunks": 1, "outputChars": 7},
        }
        payload = client.chat.await_args.args[0]
        assert payload == {"prompt": "stream", "model": {"id": "m1"}}

    @pytest.mark.asyncio
    async def test_bridge_error_result(self):
        async def fail(payload, handlers):
            await handlers.on_error({"statusCode": 403, "message": "Denied"})
            raise BridgeError("Denied", status_code=403, details={"reason": "no-access"})

        progress = _Progress()
        result = await SidecarTools(_stub_client(chat=fail)).chat("hi", None, progress)

        assert result.isError is True
        assert "Denied" in result.content[0].text
        assert '"reason": "no-access"' in result.content[0].text
        assert result.structuredContent == {"details": {"reason": "no-access"}}
        assert progress.messages == ["Denied", "Status: failed (Denied)"]

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        async def cancelled(payload, handlers):
            raise asyncio.CancelledError()

        client = _stub_client(chat=cancelled)
        with pytest.raises(asyncio.CancelledError):
            await SidecarTools(client).chat("hi")

    def test_payload_keeps_known_selector_fields(self):
        assert bridge_chat_payload("hi", None) == {"prompt": "hi", "model": None}
        assert bridge_chat_payload("hi", {"family": "gpt", "colour": "red"}) == {
            "prompt": "hi",
            "model": {"family": "gpt"},
        }


class TestBuildErrorResult:
    def test_foreign_exception(self):
        result = build_error_result(RuntimeError("boom"))
        assert result.isError is True
        assert result.content[0].text == "boom"
        assert result.structuredContent is None

    def test_detail_list_summarized(self):
        error = BridgeError(
            "Invalid request sent to bridge",
            status_code=400,
            details=[{"path": "prompt", "message": "too short"}],
        )
        result = build_error_result(error)
        assert result.content[0].text == "Invalid request sent to bridge\n\n- prompt: too short"
        assert result.structuredContent == {"details": [{"path": "prompt", "message": "too short"}]}


def _bridge_client(provider, bridge_token=None) -> BridgeClient:
    bridge = create_bridge_app(make_settings(auth_token=bridge_token), provider)
    return BridgeClient("http://bridge", transport=httpx.ASGITransport(app=bridge))


class TestMcpServer:
    """The tools served over an in-memory MCP session against a real bridge app."""

    @pytest.mark.asyncio
    async def test_lists_both_tools(self):
        server = create_sidecar_server(_bridge_client(ScriptedProvider()))
        async with create_connected_server_and_client_session(server) as session:
            listed = await session.list_tools()
        assert {tool.name for tool in listed.tools} == {LIST_MODELS_TOOL, CHAT_TOOL}

    @pytest.mark.asyncio
    async def test_list_models_by_family(self):
        server = create_sidecar_server(_bridge_client(ScriptedProvider()))
        async with create_connected_server_and_client_session(server) as session:
            result = await session.call_tool(LIST_MODELS_TOOL, {"family": "llama"})
        assert not result.isError
        assert [m["id"] for m in result.structuredContent["models"]] == ["mock:llama"]

    @pytest.mark.asyncio
    async def test_chat_streams_progress(self):
        provider = ScriptedProvider(["Hel", "lo"])
        server = create_sidecar_server(_bridge_client(provider))
        received = []

        async def on_progress(progress, total, message):
            received.append((progress, message))

        async with create_connected_server_and_client_session(server) as session:
            result = await session.call_tool(
                CHAT_TOOL,
                {"prompt": "hi", "model": {"id": "mock:llama"}},
                progress_callback=on_progress,
            )

        assert result.content[0].text == "Hello"
        assert result.structuredContent["status"] == "completed"
        assert result.structuredContent["metadata"]["model"]["id"] == "mock:llama"
        assert received == [
            (1, "Hel"),
            (2, "lo"),
            (3, "Status: completed; Details: 5 chars, 2 chunks"),
        ]
        assert provider.requests[0][0] == OTHER_MODEL

    @pytest.mark.asyncio
    async def test_bridge_auth_failure_is_error_result(self):
        server = create_sidecar_server(_bridge_client(ScriptedProvider(), bridge_token="secret"))
        async with create_connected_server_and_client_session(server) as session:
            result = await session.call_tool(CHAT_TOOL, {"prompt": "hi"})
        assert result.isError is True
        assert result.content[0].text == "Bridge authentication failed: Unauthorized"

# MCP sidecar: bridge chat and model listing as MCP tools over stdio.
# Created: 2026-10-18
#
# Each tool call goes through BridgeClient. When the MCP client cancels a
# request the handler task is cancelled, which closes the bridge stream and
# ends the bridge session as cancelled.

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from lmbridge import __version__
from lmbridge.config import Settings, get_settings
from lmbridge.errors import coerce_bridge_error, summarize_error_details
from lmbridge.proxy.client import BridgeClient, ChatHandlers

logger = logging.getLogger(__name__)

LIST_MODELS_TOOL = "bridge.listModels"
CHAT_TOOL = "bridge.chat"

MODEL_FIELDS = ("id", "vendor", "family", "version")

Progress = Callable[[str], Awaitable[None]]

TOOLS = [
    types.Tool(
        name=LIST_MODELS_TOOL,
        title="List Bridge Models",
        description="Retrieve the language models exposed by the bridge.",
        inputSchema={
            "type": "object",
            "properties": {
                "vendor": {"type": "string"},
                "family": {"type": "string"},
            },
        },
    ),
    types.Tool(
        name=CHAT_TOOL,
        title="Send Chat Prompt",
        description="Forward a prompt to the bridge and return the completion.",
        inputSchema={
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "minLength": 1},
                "model": {
                    "type": "object",
                    "properties": {name: {"type": "string"} for name in MODEL_FIELDS},
                },
            },
            "required": ["prompt"],
        },
    ),
]


def _text(text: str) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=text)]


async def _no_progress(message: str) -> None:
    return None


def build_error_result(error: BaseException) -> types.CallToolResult:
    """``isError`` tool result with the message and a summary of any details."""
    normalized = coerce_bridge_error(error)
    lines = [normalized.message]
    summary = summarize_error_details(normalized.details)
    if summary:
        lines.extend(["", summary])
    return types.CallToolResult(
        content=_text("\n".join(lines).strip()),
        structuredContent={"details": normalized.details} if normalized.details else None,
        isError=True,
    )


def bridge_chat_payload(prompt: str, model: dict[str, Any] | None) -> dict[str, Any]:
    selector = {k: v for k, v in (model or {}).items() if k in MODEL_FIELDS and v}
    return {"prompt": prompt, "model": selector or None}


class SidecarTools:
    """Tool bodies, kept apart from the MCP plumbing."""

    def __init__(self, client: BridgeClient):
        self.client = client

    async def list_models(
        self, vendor: str | None = None, family: str | None = None
    ) -> types.CallToolResult:
        try:
            models = await self.client.list_models()
        except Exception as exc:
            logger.warning("Listing bridge models failed: %s", exc)
            return build_error_result(exc)

        filtered = [
            m
            for m in models
            if (not vendor or m.get("vendor") == vendor)
            and (not family or m.get("family") == family)
        ]
        if filtered:
            summary = f"Returned {len(filtered)} model{'' if len(filtered) == 1 else 's'}."
        else:
            summary = "No models matched the provided filters."
        return types.CallToolResult(content=_text(summary), structuredContent={"models": filtered})

    async def chat(
        self,
        prompt: str,
        model: dict[str, Any] | None = None,
        progress: Progress | None = None,
    ) -> types.CallToolResult:
        notify = progress or _no_progress
        latest_status = "running"
        latest_metadata: Any = None

        async def on_metadata(metadata: Any) -> None:
            nonlocal latest_metadata
            latest_metadata = metadata

        async def on_done(payload: dict[str, str]) -> None:
            nonlocal latest_status
            latest_status = payload["status"]

        async def on_error(payload: dict[str, Any]) -> None:
            await notify(payload["message"])

        handlers = ChatHandlers(
            on_metadata=on_metadata, on_chunk=notify, on_done=on_done, on_error=on_error
        )
        try:
            result = await self.client.chat(bridge_chat_payload(prompt, model), handlers)
        except Exception as exc:
            normalized = coerce_bridge_error(exc)
            logger.warning("Bridge chat failed (%s): %s", normalized.status_code, normalized.message)
            await notify(f"Status: failed ({normalized.message})")
            return build_error_result(exc)

        status = result.status or latest_status
        details = []
        if result.stats and result.stats.get("outputChars"):
            details.append(f"{result.stats['outputChars']} chars")
        if result.stats and result.stats.get("chunks"):
            details.append(f"{result.stats['chunks']} chunks")
        summary = f"Status: {status}"
        if details:
            summary += f"; Details: {', '.join(details)}"
        await notify(summary)

        return types.CallToolResult(
            content=_text(result.output or ""),
            structuredContent={
                "status": status,
                "received": result.received,
                "output": result.output,
                "metadata": result.metadata if result.metadata is not None else latest_metadata,
                "stats": result.stats,
            },
        )


def _progress_reporter(server: Server) -> Progress:
    """Progress callback bound to the current request, or a no-op without a token."""
    ctx = server.request_context
    token = ctx.meta.progressToken if ctx.meta else None
    if token is None:
        return _no_progress
    count = 0

    async def report(message: str) -> None:
        nonlocal count
        if not message.strip():
            return
        count += 1
        try:
            await ctx.session.send_progress_notification(
                token, count, message=message, related_request_id=ctx.request_id
            )
        except Exception:
            logger.debug("Dropped progress notification", exc_info=True)

    return report


def create_sidecar_server(client: BridgeClient) -> Server:
    tools = SidecarTools(client)
    server: Server = Server("lmbridge-sidecar", version=__version__)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        if name == LIST_MODELS_TOOL:
            return await tools.list_models(arguments.get("vendor"), arguments.get("family"))
        if name == CHAT_TOOL:
            return await tools.chat(
                arguments["prompt"], arguments.get("model"), _progress_reporter(server)
            )
        raise ValueError(f"Unknown tool: {name}")

    return server


async def serve_stdio(settings: Settings) -> None:
    client = BridgeClient.from_settings(settings)
    server = create_sidecar_server(client)
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await client.aclose()


def run_sidecar(settings: Settings | None = None) -> None:
    """Run the MCP sidecar on stdin/stdout until the client hangs up."""
    settings = settings or get_settings()
    logger.info("MCP sidecar forwarding to %s", settings.bridge_url)
    try:
        asyncio.run(serve_stdio(settings))
    except Exception as exc:
        normalized = coerce_bridge_error(exc)
        logger.error("Fatal MCP sidecar error: %s", normalized.message)
        if normalized.details:
            logger.error("Details: %s", normalized.details)
        raise SystemExit(1) from exc

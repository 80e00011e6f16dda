"""Request mapping from the Ollama and OpenAI dialects onto bridge chat payloads.

The bridge only knows ``user`` and ``assistant`` turns, so system messages
are folded into the next turn as a ``System:`` prefix and tool output is
passed as a ``Tool:`` user turn.  OpenAI features the bridge cannot honour
(``n > 1``, tools, structured output) are rejected instead of ignored.
"""

from __future__ import annotations

import math
import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from lmbridge.errors import ValidationError


class OpenAIRequestError(ValidationError):
    """400 rendered in the OpenAI ``{error: {...}}`` shape."""

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.code = code


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


class OllamaMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: str = ""


class OllamaGenerateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str = ""
    prompt: str | None = None
    system: str | None = None
    stream: bool = True
    options: dict[str, Any] | None = None


class OllamaChatRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str = ""
    messages: list[OllamaMessage] = Field(default_factory=list)
    stream: bool = True
    options: dict[str, Any] | None = None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def map_ollama_options(options: dict[str, Any] | None) -> dict[str, Any] | None:
    """Keep ``temperature``; ``num_predict`` becomes ``maxOutputTokens`` (>= 1)."""
    if not options:
        return None
    out: dict[str, Any] = {}
    if _is_number(options.get("temperature")):
        out["temperature"] = options["temperature"]
    if _is_number(options.get("num_predict")):
        out["maxOutputTokens"] = max(1, math.floor(options["num_predict"]))
    return out or None


def fold_system_into_prompt(system: str | None, prompt: str | None) -> str | None:
    if not system:
        return prompt
    sys_text = system.strip()
    if not prompt:
        return f"System: {sys_text}" if sys_text else None
    return f"System: {sys_text}\n\n{prompt}" if sys_text else prompt


def map_chat_messages(messages: list[tuple[str, str]]) -> list[dict[str, str]]:
    """Map ``(role, content)`` pairs onto bridge messages.

    Consecutive system messages are buffered and prefixed to the next turn;
    a trailing system buffer becomes a leading user message.  Unknown roles
    are dropped.
    """
    out: list[dict[str, str]] = []
    system_buffer = ""

    for role, content in messages:
        if role == "system":
            system_buffer += ("\n" if system_buffer else "") + content
            continue
        if system_buffer:
            content = f"System: {system_buffer}\n\n{content}"
            system_buffer = ""
        if role == "assistant":
            out.append({"role": "assistant", "content": content})
        elif role == "user":
            out.append({"role": "user", "content": content})
        elif role == "tool":
            out.append({"role": "user", "content": f"Tool: {content}"})

    if system_buffer:
        out.insert(0, {"role": "user", "content": f"System: {system_buffer}"})
    return out


def generate_payload(body: OllamaGenerateRequest, selector_id: str | None) -> dict[str, Any]:
    return {
        "prompt": fold_system_into_prompt(body.system, body.prompt),
        "model": {"id": selector_id} if selector_id else None,
        "options": map_ollama_options(body.options),
    }


def chat_payload(body: OllamaChatRequest, selector_id: str | None) -> dict[str, Any]:
    return {
        "messages": map_chat_messages([(m.role, m.content) for m in body.messages]),
        "model": {"id": selector_id} if selector_id else None,
        "options": map_ollama_options(body.options),
    }


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


class OpenAIMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "developer", "user", "assistant", "tool", "function"]
    content: str | list[dict[str, Any]] | None = None
    name: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    function_call: dict[str, Any] | None = None


class OpenAIChatRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str | None = None
    messages: list[OpenAIMessage] = Field(..., min_length=1)
    stream: bool = False
    temperature: float | None = Field(default=None, allow_inf_nan=False)
    max_tokens: int | None = Field(default=None, gt=0)
    max_completion_tokens: int | None = Field(default=None, gt=0)
    n: int | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: Any = None
    functions: list[dict[str, Any]] | None = None
    function_call: Any = None
    response_format: dict[str, Any] | None = None


def _message_text(message: OpenAIMessage) -> str:
    if message.content is None:
        return ""
    if isinstance(message.content, str):
        return message.content
    parts = []
    for part in message.content:
        if part.get("type") != "text":
            raise OpenAIRequestError(
                f"Unsupported content part type: {part.get('type')}",
                code="unsupported_content",
            )
        parts.append(str(part.get("text", "")))
    return "".join(parts)


def validate_openai_request(body: OpenAIChatRequest) -> None:
    """Reject request features the bridge cannot honour."""
    if body.n is not None and body.n != 1:
        raise OpenAIRequestError("Only n=1 is supported", code="unsupported_n")
    if body.tools or body.functions or body.tool_choice not in (None, "none") or body.function_call:
        raise OpenAIRequestError(
            "Tool and function calling are not supported", code="unsupported_tools"
        )
    if body.response_format and body.response_format.get("type", "text") != "text":
        raise OpenAIRequestError(
            "Only text responses are supported",
            code="unsupported_response_format",
        )
    for message in body.messages:
        if message.role in ("tool", "function") or message.tool_calls or message.function_call:
            raise OpenAIRequestError(
                "Tool and function call messages are not supported",
                code="unsupported_tool_calls",
            )


def openai_payload(body: OpenAIChatRequest, selector_id: str | None) -> dict[str, Any]:
    pairs = [
        ("system" if m.role == "developer" else m.role, _message_text(m)) for m in body.messages
    ]
    messages = map_chat_messages(pairs)
    if not messages:
        raise OpenAIRequestError("messages resulted in an empty conversation", code="empty_conversation")

    options: dict[str, Any] = {}
    if body.temperature is not None:
        options["temperature"] = body.temperature
    max_tokens = body.max_completion_tokens or body.max_tokens
    if max_tokens is not None:
        options["maxOutputTokens"] = max_tokens

    return {
        "messages": messages,
        "model": {"id": selector_id} if selector_id else None,
        "options": options or None,
    }


def estimate_usage(output: str) -> dict[str, int]:
    """Rough usage: ~4 characters per completion token.

    ``prompt_tokens`` is always 0; the bridge does not report prompt token
    counts, so usage-based accounting downstream must not rely on it.
    """
    completion = max(1, math.ceil(len(output) / 4)) if output else 0
    return {"prompt_tokens": 0, "completion_tokens": completion, "total_tokens": completion}


def completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"

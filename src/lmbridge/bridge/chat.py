# Chat request schemas and the upstream message builder.
# Created: 2026-10-18

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from lmbridge.bridge.provider import ChatMessage, ModelFilter
from lmbridge.errors import ValidationError

INVALID_PAYLOAD = "Invalid request payload"


class ChatMessageIn(BaseModel):
    """One conversation turn as sent by the client."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"] = "user"
    content: str = Field(..., min_length=1)


class ModelSelectorIn(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = Field(default=None, min_length=1)
    vendor: str | None = Field(default=None, min_length=1)
    family: str | None = Field(default=None, min_length=1)
    version: str | None = Field(default=None, min_length=1)

    def to_filter(self) -> ModelFilter:
        return ModelFilter(self.id, self.vendor, self.family, self.version)


class ChatOptionsIn(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    temperature: float | None = Field(default=None, allow_inf_nan=False)
    max_output_tokens: int | None = Field(
        default=None, alias="maxOutputTokens", gt=0, strict=True
    )


class ChatRequest(BaseModel):
    """Body of ``POST /chat``. Needs ``prompt``, ``messages`` or both."""

    model_config = ConfigDict(frozen=True)

    prompt: str | None = Field(default=None, min_length=1)
    messages: list[ChatMessageIn] | None = Field(default=None, min_length=1)
    model: ModelSelectorIn | None = None
    options: ChatOptionsIn | None = None

    @model_validator(mode="after")
    def _prompt_or_messages(self) -> ChatRequest:
        if self.prompt is None and not self.messages:
            raise ValueError("Either prompt or messages must be provided")
        return self

    @property
    def model_filter(self) -> ModelFilter | None:
        return self.model.to_filter() if self.model else None


def parse_error_payload(exc: PydanticValidationError) -> dict[str, Any]:
    """``{error, details: [{path, message}]}`` for a failed validation."""
    details = [
        {
            "path": ".".join(str(part) for part in err["loc"]),
            "message": err["msg"],
        }
        for err in exc.errors()
    ]
    return {"error": INVALID_PAYLOAD, "details": details}


def parse_chat_request(raw: bytes | str) -> ChatRequest:
    """Decode and validate a raw request body.

    Raises ``ValidationError`` (400) whose ``body`` is the JSON error payload.
    """
    try:
        data = json.loads(raw)
    except ValueError as exc:
        payload = {"error": INVALID_PAYLOAD, "details": [{"path": "", "message": str(exc)}]}
        raise ValidationError(INVALID_PAYLOAD, body=json.dumps(payload), details=payload["details"]) from exc

    try:
        return ChatRequest.model_validate(data)
    except PydanticValidationError as exc:
        payload = parse_error_payload(exc)
        raise ValidationError(INVALID_PAYLOAD, body=json.dumps(payload), details=payload["details"]) from exc


def build_chat_messages(request: ChatRequest) -> list[ChatMessage]:
    """Messages map 1:1 in order (assistant stays assistant, anything else is user);
    otherwise the prompt becomes a single user message."""
    if request.messages:
        return [
            ChatMessage.assistant(m.content) if m.role == "assistant" else ChatMessage.user(m.content)
            for m in request.messages
            if m.content
        ]
    if request.prompt:
        return [ChatMessage.user(request.prompt)]
    return []


def build_request_options(request: ChatRequest) -> dict[str, Any] | None:
    if request.options is None:
        return None
    model_options: dict[str, Any] = {}
    if request.options.temperature is not None:
        model_options["temperature"] = request.options.temperature
    if request.options.max_output_tokens is not None:
        model_options["maxOutputTokens"] = request.options.max_output_tokens
    return {"modelOptions": model_options} if model_options else None

"""Upstream model provider contract and the two built-in providers.

The bridge treats the model provider as an opaque capability: it can list
models and turn a message list into a lazy sequence of text fragments.
Providers report failures as ``LanguageModelError`` with a provider code;
the gateway maps those codes onto HTTP statuses.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Sequence
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Protocol

from lmbridge.bridge.cancellation import CancellationToken
from lmbridge.errors import LanguageModelError

if TYPE_CHECKING:
    from lmbridge.config import Settings

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class TextPart:
    value: str


@dataclass(frozen=True)
class ChatMessage:
    """Upstream-bound message: a role and exactly one text part."""

    role: Role
    content: tuple[TextPart, ...]

    @classmethod
    def user(cls, text: str) -> ChatMessage:
        return cls("user", (TextPart(text),))

    @classmethod
    def assistant(cls, text: str) -> ChatMessage:
        return cls("assistant", (TextPart(text),))

    @property
    def text(self) -> str:
        return "".join(part.value for part in self.content)


@dataclass(frozen=True)
class ModelInfo:
    id: str
    vendor: str
    family: str = ""
    version: str = ""
    max_input_tokens: int | None = None

    def identity(self) -> dict[str, str]:
        return {"id": self.id, "vendor": self.vendor, "family": self.family, "version": self.version}

    def summary(self) -> dict[str, Any]:
        return {**self.identity(), "maxInputTokens": self.max_input_tokens}


@dataclass(frozen=True)
class ModelFilter:
    """Optional model selector sent by clients; every set field must match."""

    id: str | None = None
    vendor: str | None = None
    family: str | None = None
    version: str | None = None

    def matches(self, model: ModelInfo) -> bool:
        return all(
            wanted is None or getattr(model, name) == wanted
            for name, wanted in asdict(self).items()
        )


@dataclass
class ModelResponse:
    text: AsyncIterator[str]


class ModelProvider(Protocol):
    async def select_models(self, selector: ModelFilter | None = None) -> list[ModelInfo]: ...

    async def send_request(
        self,
        model: ModelInfo,
        messages: Sequence[ChatMessage],
        options: dict[str, Any] | None,
        token: CancellationToken,
    ) -> ModelResponse: ...


# ---------------------------------------------------------------------------
# Echo provider
# ---------------------------------------------------------------------------

_WORD_RE = re.compile(r"\s*\S+")


@dataclass
class EchoProvider:
    """In-process provider that streams the last user message back word by word.

    Useful for local wiring checks of the proxy surfaces and for tests.
    """

    models: list[ModelInfo] = field(
        default_factory=lambda: [
            ModelInfo("echo:small", "echo", "echo", "1", 8192),
            ModelInfo("echo:large", "echo", "echo-large", "1", 32768),
        ]
    )
    delay: float = 0.0

    async def select_models(self, selector: ModelFilter | None = None) -> list[ModelInfo]:
        if selector is None:
            return list(self.models)
        return [m for m in self.models if selector.matches(m)]

    async def send_request(
        self,
        model: ModelInfo,
        messages: Sequence[ChatMessage],
        options: dict[str, Any] | None,
        token: CancellationToken,
    ) -> ModelResponse:
        prompt = next((m.text for m in reversed(messages) if m.role == "user"), "")
        limit = ((options or {}).get("modelOptions") or {}).get("maxOutputTokens")
        words = _WORD_RE.findall(prompt)
        if limit:
            words = words[:limit]
        return ModelResponse(self._stream(words, token))

    async def _stream(self, words: list[str], token: CancellationToken) -> AsyncIterator[str]:
        for word in words:
            if token.is_cancelled:
                return
            if self.delay:
                await asyncio.sleep(self.delay)
            yield word


# ---------------------------------------------------------------------------
# OpenAI-compatible provider
# ---------------------------------------------------------------------------


def _language_model_error(exc: Exception) -> LanguageModelError:
    import openai

    if isinstance(exc, openai.NotFoundError):
        code = "model_not_found"
    elif isinstance(exc, openai.PermissionDeniedError):
        code = "not_allowed"
    elif isinstance(exc, openai.RateLimitError):
        code = "quota_exceeded"
    else:
        code = "unknown"
    return LanguageModelError(str(exc), code=code)


class OpenAIProvider:
    """Any OpenAI-compatible endpoint, through the official ``openai`` SDK."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        client: Any = None,
    ):
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(base_url=base_url, api_key=api_key or "not-needed")
        self._client = client

    async def select_models(self, selector: ModelFilter | None = None) -> list[ModelInfo]:
        import openai

        try:
            page = await self._client.models.list()
        except openai.APIError as exc:
            raise _language_model_error(exc) from exc

        models = [
            ModelInfo(
                id=m.id,
                vendor=getattr(m, "owned_by", None) or "openai",
                family=m.id,
                version="",
            )
            for m in page.data
        ]
        if selector is None:
            return models
        return [m for m in models if selector.matches(m)]

    async def send_request(
        self,
        model: ModelInfo,
        messages: Sequence[ChatMessage],
        options: dict[str, Any] | None,
        token: CancellationToken,
    ) -> ModelResponse:
        import openai

        model_options = (options or {}).get("modelOptions") or {}
        kwargs: dict[str, Any] = {}
        if "temperature" in model_options:
            kwargs["temperature"] = model_options["temperature"]
        if "maxOutputTokens" in model_options:
            kwargs["max_tokens"] = model_options["maxOutputTokens"]

        try:
            stream = await self._client.chat.completions.create(
                model=model.id,
                messages=[{"role": m.role, "content": m.text} for m in messages],
                stream=True,
                **kwargs,
            )
        except openai.APIError as exc:
            raise _language_model_error(exc) from exc

        return ModelResponse(self._iter_text(stream, token))

    async def _iter_text(self, stream: Any, token: CancellationToken) -> AsyncIterator[str]:
        import openai

        try:
            async for chunk in stream:
                if token.is_cancelled:
                    logger.debug("Upstream stream abandoned after cancellation")
                    return
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except openai.APIError as exc:
            raise _language_model_error(exc) from exc
        finally:
            await stream.close()


def create_provider(settings: Settings) -> ModelProvider:
    """Build the provider named by ``settings.provider``."""
    if settings.provider == "openai":
        logger.info("Using OpenAI-compatible provider at %s", settings.openai_base_url or "default")
        return OpenAIProvider(settings.openai_base_url, settings.openai_api_key)
    logger.info("Using echo provider")
    return EchoProvider()

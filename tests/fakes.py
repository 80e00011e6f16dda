# Test doubles and helpers shared across the lmbridge test modules.
# Created: 2026-10-18

from __future__ import annotations

import asyncio

from lmbridge.bridge.provider import ModelInfo, ModelResponse
from lmbridge.config import Settings
from lmbridge.sse import SseDecoder

MOCK_MODEL = ModelInfo("mock:gpt", "mock", "gpt", "1", 4096)
OTHER_MODEL = ModelInfo("mock:llama", "meta", "llama", "3", 8192)


class ScriptedProvider:
    """Provider double: streams a fixed list of fragments, optionally failing."""

    def __init__(
        self,
        fragments=("hello world",),
        models=None,
        error: Exception | None = None,
        start_error: Exception | None = None,
        hang: bool = False,
    ):
        self.fragments = list(fragments)
        self.models = [MOCK_MODEL, OTHER_MODEL] if models is None else models
        self.error = error
        self.start_error = start_error
        self.hang = hang
        self.requests: list[tuple] = []
        self.closed = False

    async def select_models(self, selector=None):
        return [m for m in self.models if selector is None or selector.matches(m)]

    async def send_request(self, model, messages, options, token):
        self.requests.append((model, list(messages), options))
        if self.start_error is not None:
            raise self.start_error
        return ModelResponse(self._stream())

    async def _stream(self):
        try:
            for fragment in self.fragments:
                yield fragment
            if self.hang:
                await asyncio.Event().wait()
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


def make_settings(**overrides) -> Settings:
    values = {
        "auth_token": None,
        "max_concurrent": 2,
        "max_queue": 8,
        "queue_timeout": 5.0,
        "max_request_body": 1024,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def decode_sse(body: bytes | str) -> list[tuple[str, object]]:
    decoder = SseDecoder()
    events = decoder.feed(body) + decoder.flush()
    return [(e.name, e.data) for e in events]


def telemetry(caplog, event: str) -> list[dict]:
    return [r.fields for r in caplog.records if getattr(r, "event", None) == event]

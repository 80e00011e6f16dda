# Model selection for the compatibility surfaces.
# Created: 2026-10-18
#
# Ollama and OpenAI clients name a model by a free-form string. The bridge
# only understands exact ids, so anything else is resolved locally against a
# short-lived copy of the bridge's model list.

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from lmbridge.proxy.client import BridgeClient

logger = logging.getLogger(__name__)

DEFAULT_TTL = 30.0


@dataclass(frozen=True)
class ModelSelection:
    """``resolved_id`` goes upstream as a selector; ``used_id`` is what we report."""

    resolved_id: str | None
    used_id: str | None
    models: list[dict[str, Any]] = field(default_factory=list)


def _lower(value: Any) -> str:
    return value.lower() if isinstance(value, str) else ""


class ModelSelector:
    def __init__(
        self,
        client: BridgeClient,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._ttl = ttl
        self._clock = clock
        self._models: list[dict[str, Any]] | None = None
        self._fetched_at = 0.0

    def invalidate(self) -> None:
        self._models = None

    async def models(self) -> list[dict[str, Any]]:
        now = self._clock()
        if self._models is None or now - self._fetched_at > self._ttl:
            self._models = await self._client.list_models()
            self._fetched_at = now
            logger.debug("Refreshed bridge model list (%d models)", len(self._models))
        return self._models

    async def select_model_id(self, requested: str | None = None) -> ModelSelection:
        models = await self.models()
        first = models[0].get("id") if models else None

        if not requested:
            return ModelSelection(None, first, models)

        for model in models:
            if model.get("id") == requested:
                return ModelSelection(requested, requested, models)

        wanted = requested.lower()
        for key in ("family", "vendor"):
            for model in models:
                if _lower(model.get(key)) == wanted:
                    return ModelSelection(None, model.get("id"), models)

        # no selector upstream; the bridge falls back to its first model
        return ModelSelection(None, first or requested, models)

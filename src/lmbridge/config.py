"""Configuration for the bridge server and the compatibility proxy.

Values come from the environment (``LM_BRIDGE_*``) or a ``.env`` file in the
working directory.  A handful of variables keep the names existing deployments
already export (``LM_BRIDGE_URL``, ``LM_BRIDGE_TOKEN``, ``OLLAMA_PROXY_PORT``).
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_BRIDGE_PORT = 39217

LogLevel = Literal["error", "warn", "info", "debug"]


class Settings(BaseSettings):
    """Bridge and proxy settings."""

    model_config = SettingsConfigDict(
        env_prefix="LM_BRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # --- bridge server ----------------------------------------------------
    host: str = Field(default=DEFAULT_HOST)
    port: int = Field(default=DEFAULT_BRIDGE_PORT, ge=0, le=65535)
    auth_token: str | None = Field(default=None)
    log_level: LogLevel = Field(default="info")
    max_concurrent: int = Field(default=4, ge=1)
    max_queue: int = Field(default=64, ge=0, description="0 means unbounded")
    queue_timeout: float | None = Field(default=60.0, description="0/None waits forever")
    max_request_body: int = Field(default=32 * 1024, ge=1)

    # --- upstream model provider -------------------------------------------
    provider: Literal["echo", "openai"] = Field(default="echo")
    openai_base_url: str | None = Field(default=None)
    openai_api_key: str | None = Field(default=None)

    # --- compatibility proxy -----------------------------------------------
    bridge_url: str = Field(
        default=f"http://{DEFAULT_HOST}:{DEFAULT_BRIDGE_PORT}",
        validation_alias=AliasChoices("LM_BRIDGE_URL", "bridge_url"),
    )
    bridge_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LM_BRIDGE_TOKEN", "bridge_token"),
    )
    proxy_port: int = Field(
        default=11434,
        ge=0,
        le=65535,
        validation_alias=AliasChoices("OLLAMA_PROXY_PORT", "proxy_port"),
    )
    model_cache_ttl: float = Field(default=30.0, ge=0)

    @field_validator("host", mode="before")
    @classmethod
    def _default_blank_host(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return DEFAULT_HOST
        return value.strip() if isinstance(value, str) else value

    @field_validator("auth_token", "bridge_token", "openai_api_key", mode="before")
    @classmethod
    def _blank_is_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _lower_level(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip().lower()
            return "warn" if value == "warning" else value
        return value

    @property
    def effective_queue_timeout(self) -> float | None:
        if not self.queue_timeout or self.queue_timeout <= 0:
            return None
        return self.queue_timeout

    @property
    def effective_max_queue(self) -> int | None:
        return self.max_queue or None

    def bridge_options(self) -> dict[str, Any]:
        """Effective bridge knobs, as shown in the startup banner."""
        return {
            "host": self.host,
            "port": self.port,
            "auth": self.auth_token is not None,
            "maxConcurrent": self.max_concurrent,
            "maxQueue": self.effective_max_queue,
            "queueTimeout": self.effective_queue_timeout,
            "maxRequestBody": self.max_request_body,
            "provider": self.provider,
        }

    def requires_restart(self, other: Settings) -> bool:
        """True when switching to *other* needs the listener to be rebound."""
        return (
            other.host != self.host
            or other.port != self.port
            or other.auth_token != self.auth_token
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process."""
    return Settings()

"""Compatibility proxy server for ``lmbridge proxy``.

Serves the Ollama (``/api/*``) and OpenAI (``/v1/*``) surfaces and forwards
every request to a running bridge over HTTP.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from lmbridge import __version__
from lmbridge.config import Settings, get_settings
from lmbridge.errors import BridgeError
from lmbridge.proxy.client import BridgeClient
from lmbridge.proxy.model_select import ModelSelector
from lmbridge.proxy.routes import bridge_error_handler, router, validation_error_handler

logger = logging.getLogger(__name__)


def create_proxy_app(
    settings: Settings | None = None,
    client: BridgeClient | None = None,
) -> FastAPI:
    """Build the proxy application around one bridge client."""
    settings = settings or get_settings()
    client = client or BridgeClient.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Proxy forwarding to %s", client.base_url)
        yield
        await client.aclose()

    app = FastAPI(
        title="lmbridge proxy",
        description="Ollama and OpenAI compatible front for the lmbridge bridge.",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.client = client
    app.state.selector = ModelSelector(client, ttl=settings.model_cache_ttl)
    app.include_router(router)
    app.add_exception_handler(BridgeError, bridge_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    return app


def run_proxy_server(settings: Settings | None = None, dev: bool = False) -> None:
    """Start the proxy under uvicorn."""
    import uvicorn
    from rich.console import Console

    settings = settings or get_settings()
    console = Console()
    console.rule("[bold]lmbridge proxy")
    console.print(f"  upstream bridge: {settings.bridge_url}")
    console.print(f"\n  Listening on http://{settings.host}:{settings.proxy_port}\n")

    if dev:
        import pathlib

        src_dir = str(pathlib.Path(__file__).resolve().parent.parent)
        uvicorn.run(
            "lmbridge.proxy.serve:create_proxy_app",
            factory=True,
            host=settings.host,
            port=settings.proxy_port,
            reload=True,
            reload_dirs=[src_dir],
            reload_includes=["*.py"],
            log_level="debug",
        )
    else:
        app = create_proxy_app(settings)
        uvicorn.run(app, host=settings.host, port=settings.proxy_port, log_config=None)

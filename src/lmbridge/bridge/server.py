# Bridge server: FastAPI app wiring for /healthz, /models and /chat.
# Created: 2026-10-18
#
# Route handlers stay thin; BridgeGateway owns every decision. Errors raised
# as BridgeError become plain-text bodies, except validation failures that
# carry a JSON detail payload.

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, FastAPI, Request
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import PlainTextResponse, Response

from lmbridge import __version__
from lmbridge.bridge.gateway import BridgeGateway
from lmbridge.bridge.provider import ModelProvider, create_provider
from lmbridge.config import Settings, get_settings
from lmbridge.errors import BridgeError, ValidationError

logger = logging.getLogger(__name__)


def get_gateway(request: Request) -> BridgeGateway:
    return request.app.state.gateway


async def require_token(request: Request) -> None:
    get_gateway(request).authorize(request.headers.get("authorization"))


router = APIRouter(dependencies=[Depends(require_token)])


@router.get("/healthz")
async def healthz(request: Request, gateway: BridgeGateway = Depends(get_gateway)):
    return gateway.health(request)


@router.get("/models")
async def models(gateway: BridgeGateway = Depends(get_gateway)) -> Response:
    return await gateway.list_models()


@router.post("/chat")
async def chat(request: Request, gateway: BridgeGateway = Depends(get_gateway)) -> Response:
    return await gateway.handle_chat(request)


async def _bridge_error_handler(request: Request, exc: BridgeError) -> Response:
    if exc.status_code >= 500:
        logger.warning("Rejecting %s %s: %s", request.method, request.url.path, exc.message)
    if isinstance(exc, ValidationError) and exc.body:
        return Response(exc.body, status_code=exc.status_code, media_type="application/json")
    return PlainTextResponse(exc.message, status_code=exc.status_code)


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> Response:
    if exc.status_code == 404:
        logger.info("Unhandled route: %s %s", request.method, request.url.path)
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code)


def create_bridge_app(
    settings: Settings | None = None,
    provider: ModelProvider | None = None,
) -> FastAPI:
    """Build the bridge application around one gateway instance."""
    settings = settings or get_settings()
    provider = provider or create_provider(settings)

    app = FastAPI(
        title="lmbridge",
        description="Language model chat bridge (JSON and SSE).",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.state.gateway = BridgeGateway(settings, provider)
    app.include_router(router)
    app.add_exception_handler(BridgeError, _bridge_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    return app


def run_bridge_server(settings: Settings | None = None, dev: bool = False) -> None:
    """Start the bridge under uvicorn."""
    import uvicorn
    from rich.console import Console

    settings = settings or get_settings()
    console = Console()
    console.rule("[bold]lmbridge bridge")
    for key, value in settings.bridge_options().items():
        console.print(f"  {key}: {value}")
    console.print(f"\n  Listening on http://{settings.host}:{settings.port}\n")

    if dev:
        import pathlib

        src_dir = str(pathlib.Path(__file__).resolve().parent.parent)
        uvicorn.run(
            "lmbridge.bridge.server:create_bridge_app",
            factory=True,
            host=settings.host,
            port=settings.port,
            reload=True,
            reload_dirs=[src_dir],
            reload_includes=["*.py"],
            log_level="debug",
        )
    else:
        app = create_bridge_app(settings)
        uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)

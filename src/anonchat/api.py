"""FastAPI application and routes for the anonchat proxy."""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .backends import UpstreamClient
from .completions import CompletionResponder
from .config import load_config, configure_logging
from .errors import invalid_request_envelope
from .models import ChatCompletionRequest
from .refresher import TokenRefresher, RefreshLoop
from .session import SessionState

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[Dict[str, Any]] = None,
    session: Optional[SessionState] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the proxy application.

    Args:
        config: Full configuration, loaded from config.yaml when omitted
        session: Shared session state, a fresh identity when omitted
        transport: Optional httpx transport for upstream calls (used by tests)

    Returns:
        The FastAPI app, with the session, upstream client, refresher and
        refresh loop available on ``app.state``
    """
    if config is None:
        config = load_config()
    configure_logging(config)

    session = session or SessionState()
    upstream = UpstreamClient(config["upstream"], session, transport=transport)
    refresher = TokenRefresher(upstream, session, config.get("proof_of_work"))
    refresh_loop = RefreshLoop(refresher, session, config.get("refresh"))
    responder = CompletionResponder(config, session, upstream, refresher)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config["refresh"].get("background", True):
            refresh_loop.start()
        try:
            yield
        finally:
            await refresh_loop.stop()
            await upstream.aclose()

    app = FastAPI(title="Anonchat Proxy", lifespan=lifespan)
    app.state.config = config
    app.state.session = session
    app.state.upstream = upstream
    app.state.refresher = refresher
    app.state.refresh_loop = refresh_loop
    app.state.responder = responder

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    not_found_message = (
        "The requested endpoint was not found. please make sure to use "
        f'"http://localhost:{config["server"]["port"]}/v1" as the base URL.'
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code in (404, 405):
            return JSONResponse(invalid_request_envelope(not_found_message), status_code=404)
        return JSONResponse(invalid_request_envelope(str(exc.detail)), status_code=exc.status_code)

    @app.options("/{path:path}")
    async def preflight(path: str) -> Response:
        return Response(status_code=200)

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request) -> Response:
        """
        OpenAI-compatible chat completions backed by the anonymous upstream.
        Supports streaming (server-sent events) and non-streaming responses.
        """
        try:
            chat_request = ChatCompletionRequest.model_validate(await request.json())
        except (ValueError, ValidationError) as e:
            logger.warning(f"Rejected malformed request body: {str(e)}")
            return JSONResponse(invalid_request_envelope(f"Invalid request body: {str(e)}"), status_code=400)

        logger.info(
            f"Request: {request.method} {request.url.path} {len(chat_request.messages)} messages "
            f"({'stream-enabled' if chat_request.stream else 'stream-disabled'})"
        )
        return await responder.respond(chat_request)

    return app

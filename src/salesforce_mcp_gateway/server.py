import contextlib
import logging
from collections.abc import AsyncIterator
from http import HTTPStatus
from typing import Optional

import click
import uvicorn
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.types import Receive, Scope, Send

from .auth import SharedSecretMiddleware
from .config import Settings
from .connection import SalesforceConnectionProvider
from .dispatcher import SERVER_NAME, create_mcp_server
from .errors import SessionProtocolError, error_body
from .sessions import SessionManager, TransportKind

# Configure logging
logger = logging.getLogger(__name__)

MCP_PATH = "/mcp"
SSE_PATH = "/sse"
MESSAGES_PATH = "/messages/"


async def _render_session_error(error: SessionProtocolError, scope: Scope, receive: Receive, send: Send) -> None:
    logger.info(f"Rejected {scope.get('method')} {scope.get('path')}: {error.message}")
    response = JSONResponse(error_body(error), status_code=error.status_code)
    await response(scope, receive, send)


class StreamableHTTPEndpoint:
    """POST initializes or continues, GET attaches the push stream, DELETE terminates."""

    def __init__(self, session_manager: SessionManager):
        self.session_manager = session_manager

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        method = scope["method"]
        try:
            if method == "POST":
                await self.session_manager.handle_post(scope, receive, send)
            elif method == "DELETE":
                await self.terminate(scope, receive, send)
            else:
                await self.session_manager.attach_stream(scope, receive, send)
        except SessionProtocolError as e:
            await _render_session_error(e, scope, receive, send)

    async def terminate(self, scope: Scope, receive: Receive, send: Send) -> None:
        session_id = Request(scope, receive).headers.get(MCP_SESSION_ID_HEADER)
        if not session_id:
            raise SessionProtocolError("Bad Request: missing session ID")

        closed = await self.session_manager.terminate(session_id)
        response = JSONResponse({"status": "ok", "sessionId": session_id, "terminated": closed})
        await response(scope, receive, send)


class SseEndpoint:
    def __init__(self, session_manager: SessionManager):
        self.session_manager = session_manager

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        logger.info("Handling SSE connection")
        await self.session_manager.open_stream(scope, receive, send)


class StreamMessageEndpoint:
    def __init__(self, session_manager: SessionManager):
        self.session_manager = session_manager

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["method"] != "POST":
            response = JSONResponse({"error": "Method Not Allowed"}, status_code=HTTPStatus.METHOD_NOT_ALLOWED)
            await response(scope, receive, send)
            return
        try:
            await self.session_manager.post_stream_message(scope, receive, send)
        except SessionProtocolError as e:
            await _render_session_error(e, scope, receive, send)


async def health(request: Request) -> JSONResponse:
    return JSONResponse(
        {
            "status": "ok",
            "service": SERVER_NAME,
            "transports": [kind.value for kind in TransportKind],
        }
    )


def create_app(
    settings: Settings,
    provider: Optional[SalesforceConnectionProvider] = None,
    json_response: bool = False,
) -> Starlette:
    """Build the ASGI application. The upstream connection is not opened until the first tool call."""
    provider = provider or SalesforceConnectionProvider(settings)
    session_manager = SessionManager(
        server_factory=lambda: create_mcp_server(provider),
        json_response=json_response,
        stream_endpoint=MESSAGES_PATH,
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with session_manager.run():
            logger.info("Application started with dual transports!")
            try:
                yield
            finally:
                logger.info("Application shutting down...")

    app = Starlette(
        routes=[
            Route("/", endpoint=health, methods=["GET"]),
            Route(MCP_PATH, endpoint=StreamableHTTPEndpoint(session_manager), methods=["GET", "POST", "DELETE"]),
            Route(SSE_PATH, endpoint=SseEndpoint(session_manager), methods=["GET"]),
            Mount(MESSAGES_PATH, app=StreamMessageEndpoint(session_manager)),
        ],
        middleware=[
            # Outermost, so preflights and 401s still carry CORS headers
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["*"],
                allow_headers=["*"],
                expose_headers=[MCP_SESSION_ID_HEADER],
            ),
            Middleware(SharedSecretMiddleware, secret=settings.api_key),
        ],
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.provider = provider
    app.state.session_manager = session_manager
    return app


@click.command()
@click.option("--port", type=int, default=None, help="Port to listen on for HTTP (default: PORT env or 3000)")
@click.option("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
@click.option("--json-response", is_flag=True, default=False, help="Enable JSON responses for StreamableHTTP instead of SSE streams")
def main(port: Optional[int], log_level: str, json_response: bool) -> int:
    # Configure logging
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = Settings.from_env()
    port = port or settings.port
    starlette_app = create_app(settings, json_response=json_response)

    logger.info(f"Server starting on port {port} with dual transports:")
    logger.info(f"  - StreamableHTTP endpoint: http://localhost:{port}{MCP_PATH}")
    logger.info(f"  - SSE endpoint: http://localhost:{port}{SSE_PATH}")
    logger.info(f"  - Credential flow: {settings.credential_flow.value}")
    logger.info(f"  - API key required: {settings.auth_enabled}")

    uvicorn.run(starlette_app, host="0.0.0.0", port=port)
    return 0


if __name__ == "__main__":
    main()

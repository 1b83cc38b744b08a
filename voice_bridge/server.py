"""
HTTP and WebSocket surface of the voice bridge.

- GET  /health  liveness report
- POST /text    {"text": "..."} -> one blocking gateway round trip
- WS   /ws      text messages in, sentence/done/error notifications out
"""

from __future__ import annotations

import asyncio
import contextlib
import secrets
from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

import structlog
import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from voice_bridge import __version__
from voice_bridge.config import Configuration
from voice_bridge.gateway.exceptions import GatewayError
from voice_bridge.gateway.models import CompletionRequest
from voice_bridge.logging_utils import BridgeErrorHandler, operation_context
from voice_bridge.protocol import (
    MISSING_TEXT_ERROR,
    ErrorResponse,
    TextRequest,
    TextResponse,
)
from voice_bridge.session import SessionController, StreamingGateway

WS_UNAUTHORIZED = 4001
HTTP_NO_CONTENT = 204
HTTP_BAD_REQUEST = 400
HTTP_NOT_FOUND = 404
HTTP_PAYLOAD_TOO_LARGE = 413

NOT_FOUND_ERROR = "Not found"
INVALID_REQUEST_ERROR = "Invalid request"

logger = structlog.get_logger(__name__)


@runtime_checkable
class BridgeGateway(StreamingGateway, Protocol):
    """What the server needs from the gateway client: both call paths."""

    async def complete(self, request: CompletionRequest) -> str: ...


class ServerConfig(BaseModel):
    """Everything the server needs, built once at startup."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    gateway: BridgeGateway
    configuration: Configuration
    shutdown_event: asyncio.Event | None = None


def _token_matches(presented: str | None, expected: str) -> bool:
    if presented is None:
        return False
    return secrets.compare_digest(presented.encode(), expected.encode())


def _error_response(
    status_code: int, message: str, headers: dict[str, str] | None = None
) -> JSONResponse:
    return JSONResponse(
        ErrorResponse(error=message).model_dump(),
        status_code=status_code,
        headers=headers,
    )


async def http_error_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Unknown paths and wrong methods answer in the same shape as /text errors."""
    message = NOT_FOUND_ERROR if exc.status_code == HTTP_NOT_FOUND else str(exc.detail)
    return _error_response(exc.status_code, message, exc.headers)


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return _error_response(HTTP_BAD_REQUEST, INVALID_REQUEST_ERROR)


def create_app(server_config: ServerConfig) -> FastAPI:
    """Build the FastAPI application around a gateway client."""
    configuration = server_config.configuration
    gateway = server_config.gateway

    gateway_config = configuration.get_gateway_config()
    bridge_config = configuration.get_bridge_config()
    server_settings = configuration.get_server_config()
    websocket_token = configuration.websocket_token

    agent_id: str = gateway_config["agent_id"]
    system_prompt: str | None = bridge_config["system_prompt"]
    sessions: dict[str, SessionController] = {}

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        # Supersede whatever is still streaming before the process exits
        for controller in list(sessions.values()):
            await controller.close()

    app = FastAPI(
        title="Voice Chat Bridge",
        version=__version__,
        lifespan=lifespan,
        exception_handlers={
            StarletteHTTPException: http_error_handler,
            RequestValidationError: validation_error_handler,
        },
    )

    # Registered before CORS so that CORS stays outermost and still answers
    # preflights; any other OPTIONS request gets an empty 204.
    @app.middleware("http")
    async def answer_options(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=HTTP_NO_CONTENT)
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=server_settings["cors_origins"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.state.sessions = sessions

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {
            "status": "ok",
            "agent": agent_id,
            "name": bridge_config["agent_name"],
        }

    @app.post("/text")
    async def text(request: Request) -> JSONResponse:
        max_bytes = bridge_config["max_body_bytes"]
        declared = request.headers.get("content-length")
        if declared is not None and declared.isdigit() and int(declared) > max_bytes:
            return _error_response(HTTP_PAYLOAD_TOO_LARGE, "Payload too large")

        body = await request.body()
        if len(body) > max_bytes:
            return _error_response(HTTP_PAYLOAD_TOO_LARGE, "Payload too large")

        try:
            payload = TextRequest.model_validate_json(body)
        except ValidationError:
            return _error_response(HTTP_BAD_REQUEST, MISSING_TEXT_ERROR)

        completion = CompletionRequest.for_utterance(
            payload.text,
            agent_id=agent_id,
            system_prompt=system_prompt,
        )
        try:
            async with operation_context(
                "text_request", context={"text": payload.text[:120]}
            ) as op_logger:
                reply = await gateway.complete(completion)
                op_logger.info("Gateway replied", response=reply[:120])
        except GatewayError as e:
            status, _ = BridgeErrorHandler.classify_error(e)
            return _error_response(status, str(e))

        return JSONResponse(
            TextResponse(input=payload.text, response=reply).model_dump()
        )

    @app.websocket("/ws")
    async def websocket_chat(websocket: WebSocket, token: str | None = None) -> None:
        await websocket.accept()

        if websocket_token is not None and not _token_matches(token, websocket_token):
            logger.warning(
                "Rejected WebSocket connection",
                client=str(websocket.client),
                reason="bad_token",
            )
            await websocket.close(code=WS_UNAUTHORIZED, reason="Unauthorized")
            return

        controller = SessionController(
            gateway,
            websocket.send_json,
            agent_id=agent_id,
            system_prompt=system_prompt,
            cancel_grace=bridge_config["cancel_grace"],
        )
        session_id = controller.session.session_id
        sessions[session_id] = controller
        logger.info(
            "WebSocket session opened",
            session_id=session_id,
            client=str(websocket.client),
        )

        try:
            while not controller.session.closed:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await controller.handle_message(raw)
        except WebSocketDisconnect:
            pass
        finally:
            await controller.close()
            sessions.pop(session_id, None)
            logger.info("WebSocket session closed", session_id=session_id)

    return app


async def run_websocket_server(server_config: ServerConfig) -> None:
    """Serve the app with uvicorn until it exits or shutdown is requested."""
    server_settings = server_config.configuration.get_server_config()
    uvicorn_settings = server_settings["uvicorn"]
    log_level = server_config.configuration.get_logging_config().get("level", "INFO")

    app = create_app(server_config)
    config = uvicorn.Config(
        app,
        host=server_settings["host"],
        port=server_settings["port"],
        log_level=str(log_level).lower(),
        access_log=uvicorn_settings.get("access_log", False),
        ws_ping_interval=uvicorn_settings.get("ws_ping_interval", 20.0),
        ws_ping_timeout=uvicorn_settings.get("ws_ping_timeout", 20.0),
    )
    server = uvicorn.Server(config)

    async def _watch_shutdown(event: asyncio.Event) -> None:
        await event.wait()
        server.should_exit = True

    watcher: asyncio.Task[None] | None = None
    if server_config.shutdown_event is not None:
        watcher = asyncio.create_task(_watch_shutdown(server_config.shutdown_event))

    try:
        await server.serve()
    finally:
        if watcher is not None:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher

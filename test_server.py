#!/usr/bin/env python3
"""
Tests for the HTTP and WebSocket endpoints.
"""

import asyncio
import json

import pytest
import yaml
from fastapi.exceptions import RequestValidationError
from fastapi.testclient import TestClient
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect

from voice_bridge.config import DEFAULT_CONFIG_PATH, Configuration
from voice_bridge.gateway.exceptions import GatewayStatusError, GatewayTimeoutError
from voice_bridge.gateway.streaming.models import StreamChunk, StreamChunkType
from voice_bridge.server import (
    WS_UNAUTHORIZED,
    ServerConfig,
    create_app,
    validation_error_handler,
)

BASE_ENV = {"OPENCLAW_GATEWAY_TOKEN": "gateway-secret"}


class FakeGateway:
    """Stands in for GatewayClient."""

    def __init__(self, reply="Sunny all day.", deltas=None, error=None, hang=False):
        self.reply = reply
        self.deltas = deltas if deltas is not None else ["It's ", "sunny. ", "Enjoy!"]
        self.error = error
        self.hang = hang
        self.requests = []
        self.closed_streams = 0

    async def complete(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.reply

    async def stream(self, request):
        self.requests.append(request)
        try:
            for delta in self.deltas:
                yield StreamChunk(StreamChunkType.CONTENT, delta)
            if self.hang:
                await asyncio.Event().wait()
            yield StreamChunk(StreamChunkType.COMPLETION, finish_reason="stop")
        finally:
            self.closed_streams += 1


def write_config(tmp_path, bridge=None):
    with open(DEFAULT_CONFIG_PATH) as file:
        config = yaml.safe_load(file)
    config["bridge"].update(bridge or {})
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config))
    return str(path)


@pytest.fixture
def make_client(tmp_path):
    def factory(gateway=None, env=None, bridge=None):
        configuration = Configuration(
            config_path=write_config(tmp_path, bridge),
            environ={**BASE_ENV, **(env or {})},
        )
        server_config = ServerConfig(
            gateway=gateway or FakeGateway(),
            configuration=configuration,
        )
        return TestClient(create_app(server_config))

    return factory


def test_health(make_client):
    with make_client(env={"VOICE_CHAT_AGENT_NAME": "Jarvis"}) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "agent": "main", "name": "Jarvis"}


def test_gateway_must_support_both_calls(tmp_path):
    class StreamOnly:
        async def stream(self, request):
            yield StreamChunk(StreamChunkType.COMPLETION)

    configuration = Configuration(config_path=write_config(tmp_path), environ=BASE_ENV)

    with pytest.raises(ValidationError, match="gateway"):
        ServerConfig(gateway=StreamOnly(), configuration=configuration)


class TestErrorShape:
    """Routing errors use the same body as /text failures."""

    def test_unknown_path(self, make_client):
        with make_client() as client:
            response = client.get("/nope")

        assert response.status_code == 404
        assert response.json() == {"status": "error", "error": "Not found"}

    def test_wrong_method(self, make_client):
        with make_client() as client:
            response = client.get("/text")

        assert response.status_code == 405
        assert response.json()["status"] == "error"
        assert "POST" in response.headers["allow"]

    @pytest.mark.parametrize("path", ["/text", "/health", "/nope"])
    def test_bare_options(self, make_client, path):
        with make_client() as client:
            response = client.options(path)

        assert response.status_code == 204
        assert response.content == b""

    @pytest.mark.asyncio
    async def test_validation_error(self):
        response = await validation_error_handler(None, RequestValidationError([]))

        assert response.status_code == 400
        assert json.loads(response.body) == {"status": "error", "error": "Invalid request"}


class TestTextEndpoint:
    """POST /text"""

    def test_success(self, make_client):
        gateway = FakeGateway(reply="Sunny all day.")
        with make_client(gateway, env={"VOICE_CHAT_SYSTEM": "Be brief."}) as client:
            response = client.post("/text", json={"text": "Weather?"})

        assert response.status_code == 200
        assert response.json() == {
            "input": "Weather?",
            "status": "ok",
            "response": "Sunny all day.",
        }
        request = gateway.requests[0]
        assert request.stream is False
        assert request.model == "openclaw:main"
        assert request.messages[0].content == "Be brief."

    @pytest.mark.parametrize(
        "body",
        [
            b'{"message": "hi"}',
            b'{"text": ""}',
            b'{"text": 5}',
            b"not json",
            b"",
        ],
    )
    def test_bad_request(self, make_client, body):
        gateway = FakeGateway()
        with make_client(gateway) as client:
            response = client.post(
                "/text", content=body, headers={"Content-Type": "application/json"}
            )

        assert response.status_code == 400
        assert response.json() == {"status": "error", "error": 'Missing "text" field'}
        assert gateway.requests == []

    @pytest.mark.parametrize(
        ("error", "message"),
        [
            (GatewayStatusError(503, "down"), "Gateway 503: down"),
            (GatewayTimeoutError("Gateway request timed out"), "Gateway request timed out"),
        ],
    )
    def test_gateway_failure(self, make_client, error, message):
        with make_client(FakeGateway(error=error)) as client:
            response = client.post("/text", json={"text": "hi"})

        assert response.status_code == 502
        assert response.json() == {"status": "error", "error": message}

    def test_payload_too_large(self, make_client):
        gateway = FakeGateway()
        with make_client(gateway, bridge={"max_body_bytes": 64}) as client:
            response = client.post("/text", json={"text": "x" * 100})

        assert response.status_code == 413
        assert response.json()["error"] == "Payload too large"
        assert gateway.requests == []

    def test_cors_preflight(self, make_client):
        with make_client() as client:
            response = client.options(
                "/text",
                headers={
                    "Origin": "http://localhost:3000",
                    "Access-Control-Request-Method": "POST",
                    "Access-Control-Request-Headers": "Content-Type",
                },
            )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"


class TestWebSocket:
    """WS /ws"""

    def test_exchange(self, make_client):
        gateway = FakeGateway(deltas=["It's ", "sunny. ", "Enjoy!"])
        with make_client(gateway) as client:
            with client.websocket_connect("/ws") as ws:
                ws.send_text(json.dumps({"type": "text", "text": "Weather?"}))
                messages = [ws.receive_json() for _ in range(3)]

        assert messages == [
            {"type": "sentence", "text": "It's sunny.", "index": 0},
            {"type": "sentence", "text": "Enjoy!", "index": 1},
            {"type": "done", "fullText": "It's sunny. Enjoy!"},
        ]
        request = gateway.requests[0]
        assert request.stream is True
        assert request.session_tag.startswith("voice-bridge:")

    def test_invalid_then_valid_message(self, make_client):
        gateway = FakeGateway(deltas=["Hi."])
        with make_client(gateway) as client:
            with client.websocket_connect("/ws") as ws:
                ws.send_text("hello?")
                rejected = ws.receive_json()
                ws.send_bytes(json.dumps({"type": "text", "text": "hi"}).encode())
                accepted = [ws.receive_json() for _ in range(2)]

        assert rejected["type"] == "error"
        assert [m["type"] for m in accepted] == ["sentence", "done"]

    def test_disconnect_releases_stream(self, make_client):
        gateway = FakeGateway(deltas=["Thinking."], hang=True)
        with make_client(gateway) as client:
            app = client.app
            with client.websocket_connect("/ws") as ws:
                ws.send_text(json.dumps({"type": "text", "text": "hi"}))
                assert ws.receive_json() == {
                    "type": "sentence", "text": "Thinking.", "index": 0
                }
                assert len(app.state.sessions) == 1

            assert app.state.sessions == {}

        assert gateway.closed_streams == 1

    def test_token_required(self, make_client):
        with make_client(env={"VOICE_CHAT_WS_TOKEN": "letmein"}) as client:
            with client.websocket_connect("/ws?token=wrong") as ws:
                with pytest.raises(WebSocketDisconnect) as exc_info:
                    ws.receive_json()

        assert exc_info.value.code == WS_UNAUTHORIZED

    def test_token_accepted(self, make_client):
        gateway = FakeGateway(deltas=["Ok."])
        with make_client(gateway, env={"VOICE_CHAT_WS_TOKEN": "letmein"}) as client:
            with client.websocket_connect("/ws?token=letmein") as ws:
                ws.send_text(json.dumps({"type": "text", "text": "hi"}))
                messages = [ws.receive_json() for _ in range(2)]

        assert messages[-1] == {"type": "done", "fullText": "Ok."}

#!/usr/bin/env python3
"""
Tests for the gateway HTTP client against a mocked transport.
"""

import json

import httpx
import pytest

from voice_bridge.gateway.client import NO_RESPONSE_TEXT, GatewayClient
from voice_bridge.gateway.exceptions import (
    GatewayStatusError,
    GatewayTimeoutError,
    InvalidResponseError,
    StreamingError,
)
from voice_bridge.gateway.models import CompletionRequest
from voice_bridge.gateway.streaming.models import StreamChunkType

SSE_HEADERS = {"content-type": "text/event-stream; charset=utf-8"}

GATEWAY_CONFIG = {
    "url": "http://gateway.test",
    "agent_id": "main",
    "completions_path": "/v1/chat/completions",
    "http_client": {
        "connect_timeout": 1.0,
        "read_timeout": 1.0,
        "write_timeout": 1.0,
        "pool_timeout": 1.0,
        "max_connections": 5,
        "max_keepalive": 2,
    },
}


def sse(text: str) -> bytes:
    payload = {"choices": [{"index": 0, "delta": {"content": text}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


class ByteStream(httpx.AsyncByteStream):
    """Response body delivered in the given pieces, optionally failing at the end."""

    def __init__(self, *pieces: bytes, error: Exception | None = None):
        self.pieces = pieces
        self.error = error

    async def __aiter__(self):
        for piece in self.pieces:
            yield piece
        if self.error is not None:
            raise self.error


def make_client(handler) -> GatewayClient:
    return GatewayClient(GATEWAY_CONFIG, "secret", transport=httpx.MockTransport(handler))


def make_request(stream: bool = True) -> CompletionRequest:
    return CompletionRequest.for_utterance(
        "Weather?", agent_id="main", stream=stream, session_tag="voice-bridge:abc"
    )


async def collect(client: GatewayClient, request: CompletionRequest) -> list:
    return [chunk async for chunk in client.stream(request)]


class TestStream:
    """Streaming completions."""

    @pytest.mark.asyncio
    async def test_request_payload_and_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, headers=SSE_HEADERS, content=b"data: [DONE]\n\n")

        async with make_client(handler) as client:
            await collect(client, make_request())

        assert seen["path"] == "/v1/chat/completions"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {
            "model": "openclaw:main",
            "messages": [{"role": "user", "content": "Weather?"}],
            "stream": True,
            "user": "voice-bridge:abc",
        }

    @pytest.mark.asyncio
    async def test_deltas_in_order_skipping_malformed(self):
        body = ByteStream(
            sse("It's "),
            b"data: {broken\n\n",
            sse("58"),
            sse("°F."),
            b"data: [DONE]\n\n",
            sse("ignored"),
        )

        def handler(request):
            return httpx.Response(200, headers=SSE_HEADERS, stream=body)

        async with make_client(handler) as client:
            chunks = await collect(client, make_request())

        assert [c.content for c in chunks[:-1]] == ["It's ", "58", "°F."]
        assert chunks[-1].chunk_type is StreamChunkType.COMPLETION
        assert chunks[-1].finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_multibyte_character_split_across_reads(self):
        raw = sse("café") + b"data: [DONE]\n\n"
        cut = raw.index("é".encode()) + 1

        def handler(request):
            return httpx.Response(
                200, headers=SSE_HEADERS, stream=ByteStream(raw[:cut], raw[cut:])
            )

        async with make_client(handler) as client:
            chunks = await collect(client, make_request())

        assert chunks[0].content == "café"

    @pytest.mark.asyncio
    async def test_stream_closed_without_done_marker(self):
        def handler(request):
            return httpx.Response(
                200, headers=SSE_HEADERS, stream=ByteStream(sse("Hi"), sse(" there").rstrip())
            )

        async with make_client(handler) as client:
            chunks = await collect(client, make_request())

        assert [c.content for c in chunks] == ["Hi", " there", None]
        assert chunks[-1].chunk_type is StreamChunkType.COMPLETION

    @pytest.mark.asyncio
    async def test_non_success_status(self):
        def handler(request):
            return httpx.Response(401, content=b"bad token")

        async with make_client(handler) as client:
            with pytest.raises(GatewayStatusError) as exc_info:
                await collect(client, make_request())

        assert exc_info.value.status_code == 401
        assert str(exc_info.value) == "Gateway 401: bad token"

    @pytest.mark.asyncio
    async def test_status_error_body_is_truncated(self):
        def handler(request):
            return httpx.Response(500, content=b"x" * 2000)

        async with make_client(handler) as client:
            with pytest.raises(GatewayStatusError) as exc_info:
                await collect(client, make_request())

        assert str(exc_info.value) == "Gateway 500: " + "x" * 500
        assert len(exc_info.value.body) == 2000

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_client(handler) as client:
            with pytest.raises(GatewayTimeoutError):
                await collect(client, make_request())

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(StreamingError, match="connection refused"):
                await collect(client, make_request())

    @pytest.mark.asyncio
    async def test_transport_failure_mid_stream(self):
        body = ByteStream(sse("Partial"), error=httpx.ReadError("connection reset"))

        def handler(request):
            return httpx.Response(200, headers=SSE_HEADERS, stream=body)

        received = []
        async with make_client(handler) as client:
            with pytest.raises(StreamingError, match="connection reset"):
                async for chunk in client.stream(make_request()):
                    received.append(chunk.content)

        assert received == ["Partial"]


class TestComplete:
    """Single round-trip completions."""

    @pytest.mark.asyncio
    async def test_reply_text(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json={"choices": [{"message": {"content": "Sunny all day."}}]}
            )

        async with make_client(handler) as client:
            reply = await client.complete(make_request(stream=False))

        assert reply == "Sunny all day."
        assert seen["body"]["stream"] is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"choices": []},
            {"choices": [{"message": {"content": ""}}]},
            {"choices": [{"message": None}]},
            {"unexpected": True},
            ["not", "an", "object"],
        ],
    )
    async def test_missing_content_falls_back(self, body):
        def handler(request):
            return httpx.Response(200, json=body)

        async with make_client(handler) as client:
            assert await client.complete(make_request(stream=False)) == NO_RESPONSE_TEXT

    @pytest.mark.asyncio
    async def test_status_error(self):
        def handler(request):
            return httpx.Response(503, text="overloaded")

        async with make_client(handler) as client:
            with pytest.raises(GatewayStatusError, match="Gateway 503: overloaded"):
                await client.complete(make_request(stream=False))

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>oops</html>")

        async with make_client(handler) as client:
            with pytest.raises(InvalidResponseError, match="Bad gateway response"):
                await client.complete(make_request(stream=False))

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_client(handler) as client:
            with pytest.raises(GatewayTimeoutError, match="timed out"):
                await client.complete(make_request(stream=False))


def test_missing_configuration_key():
    config = {k: v for k, v in GATEWAY_CONFIG.items() if k != "http_client"}

    with pytest.raises(ValueError, match="http_client"):
        GatewayClient(config, "secret")

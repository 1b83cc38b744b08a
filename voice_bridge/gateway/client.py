"""
HTTP client for the OpenClaw chat-completions gateway.

Two call paths share one pooled httpx.AsyncClient:
- complete(): a single blocking round trip returning the reply text
- stream(): an async generator of token deltas ending in one COMPLETION chunk

Every failure surfaces as a GatewayError subclass; callers never see httpx
exceptions.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import structlog

from voice_bridge.logging_utils import log_operation

from .exceptions import (
    GatewayError,
    GatewayStatusError,
    GatewayTimeoutError,
    InvalidResponseError,
    StreamingError,
)
from .models import CompletionRequest
from .streaming.models import StreamChunk, StreamChunkType
from .streaming.parser import ChunkAccumulator, StreamingParser

HTTP_OK = 200
NO_RESPONSE_TEXT = "No response from agent."

logger = structlog.get_logger(__name__)


class GatewayClient:
    """Async client for the gateway's /v1/chat/completions endpoint."""

    def __init__(
        self,
        config: dict[str, Any],
        token: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        # Validate required configuration parameters
        required_keys = ["url", "completions_path", "http_client"]
        for key in required_keys:
            if key not in config:
                raise ValueError(
                    f"Required gateway configuration parameter '{key}' not found."
                )

        self.config: dict[str, Any] = config
        self.completions_path: str = config["completions_path"]
        http_config = config["http_client"]

        self.client: httpx.AsyncClient = httpx.AsyncClient(
            base_url=config["url"],
            headers={"Authorization": f"Bearer {token}"},
            timeout=httpx.Timeout(
                connect=http_config["connect_timeout"],
                read=http_config["read_timeout"],
                write=http_config["write_timeout"],
                pool=http_config["pool_timeout"],
            ),
            limits=httpx.Limits(
                max_connections=http_config["max_connections"],
                max_keepalive_connections=http_config["max_keepalive"],
            ),
            transport=transport,
        )

    @log_operation("gateway_complete", failure_level="debug")
    async def complete(self, request: CompletionRequest) -> str:
        """Send a non-streaming request and return the reply text."""
        try:
            response = await self.client.post(
                self.completions_path, json=request.to_payload()
            )
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError("Gateway request timed out") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"HTTP error: {e!s}") from e

        if response.status_code != HTTP_OK:
            raise GatewayStatusError(response.status_code, response.text)

        try:
            result = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidResponseError(f"Bad gateway response: {e!s}") from e

        return self._extract_message_content(result) or NO_RESPONSE_TEXT

    @staticmethod
    def _extract_message_content(result: Any) -> str | None:
        """Read ``choices[0].message.content`` without trusting the shape."""
        if not isinstance(result, dict):
            return None
        choices = result.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        choice = choices[0]
        if not isinstance(choice, dict):
            return None
        message = choice.get("message")
        if not isinstance(message, dict):
            return None
        content = message.get("content")
        return content if isinstance(content, str) and content else None

    async def stream(
        self, request: CompletionRequest
    ) -> AsyncGenerator[StreamChunk]:
        """
        Stream a completion as token deltas.

        Yields CONTENT chunks in arrival order followed by exactly one
        COMPLETION chunk. Raises GatewayStatusError if the gateway refuses
        the request, GatewayTimeoutError on timeout and StreamingError on
        any other transport failure.
        """
        parser = StreamingParser()
        accumulator = ChunkAccumulator()

        try:
            async with self.client.stream(
                "POST", self.completions_path, json=request.to_payload()
            ) as response:
                if response.status_code != HTTP_OK:
                    error_body = await response.aread()
                    raise GatewayStatusError(
                        response.status_code,
                        error_body.decode("utf-8", errors="replace"),
                    )

                async for raw_chunk in parser.parse_sse_stream(response):
                    chunk = accumulator.process_chunk(raw_chunk)
                    if chunk is None:
                        continue
                    yield chunk
                    if chunk.chunk_type is StreamChunkType.COMPLETION:
                        break

        except httpx.TimeoutException as e:
            raise GatewayTimeoutError("Gateway request timed out") from e
        except httpx.HTTPError as e:
            raise StreamingError(f"Stream error: {e!s}") from e

        stats = accumulator.get_streaming_stats()
        logger.debug(
            "Gateway stream finished",
            deltas=stats.content_deltas,
            skipped=stats.skipped_records,
            characters=stats.characters,
            duration_s=round(stats.total_duration, 3),
            **parser.get_stats(),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> GatewayClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

"""
Gateway integration for the voice bridge.

This package talks to an OpenAI-compatible chat-completions gateway:
- Immutable request models addressing an agent by id
- Incremental SSE decoding of streamed replies
- A single error hierarchy for status, timeout and transport failures

The HTTP client lives in ``voice_bridge.gateway.client``.
"""

from __future__ import annotations

from .exceptions import (
    GatewayError,
    GatewayStatusError,
    GatewayTimeoutError,
    InvalidResponseError,
    StreamingError,
)
from .models import CompletionRequest, GatewayMessage, MessageRole

__all__ = [
    "CompletionRequest",
    "GatewayError",
    "GatewayMessage",
    "GatewayStatusError",
    "GatewayTimeoutError",
    "InvalidResponseError",
    "MessageRole",
    "StreamingError",
]

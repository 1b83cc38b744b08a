"""
Error types for gateway operations.

Every failure that can end an exchange is a GatewayError, so callers only
need one except clause to turn upstream trouble into a client notification:
- Non-success HTTP status from the gateway
- Timeouts on connect/read
- Transport failures mid-stream
- Responses that cannot be understood
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base gateway error with response context."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_data: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data or {}


class GatewayStatusError(GatewayError):
    """Gateway answered with a non-success status code."""

    def __init__(self, status_code: int, body: str):
        super().__init__(
            f"Gateway {status_code}: {body[:500]}",
            status_code=status_code,
        )
        self.body = body


class GatewayTimeoutError(GatewayError):
    """Gateway request timed out."""
    pass


class InvalidResponseError(GatewayError):
    """Gateway response could not be decoded."""
    pass


class StreamingError(GatewayError):
    """Transport failure while a streamed reply was being read."""
    pass

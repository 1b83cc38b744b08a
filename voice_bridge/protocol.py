"""
Wire models for the client-facing protocol.

WebSocket messages are discriminated by ``type``:
- inbound:  {"type": "text", "text": "..."}
- outbound: sentence, done and error notifications

The ``POST /text`` endpoint uses the request/response models at the bottom.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

INVALID_MESSAGE_ERROR = 'Expected {"type": "text", "text": "<non-empty string>"}'
MISSING_TEXT_ERROR = 'Missing "text" field'


class InboundTextMessage(BaseModel):
    """A user utterance sent over the WebSocket."""
    model_config = ConfigDict(extra="ignore")

    type: Literal["text"]
    text: StrictStr = Field(min_length=1)


class InvalidMessageError(ValueError):
    """Inbound message could not be accepted; the session stays usable."""
    pass


def parse_inbound_message(raw: str | bytes | dict[str, Any]) -> InboundTextMessage:
    """
    Validate one inbound WebSocket message.

    Raises:
        InvalidMessageError: If the payload is not JSON or lacks the
            ``type``/``text`` fields.
    """
    if isinstance(raw, dict):
        payload: Any = raw
    else:
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidMessageError(f"Invalid JSON: {e}") from e

    try:
        return InboundTextMessage.model_validate(payload)
    except ValidationError as e:
        raise InvalidMessageError(INVALID_MESSAGE_ERROR) from e


class Notification(BaseModel):
    """Base for outbound WebSocket messages."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class SentenceNotification(Notification):
    type: Literal["sentence"] = "sentence"
    text: str
    index: int


class DoneNotification(Notification):
    type: Literal["done"] = "done"
    full_text: str = Field(alias="fullText")


class ErrorNotification(Notification):
    type: Literal["error"] = "error"
    error: str


class TextRequest(BaseModel):
    """Body of ``POST /text``."""
    text: StrictStr = Field(min_length=1)


class TextResponse(BaseModel):
    input: str
    status: Literal["ok"] = "ok"
    response: str


class ErrorResponse(BaseModel):
    status: Literal["error"] = "error"
    error: str

"""
Gateway request dataclasses.

The gateway speaks the OpenAI chat-completions dialect, addressing agents
through the ``openclaw:<agent id>`` model name.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

MODEL_PREFIX = "openclaw"


class MessageRole(Enum):
    """OpenAI-compatible message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class GatewayMessage:
    """OpenAI-compatible message structure."""
    role: MessageRole
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class CompletionRequest:
    """One request for a completion, immutable once built."""
    agent_id: str
    messages: tuple[GatewayMessage, ...]
    stream: bool = False
    session_tag: str | None = None

    @classmethod
    def for_utterance(
        cls,
        text: str,
        *,
        agent_id: str,
        system_prompt: str | None = None,
        stream: bool = False,
        session_tag: str | None = None,
    ) -> CompletionRequest:
        """Build a request for a single user utterance."""
        messages: list[GatewayMessage] = []
        if system_prompt:
            messages.append(GatewayMessage(MessageRole.SYSTEM, system_prompt))
        messages.append(GatewayMessage(MessageRole.USER, text))
        return cls(
            agent_id=agent_id,
            messages=tuple(messages),
            stream=stream,
            session_tag=session_tag,
        )

    @property
    def model(self) -> str:
        return f"{MODEL_PREFIX}:{self.agent_id}"

    def to_payload(self) -> dict[str, Any]:
        """Render the JSON body sent to the gateway."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
            "stream": self.stream,
        }
        if self.session_tag:
            payload["user"] = self.session_tag
        return payload

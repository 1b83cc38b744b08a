"""
Per-connection session control.

A SessionController owns one client connection and at most one in-flight
exchange. Each exchange runs as its own asyncio task that consumes the
gateway stream, feeds the sentence segmenter and pushes notifications to
the client:

    idle -> requesting -> streaming -> completed | errored | superseded

A new text message supersedes the running exchange before the next one
starts, and connection close supersedes it too. Superseded exchanges never
produce a terminal notification; every other exchange produces exactly one.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from voice_bridge.gateway.exceptions import GatewayError
from voice_bridge.gateway.models import CompletionRequest
from voice_bridge.gateway.streaming.models import StreamChunk, StreamChunkType
from voice_bridge.logging_utils import ContextualLogger
from voice_bridge.protocol import (
    DoneNotification,
    ErrorNotification,
    InvalidMessageError,
    Notification,
    SentenceNotification,
    parse_inbound_message,
)
from voice_bridge.sentences import SentenceSegmenter

INTERNAL_ERROR_MESSAGE = "Internal bridge error"
DEFAULT_CANCEL_GRACE = 1.0

Sender = Callable[[dict[str, Any]], Awaitable[None]]


@runtime_checkable
class StreamingGateway(Protocol):
    """What the controller needs from the gateway client."""

    def stream(self, request: CompletionRequest) -> AsyncGenerator[StreamChunk]: ...


class ExchangeState(Enum):
    """Lifecycle of one completion request."""
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    SUPERSEDED = "superseded"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    ExchangeState.COMPLETED,
    ExchangeState.ERRORED,
    ExchangeState.SUPERSEDED,
})

ALLOWED_TRANSITIONS: dict[ExchangeState, frozenset[ExchangeState]] = {
    ExchangeState.IDLE: frozenset({ExchangeState.REQUESTING}),
    ExchangeState.REQUESTING: TERMINAL_STATES | {ExchangeState.STREAMING},
    ExchangeState.STREAMING: TERMINAL_STATES | {ExchangeState.STREAMING},
    ExchangeState.COMPLETED: frozenset(),
    ExchangeState.ERRORED: frozenset(),
    ExchangeState.SUPERSEDED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """A transition not present in ALLOWED_TRANSITIONS was requested."""
    pass


@dataclass
class Exchange:
    """State of one completion request, owned by its SessionController."""
    exchange_id: int
    request: CompletionRequest
    state: ExchangeState = ExchangeState.IDLE
    segmenter: SentenceSegmenter = field(default_factory=SentenceSegmenter)
    next_index: int = 0
    reply_parts: list[str] = field(default_factory=list)
    task: asyncio.Task[None] | None = None

    def advance(self, new_state: ExchangeState) -> bool:
        """
        Move to ``new_state``.

        Returns:
            False if the exchange is already terminal (late callbacks from a
            stale upstream handle land here), True otherwise.

        Raises:
            InvalidTransitionError: If the move is not allowed from the
                current non-terminal state.
        """
        if self.state.terminal:
            return False
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Exchange {self.exchange_id}: "
                f"{self.state.value} -> {new_state.value} is not allowed"
            )
        self.state = new_state
        return True

    def add_delta(self, delta: str) -> list[SentenceNotification]:
        """Record a token delta and number the sentences it completes."""
        self.reply_parts.append(delta)
        return [self._number(s) for s in self.segmenter.feed(delta)]

    def flush(self) -> SentenceNotification | None:
        """Number the unterminated remainder, if there is one."""
        remainder = self.segmenter.flush()
        return self._number(remainder) if remainder else None

    def _number(self, sentence: str) -> SentenceNotification:
        notification = SentenceNotification(text=sentence, index=self.next_index)
        self.next_index += 1
        return notification

    @property
    def full_text(self) -> str:
        return "".join(self.reply_parts).strip()


@dataclass
class Session:
    """One client connection."""
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    exchange: Exchange | None = None
    exchange_count: int = 0
    closed: bool = False

    @property
    def state(self) -> ExchangeState:
        """State of the active exchange, or IDLE when nothing is in flight."""
        if self.exchange is None or self.exchange.state.terminal:
            return ExchangeState.IDLE
        return self.exchange.state


class SessionController:
    """
    Drives exchanges for one client connection.

    The controller is transport agnostic: ``send`` receives plain dicts ready
    to be JSON encoded, and the transport calls handle_message() for each
    inbound frame and close() when the connection goes away.
    """

    def __init__(
        self,
        gateway: StreamingGateway,
        send: Sender,
        *,
        agent_id: str,
        system_prompt: str | None = None,
        session_id: str | None = None,
        cancel_grace: float = DEFAULT_CANCEL_GRACE,
    ) -> None:
        self.gateway = gateway
        self.agent_id = agent_id
        self.system_prompt = system_prompt
        self.cancel_grace = cancel_grace
        self.session = Session(session_id=session_id or uuid.uuid4().hex)

        self._send = send
        self._send_lock = asyncio.Lock()
        self._log = ContextualLogger({"session_id": self.session.session_id})

    @property
    def session_tag(self) -> str:
        """User tag passed upstream so the gateway can keep continuity."""
        return f"voice-bridge:{self.session.session_id}"

    # ------------------------------------------------------------------ #
    # Inbound                                                             #
    # ------------------------------------------------------------------ #

    async def handle_message(self, raw: str | bytes | dict[str, Any]) -> Exchange | None:
        """
        Handle one inbound frame.

        Invalid frames are answered with an error notification and leave the
        session untouched; valid ones start a new exchange.
        """
        if self.session.closed:
            return None

        try:
            message = parse_inbound_message(raw)
        except InvalidMessageError as e:
            self._log.warning("Rejected inbound message", error=str(e))
            await self._emit(ErrorNotification(error=str(e)))
            return None

        return self.start_exchange(message.text)

    def start_exchange(self, text: str) -> Exchange:
        """Supersede any unresolved exchange and start a new one for ``text``."""
        self._supersede_active("new_message")

        self.session.exchange_count += 1
        request = CompletionRequest.for_utterance(
            text,
            agent_id=self.agent_id,
            system_prompt=self.system_prompt,
            stream=True,
            session_tag=self.session_tag,
        )
        exchange = Exchange(exchange_id=self.session.exchange_count, request=request)
        exchange.advance(ExchangeState.REQUESTING)
        self.session.exchange = exchange

        self._log.info(
            "Exchange started",
            exchange_id=exchange.exchange_id,
            text=text[:120],
        )
        exchange.task = asyncio.create_task(
            self._run_exchange(exchange),
            name=f"exchange-{self.session.session_id}-{exchange.exchange_id}",
        )
        return exchange

    async def close(self) -> None:
        """Connection closed: supersede the active exchange and stop sending."""
        if self.session.closed:
            return
        self.session.closed = True
        task = self._supersede_active("connection_closed")

        if task is not None and task is not asyncio.current_task():
            # Bounded wait so the upstream response gets released promptly
            await asyncio.wait([task], timeout=self.cancel_grace)

        self._log.info(
            "Session closed", exchanges=self.session.exchange_count
        )

    async def drain(self) -> None:
        """Wait until the current exchange task has finished."""
        exchange = self.session.exchange
        if exchange is None or exchange.task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await exchange.task

    # ------------------------------------------------------------------ #
    # Exchange lifecycle                                                  #
    # ------------------------------------------------------------------ #

    def _supersede_active(self, reason: str) -> asyncio.Task[None] | None:
        exchange = self.session.exchange
        if exchange is None or exchange.state.terminal:
            return None

        previous = exchange.state
        exchange.advance(ExchangeState.SUPERSEDED)
        self._log.info(
            "Exchange superseded",
            exchange_id=exchange.exchange_id,
            previous_state=previous.value,
            reason=reason,
        )

        task = exchange.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        return task

    def _is_live(self, exchange: Exchange) -> bool:
        return (
            not self.session.closed
            and self.session.exchange is exchange
            and not exchange.state.terminal
        )

    def _settle(self, exchange: Exchange, state: ExchangeState) -> bool:
        """Move a live exchange into a terminal state; False if it was stale."""
        if not self._is_live(exchange):
            return False
        return exchange.advance(state)

    async def _run_exchange(self, exchange: Exchange) -> None:
        log = self._log.bind(exchange_id=exchange.exchange_id)
        finish_reason: str | None = None
        try:
            async with contextlib.aclosing(
                self.gateway.stream(exchange.request)
            ) as chunks:
                async for chunk in chunks:
                    if not self._is_live(exchange):
                        return
                    if chunk.chunk_type is StreamChunkType.COMPLETION:
                        finish_reason = chunk.finish_reason
                        break
                    if chunk.content:
                        await self._on_delta(exchange, chunk.content)

            await self._on_stream_end(exchange, finish_reason)

        except GatewayError as e:
            log.warning(
                "Gateway error",
                error_type=type(e).__name__,
                status_code=e.status_code,
                error=str(e),
            )
            await self._on_error(exchange, str(e))
        except Exception as e:
            log.error(
                "Unexpected exchange failure",
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._on_error(exchange, INTERNAL_ERROR_MESSAGE)

    async def _on_delta(self, exchange: Exchange, delta: str) -> None:
        if exchange.state is ExchangeState.REQUESTING:
            exchange.advance(ExchangeState.STREAMING)

        for notification in exchange.add_delta(delta):
            if not await self._emit(notification, exchange):
                return

    async def _on_stream_end(
        self, exchange: Exchange, finish_reason: str | None = None
    ) -> None:
        if not self._is_live(exchange):
            return

        final = exchange.flush()
        if final is not None and not await self._emit(final, exchange):
            return

        if not self._settle(exchange, ExchangeState.COMPLETED):
            return

        self._log.info(
            "Exchange completed",
            exchange_id=exchange.exchange_id,
            sentences=exchange.next_index,
            characters=len(exchange.full_text),
            finish_reason=finish_reason,
        )
        await self._emit(DoneNotification(full_text=exchange.full_text))

    async def _on_error(self, exchange: Exchange, message: str) -> None:
        if not self._settle(exchange, ExchangeState.ERRORED):
            return
        await self._emit(ErrorNotification(error=message))

    # ------------------------------------------------------------------ #
    # Outbound                                                            #
    # ------------------------------------------------------------------ #

    async def _emit(
        self, notification: Notification, exchange: Exchange | None = None
    ) -> bool:
        """
        Deliver one notification.

        With ``exchange`` given the notification is dropped unless that
        exchange is still live when the send lock is acquired. A failed
        delivery is treated as the connection going away.
        """
        async with self._send_lock:
            if self.session.closed:
                return False
            if exchange is not None and not self._is_live(exchange):
                return False
            try:
                await self._send(notification.to_wire())
            except Exception as e:
                self._log.warning(
                    "Client delivery failed, closing session",
                    error_type=type(e).__name__,
                    error=str(e),
                )
                self.session.closed = True
                self._supersede_active("delivery_failed")
                return False
        return True

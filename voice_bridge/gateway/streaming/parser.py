"""
Incremental SSE decoder for streamed chat completions.

The parser is split in two layers:
- StreamingParser turns arbitrary text chunks into SSE data records,
  keeping a residual buffer across chunk boundaries
- ChunkAccumulator turns records into token deltas and the final
  end-of-stream signal

Both are plain objects without I/O so they can be fed by hand in tests;
parse_sse_stream() wires the parser to an httpx response.
"""

from __future__ import annotations

import json
import time
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import structlog

from .models import (
    AccumulatorState,
    RawSSEChunk,
    SSEEventType,
    StreamChunk,
    StreamChunkType,
    StreamingStats,
)

DONE_MARKER = "[DONE]"
EVENT_DELIMITER = "\n\n"
DATA_PREFIX = "data:"
HEARTBEAT_PAYLOADS = frozenset({"", "ping", "heartbeat"})

logger = structlog.get_logger(__name__)


class StreamingParser:
    """SSE parser that tolerates split and malformed records."""

    def __init__(self) -> None:
        self._buffer = ""
        self.finished = False
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> dict[str, int]:
        return {
            "total_records": 0,
            "malformed_records": 0,
            "heartbeats": 0,
        }

    def feed(self, text: str) -> list[RawSSEChunk]:
        """
        Append a chunk of stream text and return every complete record.

        Once the done marker is seen the parser is finished: the rest of the
        chunk and anything fed afterwards is ignored.
        """
        if self.finished:
            return []

        # Normalise after joining so a CRLF split across chunks still matches
        self._buffer = (self._buffer + text).replace("\r\n", "\n")

        records: list[RawSSEChunk] = []
        while EVENT_DELIMITER in self._buffer:
            event_data, self._buffer = self._buffer.split(EVENT_DELIMITER, 1)
            for record in self._parse_sse_event(event_data):
                records.append(record)
                if record.event_type is SSEEventType.COMPLETION:
                    self.finished = True
                    self._buffer = ""
                    return records

        return records

    def finish(self) -> list[RawSSEChunk]:
        """
        Signal that the transport has ended.

        Gives the residual buffer one last parse attempt and makes sure the
        returned records end with exactly one COMPLETION record. Returns an
        empty list if the done marker was already seen.
        """
        if self.finished:
            return []

        records: list[RawSSEChunk] = []
        residual, self._buffer = self._buffer, ""
        if residual.strip():
            records.extend(self._parse_sse_event(residual))

        self.finished = True
        if records and records[-1].event_type is SSEEventType.COMPLETION:
            return records

        records.append(
            RawSSEChunk(
                event_type=SSEEventType.COMPLETION,
                data=None,
                raw_data="",
            )
        )
        return records

    async def parse_sse_stream(
        self,
        response: httpx.Response,
        chunk_size: int | None = None,
    ) -> AsyncGenerator[RawSSEChunk]:
        """
        Parse an httpx streaming response into SSE records.

        Transport errors are not caught here; they end the stream and are
        mapped to gateway errors by the client.
        """
        async for text in response.aiter_text(chunk_size=chunk_size):
            for record in self.feed(text):
                yield record
            if self.finished:
                return

        for record in self.finish():
            yield record

    def _parse_sse_event(self, event_data: str) -> list[RawSSEChunk]:
        """Parse the data lines of one SSE event."""
        records: list[RawSSEChunk] = []
        timestamp = time.time()

        for raw_line in event_data.split("\n"):
            line = raw_line.strip()
            if not line.startswith(DATA_PREFIX):
                # event:, id:, retry: and comment lines carry no content
                continue

            data_content = line[len(DATA_PREFIX):].strip()
            self.stats["total_records"] += 1

            if data_content == DONE_MARKER:
                records.append(
                    RawSSEChunk(
                        event_type=SSEEventType.COMPLETION,
                        data=None,
                        raw_data=DONE_MARKER,
                        timestamp=timestamp,
                    )
                )
                return records

            if data_content in HEARTBEAT_PAYLOADS:
                self.stats["heartbeats"] += 1
                records.append(
                    RawSSEChunk(
                        event_type=SSEEventType.HEARTBEAT,
                        data=None,
                        raw_data=data_content,
                        timestamp=timestamp,
                    )
                )
                continue

            records.append(self._parse_payload(data_content, timestamp))

        return records

    def _parse_payload(self, data_content: str, timestamp: float) -> RawSSEChunk:
        try:
            parsed = json.loads(data_content)
        except json.JSONDecodeError as e:
            self.stats["malformed_records"] += 1
            return RawSSEChunk(
                event_type=SSEEventType.ERROR,
                data=None,
                raw_data=data_content,
                error=f"JSON decode error: {e}",
                timestamp=timestamp,
            )

        if not isinstance(parsed, dict):
            self.stats["malformed_records"] += 1
            return RawSSEChunk(
                event_type=SSEEventType.ERROR,
                data=None,
                raw_data=data_content,
                error=f"Expected JSON object, got {type(parsed).__name__}",
                timestamp=timestamp,
            )

        return RawSSEChunk(
            event_type=SSEEventType.CHUNK,
            data=parsed,
            raw_data=data_content,
            timestamp=timestamp,
        )

    def get_stats(self) -> dict[str, int]:
        """Get parser statistics for monitoring."""
        return self.stats.copy()


def extract_delta_content(data: dict[str, Any]) -> str | None:
    """Return ``choices[0].delta.content`` if it is a non-empty string."""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None

    choice = choices[0]
    if not isinstance(choice, dict):
        return None

    delta = choice.get("delta")
    if not isinstance(delta, dict):
        return None

    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


def extract_finish_reason(data: dict[str, Any]) -> str | None:
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        reason = choices[0].get("finish_reason")
        if isinstance(reason, str):
            return reason
    return None


class ChunkAccumulator:
    """Turns SSE records into token deltas, skipping records without content."""

    def __init__(self) -> None:
        self.state = AccumulatorState()

    def process_chunk(self, raw_chunk: RawSSEChunk) -> StreamChunk | None:
        """
        Process one record.

        Returns a CONTENT chunk for a token delta, a COMPLETION chunk for the
        end of stream, and None for everything else (heartbeats, role-only
        records, malformed records).
        """
        self.state.note_record(raw_chunk.timestamp)

        if raw_chunk.event_type is SSEEventType.COMPLETION:
            return self._create_completion_chunk()

        if raw_chunk.event_type is SSEEventType.ERROR:
            self.state.skipped_records += 1
            logger.debug(
                "Skipping malformed stream record",
                error=raw_chunk.error,
                raw_data=raw_chunk.raw_data[:200],
            )
            return None

        if raw_chunk.event_type is SSEEventType.HEARTBEAT or not raw_chunk.data:
            return None

        if reason := extract_finish_reason(raw_chunk.data):
            self.state.finish_reason = reason

        content = extract_delta_content(raw_chunk.data)
        if content is None:
            return None

        self.state.characters += len(content)
        self.state.delta_count += 1
        return StreamChunk(
            chunk_type=StreamChunkType.CONTENT,
            content=content,
        )

    def _create_completion_chunk(self) -> StreamChunk:
        return StreamChunk(
            chunk_type=StreamChunkType.COMPLETION,
            content=None,
            finish_reason=self.state.finish_reason or "stop",
        )

    def get_streaming_stats(self) -> StreamingStats:
        """Summarise the stream processed so far."""
        return StreamingStats(
            total_records=self.state.chunk_count,
            content_deltas=self.state.delta_count,
            skipped_records=self.state.skipped_records,
            total_duration=self.state.streaming_duration,
            characters=self.state.characters,
        )

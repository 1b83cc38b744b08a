"""
Streaming-specific dataclasses for the gateway SSE decoder.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class StreamChunkType(Enum):
    """Types of decoded streaming chunks."""
    CONTENT = "content"
    COMPLETION = "completion"


class SSEEventType(Enum):
    """Server-Sent Event record types."""
    CHUNK = "chunk"
    COMPLETION = "completion"
    ERROR = "error"
    HEARTBEAT = "heartbeat"


@dataclass(frozen=True)
class RawSSEChunk:
    """One SSE data record as read off the wire."""
    event_type: SSEEventType
    data: dict[str, Any] | None
    raw_data: str
    error: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class StreamChunk:
    """A token delta, or the end-of-stream signal carrying the finish reason."""
    chunk_type: StreamChunkType
    content: str | None = None
    finish_reason: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class AccumulatorState:
    """Mutable state for delta accumulation."""
    characters: int = 0
    chunk_count: int = 0
    delta_count: int = 0
    skipped_records: int = 0
    finish_reason: str | None = None
    first_chunk_time: float | None = None
    last_chunk_time: float | None = None

    def note_record(self, timestamp: float) -> None:
        """Count one record and stretch the timing window to cover it."""
        self.chunk_count += 1
        self.first_chunk_time = self.first_chunk_time or timestamp
        self.last_chunk_time = timestamp

    @property
    def streaming_duration(self) -> float:
        """Time between the first and the last record."""
        if self.first_chunk_time is None or self.last_chunk_time is None:
            return 0.0
        return self.last_chunk_time - self.first_chunk_time


@dataclass(frozen=True)
class StreamingStats:
    """Statistics for one decoded stream."""
    total_records: int
    content_deltas: int
    skipped_records: int
    total_duration: float
    characters: int

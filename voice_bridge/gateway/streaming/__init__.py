"""
Streaming support for gateway replies.

- SSE record parsing with a residual buffer across chunk boundaries
- Token delta accumulation
- End-of-stream detection
"""

from __future__ import annotations

from .models import RawSSEChunk, SSEEventType, StreamChunk, StreamChunkType
from .parser import ChunkAccumulator, StreamingParser

__all__ = [
    "ChunkAccumulator",
    "RawSSEChunk",
    "SSEEventType",
    "StreamChunk",
    "StreamChunkType",
    "StreamingParser",
]

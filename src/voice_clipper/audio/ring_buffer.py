#!/usr/bin/env python3
"""
Per-Source Ring Buffer

Time-windowed store of decoded chunks for one speaker. Eviction by age is
the only backpressure: memory stays proportional to the retention window no
matter how fast audio arrives.

Writes go through a BufferWriter handed to the source's ingestion path.
Sealing the buffer closes that writer, so a chunk that arrives after the
stream ended is dropped instead of landing in (or recreating) the buffer.
"""

import time
import logging
import threading
from collections import deque
from dataclasses import replace
from typing import Callable, Deque, Optional, Tuple

from .types import AudioChunk, SourceId

logger = logging.getLogger(__name__)


class BufferWriter:
    """Write handle owned by exactly one ingestion path."""

    def __init__(self, buffer: "SourceRingBuffer"):
        self._buffer = buffer
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def buffer(self) -> "SourceRingBuffer":
        return self._buffer

    def write(self, chunk: AudioChunk) -> bool:
        """Append a chunk. Returns False if this writer has been closed."""
        return self._buffer._append_from(self, chunk)

    def close(self) -> None:
        self._buffer._close_writer(self)


class SourceRingBuffer:
    """Bounded, time-ordered chunk store for one audio source."""

    def __init__(self,
                 owner: SourceId,
                 retention_seconds: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            owner: Identity of the speaking participant
            retention_seconds: Chunks older than this (relative to clock()) are evicted
            clock: Monotonic time source in seconds
        """
        self.owner = owner
        self.retention_seconds = float(retention_seconds)
        self._clock = clock
        self._chunks: Deque[AudioChunk] = deque()
        self._lock = threading.Lock()
        self._writer: Optional[BufferWriter] = None
        self._sealed = False

        # Stats
        self.total_chunks_appended = 0
        self.total_chunks_evicted = 0
        self.total_chunks_rejected = 0

    # -- writing -----------------------------------------------------------

    def open_writer(self) -> BufferWriter:
        """Unseal the buffer and return a fresh writer, closing any previous one."""
        with self._lock:
            if self._writer is not None:
                self._writer._closed = True
            self._writer = BufferWriter(self)
            self._sealed = False
            return self._writer

    def seal(self) -> None:
        """Stop accepting writes. Contents stay readable until they age out."""
        with self._lock:
            if self._writer is not None:
                self._writer._closed = True
                self._writer = None
            self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def append(self, chunk: AudioChunk) -> bool:
        """Insert at the tail, then evict from the head by age.

        Returns:
            False if the buffer is sealed and the chunk was dropped
        """
        with self._lock:
            if self._sealed:
                self.total_chunks_rejected += 1
                return False
            self._append_locked(chunk)
            return True

    def _append_from(self, writer: BufferWriter, chunk: AudioChunk) -> bool:
        with self._lock:
            if writer is not self._writer or writer._closed:
                self.total_chunks_rejected += 1
                logger.debug(f"Dropped late chunk for source {self.owner} (writer closed)")
                return False
            self._append_locked(chunk)
            return True

    def _close_writer(self, writer: BufferWriter) -> None:
        with self._lock:
            writer._closed = True
            if self._writer is writer:
                self._writer = None

    def _append_locked(self, chunk: AudioChunk) -> None:
        # Timestamps never go backwards within one source
        if self._chunks and chunk.timestamp < self._chunks[-1].timestamp:
            chunk = replace(chunk, timestamp=self._chunks[-1].timestamp)

        self._chunks.append(chunk)
        self.total_chunks_appended += 1

        now = self._clock()
        evicted = 0
        while self._chunks and now - self._chunks[0].timestamp > self.retention_seconds:
            self._chunks.popleft()
            evicted += 1

        if evicted:
            self.total_chunks_evicted += evicted
            logger.debug(f"Evicted {evicted} chunk(s) from source {self.owner}")

    def clear(self) -> None:
        """Drop all contents."""
        with self._lock:
            self._chunks.clear()

    # -- reading -----------------------------------------------------------

    def snapshot(self,
                 seconds: Optional[float] = None,
                 max_chunks: Optional[int] = None,
                 since: Optional[float] = None) -> Tuple[AudioChunk, ...]:
        """
        Copy out the current contents, oldest first.

        Chunks that have aged past the retention window are skipped even if
        no append has evicted them yet (a sealed buffer never appends).

        Args:
            seconds: Only chunks from the trailing window of this many seconds
            max_chunks: Only the trailing K chunks
            since: Only chunks captured at or after this clock instant

        Returns:
            Tuple of chunks the caller owns
        """
        with self._lock:
            now = self._clock()
            cutoff = now - self.retention_seconds
            if seconds is not None:
                cutoff = max(cutoff, now - seconds)
            if since is not None:
                cutoff = max(cutoff, since)
            chunks = tuple(c for c in self._chunks if c.timestamp >= cutoff)

        if max_chunks is not None:
            chunks = chunks[-max_chunks:] if max_chunks > 0 else ()
        return chunks

    def is_expired(self) -> bool:
        """True when nothing inside the retention window remains."""
        with self._lock:
            if not self._chunks:
                return True
            return self._clock() - self._chunks[-1].timestamp > self.retention_seconds

    @property
    def oldest_timestamp(self) -> Optional[float]:
        with self._lock:
            return self._chunks[0].timestamp if self._chunks else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._chunks)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "owner": self.owner,
                "chunks": len(self._chunks),
                "sealed": self._sealed,
                "retention_seconds": self.retention_seconds,
                "total_chunks_appended": self.total_chunks_appended,
                "total_chunks_evicted": self.total_chunks_evicted,
                "total_chunks_rejected": self.total_chunks_rejected,
            }

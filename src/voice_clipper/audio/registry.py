#!/usr/bin/env python3
"""
Session Buffer Registry

Maps each speaking participant to its ring buffer for the lifetime of one
voice session. The registry object is passed to the ingestion and assembly
components explicitly; nothing here is module-level state.
"""

import time
import logging
import itertools
import threading
from typing import Callable, Dict, List, Optional, Tuple

from .ring_buffer import BufferWriter, SourceRingBuffer
from .types import AudioChunk, SourceId
from ..config import POLICY_CLEAR_ON_SILENCE, POLICY_RETAIN_UNTIL_EVICTION, SILENCE_POLICIES
from ..errors import ConfigurationError, DecodeFault

logger = logging.getLogger(__name__)


class SessionBufferRegistry:
    """Source id -> SourceRingBuffer, safe to read while sources come and go."""

    def __init__(self,
                 retention_seconds: float = 30.0,
                 silence_policy: str = POLICY_RETAIN_UNTIL_EVICTION,
                 clock: Callable[[], float] = time.monotonic,
                 channels: int = 1):
        """
        Args:
            retention_seconds: Rolling window kept for every source
            silence_policy: What end_stream() does with a source's history
                            ('clear-on-silence' or 'retain-until-eviction')
            clock: Monotonic time source shared with the ring buffers
            channels: Interleaved channel count of every chunk (16-bit samples)
        """
        if silence_policy not in SILENCE_POLICIES:
            raise ConfigurationError(f"Unknown silence policy: {silence_policy}")

        self.retention_seconds = float(retention_seconds)
        self.silence_policy = silence_policy
        self.clock = clock
        self.frame_width = 2 * int(channels)

        self._buffers: Dict[SourceId, SourceRingBuffer] = {}
        self._writers: Dict[SourceId, BufferWriter] = {}
        # Source id -> clock time its stream ended; late chunks for these are refused
        self._ended: Dict[SourceId, float] = {}
        self._lock = threading.Lock()
        self._seq = itertools.count()

        # Stats
        self.chunks_rejected = 0

    def check_alignment(self, pcm: bytes) -> None:
        """
        Raises:
            DecodeFault: pcm is not a whole number of sample frames
        """
        if len(pcm) % self.frame_width:
            raise DecodeFault(f"Chunk of {len(pcm)} bytes is not a whole number of "
                              f"{self.frame_width}-byte sample frames")

    def make_chunk(self, timestamp: float, pcm: bytes) -> AudioChunk:
        """Stamp a chunk with the next session-wide arrival ordinal.

        Raises:
            DecodeFault: pcm is not a whole number of sample frames
        """
        self.check_alignment(pcm)
        with self._lock:
            seq = next(self._seq)
        return AudioChunk(timestamp=timestamp, pcm=bytes(pcm), seq=seq)

    def get_or_create(self, source_id: SourceId) -> SourceRingBuffer:
        """Return the buffer for a source, creating it on first use."""
        with self._lock:
            return self._get_or_create_locked(source_id)

    def _get_or_create_locked(self, source_id: SourceId) -> SourceRingBuffer:
        buffer = self._buffers.get(source_id)
        if buffer is None:
            buffer = SourceRingBuffer(source_id, self.retention_seconds, clock=self.clock)
            self._buffers[source_id] = buffer
            logger.info(f"Created ring buffer for source {source_id}")
        return buffer

    def open_stream(self, source_id: SourceId) -> BufferWriter:
        """Source became active: return the writer its ingestion path must use.

        Any writer from an earlier stream of the same source is closed.
        """
        with self._lock:
            buffer = self._get_or_create_locked(source_id)
            writer = buffer.open_writer()
            self._writers[source_id] = writer
            self._ended.pop(source_id, None)
        logger.info(f"Opened stream for source {source_id}")
        return writer

    def end_stream(self, source_id: SourceId, writer: Optional[BufferWriter] = None) -> bool:
        """Source went quiet or its stream closed.

        The writer is closed before anything else, so a chunk still in flight
        is dropped. Then the silence policy decides the history's fate.

        Args:
            source_id: Source whose stream ended
            writer: The ending stream's writer. If a newer stream has been
                    opened since, only this writer is closed and the newer
                    stream is left alone.

        Returns:
            False if a newer stream was open and was left untouched
        """
        with self._lock:
            current = self._writers.get(source_id)
            if writer is not None and current is not None and current is not writer:
                superseded = True
            else:
                superseded = False
                now = self.clock()
                self._ended[source_id] = now
                self._writers.pop(source_id, None)
                buffer = self._buffers.get(source_id)
                if buffer is not None:
                    buffer.seal()
                    if self.silence_policy == POLICY_CLEAR_ON_SILENCE:
                        buffer.clear()
                        del self._buffers[source_id]
                self._forget_ended_locked(now)

        if superseded:
            writer.close()
            logger.debug(f"Stream end for source {source_id} superseded by a newer stream")
            return False

        if self.silence_policy == POLICY_CLEAR_ON_SILENCE:
            logger.info(f"Stream ended for source {source_id}; history cleared")
        else:
            logger.info(f"Stream ended for source {source_id}; history retained until eviction")
        return True

    def remove(self, source_id: SourceId) -> Optional[SourceRingBuffer]:
        """Excise a source entirely, whatever the policy."""
        with self._lock:
            self._ended[source_id] = self.clock()
            self._writers.pop(source_id, None)
            buffer = self._buffers.pop(source_id, None)
        if buffer is not None:
            buffer.seal()
            logger.info(f"Removed ring buffer for source {source_id}")
        return buffer

    def ingest(self, source_id: SourceId, timestamp: float, pcm: bytes) -> bool:
        """Store one decoded (source, timestamp, bytes) tuple.

        A source never seen before gets a buffer on its first chunk. A source
        whose stream was ended is not brought back by late chunks; it needs
        a new open_stream(). Chunks that are not a whole number of sample
        frames are refused.

        Returns:
            True if the chunk was stored
        """
        try:
            chunk = self.make_chunk(timestamp, pcm)
        except DecodeFault as e:
            self.chunks_rejected += 1
            logger.warning(f"Dropped chunk for source {source_id}: {e}")
            return False

        with self._lock:
            if source_id in self._ended:
                logger.debug(f"Dropped chunk for ended source {source_id}")
                return False
            writer = self._writers.get(source_id)
            if writer is None:
                buffer = self._get_or_create_locked(source_id)
                writer = buffer.open_writer()
                self._writers[source_id] = writer

        return writer.write(chunk)

    def snapshot(self, source_id: SourceId, seconds: Optional[float] = None,
                 since: Optional[float] = None) -> Tuple[AudioChunk, ...]:
        with self._lock:
            buffer = self._buffers.get(source_id)
        if buffer is None:
            return ()
        return buffer.snapshot(seconds=seconds, since=since)

    def all_snapshots(self, seconds: Optional[float] = None,
                      since: Optional[float] = None) -> Dict[SourceId, Tuple[AudioChunk, ...]]:
        """One snapshot per tracked source, skipping sources with nothing to offer."""
        with self._lock:
            buffers = list(self._buffers.items())

        snapshots = {}
        for source_id, buffer in buffers:
            chunks = buffer.snapshot(seconds=seconds, since=since)
            if chunks:
                snapshots[source_id] = chunks
        return snapshots

    def prune(self) -> List[SourceId]:
        """Drop sealed buffers whose whole history has aged out."""
        with self._lock:
            expired = [sid for sid, buf in self._buffers.items() if buf.sealed and buf.is_expired()]
            for source_id in expired:
                del self._buffers[source_id]
            self._forget_ended_locked(self.clock())
        if expired:
            logger.debug(f"Pruned {len(expired)} expired source buffer(s)")
        return expired

    def _forget_ended_locked(self, now: float) -> None:
        # Past the retention window a late chunk could not land in any clip anyway
        stale = [sid for sid, ended_at in self._ended.items()
                 if sid not in self._buffers and now - ended_at > self.retention_seconds]
        for source_id in stale:
            del self._ended[source_id]

    def sources(self) -> List[SourceId]:
        with self._lock:
            return list(self._buffers)

    def is_active(self, source_id: SourceId) -> bool:
        with self._lock:
            return source_id in self._writers

    def close(self) -> None:
        """Tear down every buffer at session end."""
        with self._lock:
            buffers = list(self._buffers.values())
            self._buffers.clear()
            self._writers.clear()
            self._ended.clear()
        for buffer in buffers:
            buffer.seal()
            buffer.clear()
        logger.info(f"Session registry closed ({len(buffers)} source buffer(s) released)")

    def __contains__(self, source_id: SourceId) -> bool:
        with self._lock:
            return source_id in self._buffers

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffers)

    def get_stats(self) -> dict:
        with self._lock:
            buffers = list(self._buffers.values())
            active = len(self._writers)
            ended = len(self._ended)
        return {
            "sources": len(buffers),
            "active_streams": active,
            "ended_sources": ended,
            "chunks_rejected": self.chunks_rejected,
            "silence_policy": self.silence_policy,
            "buffers": [b.get_stats() for b in buffers],
        }

#!/usr/bin/env python3
"""
Opus Decoder Adapter

Turns one speaker's compressed Opus frames into fixed-format PCM chunks in
that speaker's ring buffer.

Notes:
- Uses opuslib (libopus bindings); 48 kHz, 16-bit, 960 samples per channel
  per 20 ms frame by default
- Each source gets its own bounded asyncio.Queue and consumer task, so the
  caller of feed() never waits on decoding
- A malformed frame is dropped and decoding continues; any other decoder
  failure ends that source's ingestion and is reported through on_fault
- A packet lost in transit is rebuilt from the next packet's FEC data
  (or filled with silence when FEC is off)
"""

import time
import asyncio
import logging
from typing import Any, Callable, Optional

from .ring_buffer import BufferWriter
from .types import AudioChunk, SourceId
from ..errors import DecodeFault, StreamFault

try:
    import opuslib
    OPUS_AVAILABLE = True
    _opus_import_error = None
except Exception as e:
    OPUS_AVAILABLE = False
    _opus_import_error = e

logger = logging.getLogger(__name__)

_STOP = object()


class OpusFrameDecoder:
    """Decodes single Opus frames to little-endian int16 PCM bytes."""

    def __init__(self, sample_rate: int = 48000, channels: int = 1, frame_size: int = 960,
                 fec: bool = True):
        """
        Args:
            sample_rate: Output rate
            channels: Output channel count
            frame_size: Samples per channel per frame
            fec: Rebuild lost frames from the in-band forward error correction
                 data of the next packet; otherwise lost frames become silence
        """
        if not OPUS_AVAILABLE:
            raise ImportError(f"opuslib not available: {_opus_import_error}")

        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.frame_size = int(frame_size)
        self.fec = bool(fec)
        self._decoder = opuslib.Decoder(self.sample_rate, self.channels)

    def decode(self, frame: bytes, decode_fec: bool = False) -> bytes:
        """
        Decode one compressed frame.

        Raises:
            DecodeFault: The frame is empty or libopus rejected it
        """
        if not frame:
            raise DecodeFault("Empty Opus frame")
        try:
            pcm = self._decoder.decode(bytes(frame), self.frame_size, decode_fec=decode_fec)
        except opuslib.OpusError as e:
            raise DecodeFault(f"Opus decode error: {e}") from e

        if len(pcm) % (2 * self.channels):
            raise DecodeFault(f"Decoded {len(pcm)} bytes, not a whole number of frames")
        return pcm

    def conceal(self, next_frame: bytes) -> bytes:
        """Audio for the frame lost just before next_frame."""
        if self.fec:
            return self.decode(next_frame, decode_fec=True)
        return bytes(2 * self.channels * self.frame_size)


class SourceIngestor:
    """Independent decode stage for one source, feeding its ring buffer."""

    def __init__(self,
                 source_id: SourceId,
                 writer: BufferWriter,
                 decoder: Any,
                 chunk_factory: Callable[[float, bytes], AudioChunk],
                 clock: Callable[[], float] = time.monotonic,
                 queue_size: int = 250,
                 on_fault: Optional[Callable] = None):
        """
        Args:
            source_id: Speaker this stage belongs to
            writer: The only handle this stage may append through
            decoder: Object with decode(frame: bytes) -> bytes, and optionally
                     conceal(next_frame: bytes) -> bytes for lost packets
            chunk_factory: Builds a stamped AudioChunk from (timestamp, pcm)
            clock: Time source for chunk timestamps (taken when decoding completes)
            queue_size: Compressed frames held before new ones are dropped
            on_fault: Called with (source_id, StreamFault) when ingestion dies
                      Signature: callback(source_id, fault), sync or async
        """
        self.source_id = source_id
        self.writer = writer
        self.decoder = decoder
        self.chunk_factory = chunk_factory
        self.clock = clock
        self.queue_size = int(queue_size)
        self.on_fault = on_fault

        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.fault: Optional[StreamFault] = None

        # Stats
        self.frames_received = 0
        self.frames_dropped = 0
        self.decode_faults = 0
        self.chunks_written = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning(f"Ingestor for source {self.source_id} already running")
            return

        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._running = True
        self._task = asyncio.create_task(self._decode_loop())
        logger.info(f"Started ingestion for source {self.source_id}")

    def feed(self, frame: bytes, lost_previous: bool = False) -> bool:
        """Queue one compressed frame without waiting.

        Args:
            frame: Compressed Opus packet
            lost_previous: The packet before this one never arrived (sequence
                           gap); the decoder's conceal() fills the hole first

        Returns:
            False if the stage is stopped or its queue is full (frame dropped)
        """
        if not self._running or self._queue is None:
            return False

        self.frames_received += 1
        try:
            self._queue.put_nowait((frame, lost_previous))
            return True
        except asyncio.QueueFull:
            self.frames_dropped += 1
            if self.frames_dropped == 1 or self.frames_dropped % 50 == 0:
                logger.warning(f"Ingest queue full for source {self.source_id}, "
                               f"dropped {self.frames_dropped} frame(s) so far")
            return False

    async def stop(self, drain: bool = True, timeout: float = 2.0) -> None:
        """Stop decoding and close the writer.

        Args:
            drain: Decode frames already queued before stopping
            timeout: Seconds to wait for the drain before cancelling
        """
        if self._task is None:
            self._running = False
            self.writer.close()
            return

        self._running = False
        task = self._task
        self._task = None

        if drain and not task.done():
            try:
                await asyncio.wait_for(self._queue.put(_STOP), timeout=timeout)
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Ingestion drain timed out for source {self.source_id}; cancelling")

        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        # No append can happen past this point
        self.writer.close()
        logger.info(f"Stopped ingestion for source {self.source_id} "
                    f"(received={self.frames_received}, written={self.chunks_written}, "
                    f"dropped={self.frames_dropped}, decode_faults={self.decode_faults})")

    async def _decode_loop(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while True:
                item = await self._queue.get()
                if item is _STOP:
                    break

                frame, lost_previous = item
                steps = [self.decoder.decode]
                if lost_previous and hasattr(self.decoder, 'conceal'):
                    steps.insert(0, self.decoder.conceal)

                if not await self._run_steps(loop, steps, frame):
                    break
        except asyncio.CancelledError:
            logger.debug(f"Decode loop cancelled for source {self.source_id}")
            raise
        finally:
            self._running = False

        if self.fault is not None:
            self.writer.close()
            await self._report_fault(self.fault)

    async def _run_steps(self, loop, steps, frame: bytes) -> bool:
        """Decode and store frame once per step. False ends the decode loop."""
        for decode in steps:
            try:
                pcm = await loop.run_in_executor(None, decode, frame)
                chunk = self.chunk_factory(self.clock(), pcm)
            except DecodeFault as e:
                self.decode_faults += 1
                logger.warning(f"Dropped undecodable frame from source {self.source_id}: {e}")
                continue
            except Exception as e:
                self.fault = StreamFault(f"Decoder failed for source {self.source_id}: {e}",
                                         source_id=self.source_id)
                logger.error(str(self.fault))
                return False

            if not self.writer.write(chunk):
                logger.debug(f"Writer closed for source {self.source_id}; ending decode loop")
                return False
            self.chunks_written += 1
        return True

    async def _report_fault(self, fault: StreamFault) -> None:
        if self.on_fault is None:
            return
        try:
            if asyncio.iscoroutinefunction(self.on_fault):
                await self.on_fault(self.source_id, fault)
            else:
                self.on_fault(self.source_id, fault)
        except Exception as e:
            logger.error(f"Error in stream fault callback for source {self.source_id}: {e}")

    def get_stats(self) -> dict:
        return {
            "source_id": self.source_id,
            "is_running": self._running,
            "queued": self._queue.qsize() if self._queue else 0,
            "frames_received": self.frames_received,
            "frames_dropped": self.frames_dropped,
            "decode_faults": self.decode_faults,
            "chunks_written": self.chunks_written,
        }

#!/usr/bin/env python3
"""
Clip Assembler

Snapshot -> mix -> normalize -> serialize -> deliver, once per trigger.

Every invocation runs as its own ClipJob with its own copied snapshot, so
concurrent triggers cannot disturb each other or the ingestion paths. The
transient file is removed on every exit path.
"""

import os
import re
import asyncio
import logging
import tempfile
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import nanoid

from .audio.mixer import Mixer
from .audio.normalizer import normalize_pcm
from .audio.registry import SessionBufferRegistry
from .delivery import ClipDelivery
from .errors import DeliveryFault, SerializationFault
from .wav_writer import WavWriter

logger = logging.getLogger(__name__)

STATUS_DELIVERED = "delivered"
STATUS_EMPTY = "empty"
STATUS_FAILED = "failed"


class ClipState(Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    MIXING = "mixing"
    NORMALIZING = "normalizing"
    SERIALIZING = "serializing"
    DELIVERING = "delivering"
    FAILED = "failed"


@dataclass
class ClipResult:
    """Outcome of one assembly. 'empty' is a normal outcome, not an error."""
    status: str
    message: str = ""
    filename: Optional[str] = None
    byte_length: int = 0
    duration_seconds: float = 0.0
    source_count: int = 0
    artifact: Optional[bytes] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_DELIVERED


class ClipJob:
    """State of a single assembly invocation."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.state = ClipState.IDLE
        self.history: List[ClipState] = [ClipState.IDLE]

    def transition(self, state: ClipState) -> None:
        if self.state == ClipState.FAILED:
            return
        logger.debug(f"Clip job {self.job_id}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)


def clip_filename(requester_id: Optional[str] = None) -> str:
    """clip_<requester>_<random id>.wav, with the requester made filename-safe."""
    unique = nanoid.generate(size=10)
    if requester_id is None:
        return f"clip_{unique}.wav"
    clean_id = re.sub(r'[^\w\-.]', '_', str(requester_id))
    return f"clip_{clean_id}_{unique}.wav"


class ClipAssembler:
    """Builds and delivers a normalized WAV of recent audio."""

    def __init__(self,
                 registry: SessionBufferRegistry,
                 delivery: ClipDelivery,
                 mixer: Optional[Mixer] = None,
                 container_writer=None,
                 temp_dir: Optional[str] = None,
                 delivery_timeout: float = 30.0):
        """
        Args:
            registry: Source buffers to snapshot
            delivery: Collaborator that receives the finished artifact
            mixer: Mixer in the desired mode (default: concatenate, 48 kHz mono)
            container_writer: Object with async encode(PcmBuffer) -> bytes (default: WavWriter)
            temp_dir: Where transient clip files are written (default: system temp)
            delivery_timeout: Seconds allowed for the hand-off
        """
        self.registry = registry
        self.delivery = delivery
        self.mixer = mixer or Mixer()
        self.container_writer = container_writer or WavWriter()
        self.temp_dir = temp_dir
        self.delivery_timeout = float(delivery_timeout)

        # Stats
        self.clips_delivered = 0
        self.clips_empty = 0
        self.clips_failed = 0

    async def assemble(self,
                       seconds: Optional[float] = None,
                       since: Optional[float] = None,
                       requester_id: Optional[str] = None,
                       mode: Optional[str] = None) -> ClipResult:
        """
        Assemble and deliver one clip.

        Args:
            seconds: Trailing window to include; more than is retained yields what is retained
            since: Only audio captured at or after this clock instant
            requester_id: Passed to the delivery collaborator and used in the filename
            mode: Mix mode override for this clip

        Returns:
            ClipResult with status 'delivered', 'empty' or 'failed'
        """
        filename = clip_filename(requester_id)
        job = ClipJob(filename)

        job.transition(ClipState.COLLECTING)
        snapshots = self.registry.all_snapshots(seconds=seconds, since=since)
        if not snapshots:
            return self._empty(job)

        try:
            job.transition(ClipState.MIXING)
            pcm = self.mixer.mix(snapshots, mode=mode)
            if pcm is None or not pcm.data:
                return self._empty(job)

            job.transition(ClipState.NORMALIZING)
            pcm = normalize_pcm(pcm)
        except Exception as e:
            job.transition(ClipState.FAILED)
            self.clips_failed += 1
            logger.error(f"Clip {filename} failed while {job.history[-2].value}: {e}\n"
                         f"{traceback.format_exc()}")
            return ClipResult(status=STATUS_FAILED, message=f"Could not process audio: {e}",
                              filename=filename, source_count=len(snapshots))

        path = None
        try:
            job.transition(ClipState.SERIALIZING)
            artifact = await self._serialize(pcm)
            path = await self._write_temp(artifact)

            job.transition(ClipState.DELIVERING)
            await self._deliver(path, filename, len(artifact), requester_id)
        except (SerializationFault, DeliveryFault) as e:
            job.transition(ClipState.FAILED)
            self.clips_failed += 1
            logger.error(f"Clip {filename} failed: {e}")
            return ClipResult(status=STATUS_FAILED, message=str(e), filename=filename,
                              source_count=len(snapshots))
        finally:
            if path is not None:
                self._remove_temp(path)

        job.transition(ClipState.IDLE)
        self.clips_delivered += 1
        logger.info(f"Clip delivered: {filename} ({len(artifact):,} bytes, "
                    f"{pcm.duration_seconds:.2f}s from {len(snapshots)} source(s))")
        return ClipResult(status=STATUS_DELIVERED, filename=filename, byte_length=len(artifact),
                          duration_seconds=pcm.duration_seconds, source_count=len(snapshots),
                          artifact=artifact)

    def _empty(self, job: ClipJob) -> ClipResult:
        job.transition(ClipState.IDLE)
        self.clips_empty += 1
        logger.info("Clip requested but no audio is retained")
        return ClipResult(status=STATUS_EMPTY, message="No audio captured")

    async def _serialize(self, pcm) -> bytes:
        try:
            return await self.container_writer.encode(pcm)
        except SerializationFault:
            raise
        except Exception as e:
            logger.error(f"Container writer error: {e}\n{traceback.format_exc()}")
            raise SerializationFault(f"Container writer error: {e}") from e

    async def _write_temp(self, artifact: bytes) -> str:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._write_temp_sync, artifact)
        except OSError as e:
            raise SerializationFault(f"Could not write clip file: {e}") from e

    def _write_temp_sync(self, artifact: bytes) -> str:
        fd, path = tempfile.mkstemp(prefix="clip_", suffix=".wav", dir=self.temp_dir)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(artifact)
        except OSError:
            self._remove_temp(path)
            raise
        return path

    async def _deliver(self, path: str, filename: str, byte_length: int,
                       requester_id: Optional[str]) -> None:
        try:
            with open(path, 'rb') as handle:
                await asyncio.wait_for(
                    self.delivery.deliver(filename, byte_length, handle, requester_id=requester_id),
                    timeout=self.delivery_timeout,
                )
        except asyncio.TimeoutError as e:
            raise DeliveryFault(f"Delivery timed out after {self.delivery_timeout}s") from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Delivery error: {e}\n{traceback.format_exc()}")
            raise DeliveryFault(f"Delivery failed: {e}") from e

    async def replay(self, artifact: bytes, filename: str, playback) -> None:
        """
        Hand a previously built artifact to a PlaybackSink.

        Raises:
            DeliveryFault: Writing the transient file or playback failed or timed out
        """
        try:
            path = await self._write_temp(artifact)
        except SerializationFault as e:
            raise DeliveryFault(str(e)) from e

        try:
            with open(path, 'rb') as handle:
                await asyncio.wait_for(playback.play(filename, len(artifact), handle),
                                       timeout=self.delivery_timeout)
        except asyncio.TimeoutError as e:
            raise DeliveryFault(f"Playback timed out after {self.delivery_timeout}s") from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise DeliveryFault(f"Playback failed: {e}") from e
        finally:
            self._remove_temp(path)

    @staticmethod
    def _remove_temp(path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Could not remove transient clip file {path}: {e}")

    def get_stats(self) -> dict:
        return {
            "clips_delivered": self.clips_delivered,
            "clips_empty": self.clips_empty,
            "clips_failed": self.clips_failed,
            "mix_mode": self.mixer.mode,
            "container": getattr(self.container_writer, 'name', type(self.container_writer).__name__),
        }

#!/usr/bin/env python3
"""
Voice Clip Session

Wires the pieces together for one voice session: an ingestion stage per
speaking source, the shared buffer registry, the clip assembler, and the
command / voice-trigger entry points. The platform glue calls:

- source_active(source_id) / source_inactive(source_id) on speaking start/end
- feed_frame(source_id, opus_frame) for every received packet
- handle_command(request, requester_id) for slash commands
- on_transcript(result) for transcription results, if not using a transcriber here
- close() when the session ends
"""

import time
import asyncio
import logging
import traceback
from typing import Callable, Dict, Optional, Set, Tuple

from .audio.mixer import Mixer
from .audio.opus_decoder import OpusFrameDecoder, SourceIngestor
from .audio.registry import SessionBufferRegistry
from .audio.types import SourceId
from .clip_assembler import ClipAssembler, ClipResult, STATUS_DELIVERED, STATUS_EMPTY
from .commands import CommandKind, CommandRequest
from .config import CONTAINER_FFMPEG, ClipperConfig
from .delivery import ClipDelivery, PlaybackSink
from .errors import DeliveryFault, InvalidCommand, StreamFault
from .phrase_trigger import PhraseTrigger
from .stt.base_stt import BaseTranscriber, TranscriptionResult
from .wav_writer import FfmpegWavWriter, WavWriter

logger = logging.getLogger(__name__)


class VoiceClipSession:
    """Per-voice-session capture and clipping."""

    def __init__(self,
                 config: ClipperConfig,
                 delivery: ClipDelivery,
                 playback: Optional[PlaybackSink] = None,
                 transcriber: Optional[BaseTranscriber] = None,
                 decoder_factory: Optional[Callable] = None,
                 container_writer=None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            config: Session settings
            delivery: Receives finished clips
            playback: Plays clips back for the replay command (optional)
            transcriber: Speech-to-text backend for the voice trigger (optional)
            decoder_factory: Returns a new decoder per source (default: OpusFrameDecoder)
            container_writer: Overrides the writer chosen by config.container_strategy
            clock: Monotonic time source for chunk timestamps and windows
        """
        self.config = config
        self.clock = clock
        self.playback = playback
        self.transcriber = transcriber
        self.decoder_factory = decoder_factory or (
            lambda: OpusFrameDecoder(config.sample_rate, config.channels, config.frame_size,
                                     fec=config.opus_fec))

        self.registry = SessionBufferRegistry(
            retention_seconds=config.retention_seconds,
            silence_policy=config.silence_policy,
            clock=clock,
            channels=config.channels,
        )

        if container_writer is None:
            if config.container_strategy == CONTAINER_FFMPEG:
                container_writer = FfmpegWavWriter(config.ffmpeg_path, timeout=config.serialize_timeout)
            else:
                container_writer = WavWriter()

        self.assembler = ClipAssembler(
            self.registry,
            delivery,
            mixer=Mixer(config.mix_mode, config.sample_rate, config.channels),
            container_writer=container_writer,
            temp_dir=config.temp_dir,
            delivery_timeout=config.delivery_timeout,
        )
        self.trigger = PhraseTrigger(config.trigger_pattern, on_match=self._on_phrase_match)

        self._ingestors: Dict[SourceId, SourceIngestor] = {}
        self._opened_at: Dict[SourceId, float] = {}
        self._ending: Dict[SourceId, asyncio.Event] = {}
        self._background: Set[asyncio.Task] = set()
        self._last_clips: Dict[str, Tuple[str, bytes]] = {}
        self._recording_started_at: Optional[float] = None
        self._recording_requester: Optional[str] = None
        self._closed = False

    # -- ingestion ---------------------------------------------------------

    async def source_active(self, source_id: SourceId) -> None:
        """A participant started speaking: start its decode stage.

        If the source's previous stream is still being torn down, that
        finishes first so the new stream is never closed by the old one.
        """
        ending = self._ending.get(source_id)
        if ending is not None:
            await ending.wait()

        if self._closed:
            return
        ingestor = self._ingestors.get(source_id)
        if ingestor is not None and ingestor.is_running:
            return

        try:
            decoder = self.decoder_factory()
        except Exception as e:
            logger.error(f"Could not create decoder for source {source_id}: {e}")
            return

        writer = self.registry.open_stream(source_id)
        ingestor = SourceIngestor(
            source_id,
            writer,
            decoder,
            chunk_factory=self.registry.make_chunk,
            clock=self.clock,
            queue_size=self.config.ingest_queue_size,
            on_fault=self._on_stream_fault,
        )
        self._ingestors[source_id] = ingestor
        self._opened_at[source_id] = self.clock()
        await ingestor.start()

    def feed_frame(self, source_id: SourceId, frame: bytes, lost_previous: bool = False) -> bool:
        """Queue one compressed frame. Frames for inactive sources are dropped.

        lost_previous marks a sequence gap just before this packet.
        """
        ingestor = self._ingestors.get(source_id)
        if ingestor is None:
            return False
        return ingestor.feed(frame, lost_previous=lost_previous)

    def ingest_pcm(self, source_id: SourceId, timestamp: float, pcm: bytes) -> bool:
        """Store already-decoded audio, bypassing the decode stage."""
        if self._closed:
            return False
        return self.registry.ingest(source_id, timestamp, pcm)

    async def source_inactive(self, source_id: SourceId) -> None:
        """A participant's stream ended: stop its stage, then apply the silence policy."""
        ingestor = self._ingestors.pop(source_id, None)
        opened_at = self._opened_at.pop(source_id, None)
        done = asyncio.Event()
        self._ending[source_id] = done
        try:
            writer = None
            if ingestor is not None:
                writer = ingestor.writer
                await ingestor.stop(drain=True)

            # Only the utterance that just ended goes to the transcriber
            pending = None
            if self.transcriber is not None and opened_at is not None:
                chunks = self.registry.snapshot(source_id, since=opened_at)
                if chunks:
                    pending = self.assembler.mixer.mix({source_id: chunks})

            self.registry.end_stream(source_id, writer=writer)
        finally:
            if self._ending.get(source_id) is done:
                del self._ending[source_id]
            done.set()

        if pending is not None and pending.data:
            self._spawn(self._transcribe(source_id, pending))

    async def _on_stream_fault(self, source_id: SourceId, fault: StreamFault) -> None:
        # Runs inside the failed stage's own task, so it must not await ingestor.stop()
        ingestor = self._ingestors.get(source_id)
        if ingestor is not None and ingestor.fault is fault:
            del self._ingestors[source_id]
            self._opened_at.pop(source_id, None)
        self.registry.remove(source_id)
        logger.error(f"Ingestion for source {source_id} torn down: {fault}")

    # -- triggers ----------------------------------------------------------

    async def handle_command(self, request: CommandRequest, requester_id: Optional[str] = None) -> str:
        """Run a command and return the message to show the requester."""
        try:
            if request.kind == CommandKind.CLIP:
                seconds = request.duration_seconds
                if seconds is None:
                    seconds = self.config.default_clip_seconds
                return await self.clip(seconds, requester_id)
            if request.kind == CommandKind.START_RECORDING:
                return self.start_recording(requester_id)
            if request.kind == CommandKind.STOP_RECORDING:
                return await self.stop_recording(requester_id)
            if request.kind == CommandKind.REPLAY:
                return await self.replay(requester_id)
            raise InvalidCommand(f"Unknown command: {request.kind}")
        except InvalidCommand as e:
            return f"Invalid command: {e}"
        except Exception as e:
            logger.error(f"Error handling {request.kind.value} command: {e}\n{traceback.format_exc()}")
            return f"Error handling command: {e}"

    async def handle_payload(self, payload: dict, requester_id: Optional[str] = None) -> str:
        """Validate a raw {'kind', 'durationSeconds'} request and run it."""
        try:
            request = CommandRequest.from_dict(payload,
                                               default_seconds=self.config.default_clip_seconds,
                                               max_seconds=self.config.max_clip_seconds)
        except InvalidCommand as e:
            return f"Invalid command: {e}"
        return await self.handle_command(request, requester_id)

    async def clip(self, seconds: int, requester_id: Optional[str] = None) -> str:
        if not 1 <= seconds <= self.config.max_clip_seconds:
            raise InvalidCommand(f"Clip duration must be between 1 and {self.config.max_clip_seconds} seconds")

        self.registry.prune()
        result = await self.assembler.assemble(seconds=seconds, requester_id=requester_id)
        self._remember(result, requester_id)

        if result.status == STATUS_DELIVERED:
            return f"Clip of the last {seconds} seconds sent."
        if result.status == STATUS_EMPTY:
            return f"No audio captured in the last {seconds} seconds."
        return f"Failed to create clip: {result.message}"

    def start_recording(self, requester_id: Optional[str] = None) -> str:
        if self._recording_started_at is not None:
            return "A recording is already in progress."
        self._recording_started_at = self.clock()
        self._recording_requester = requester_id
        logger.info(f"Recording started by {requester_id}")
        return (f"Recording started. Stop it to receive the audio "
                f"(the last {self.config.retention_seconds:g} seconds are kept).")

    async def stop_recording(self, requester_id: Optional[str] = None) -> str:
        if self._recording_started_at is None:
            return "No recording in progress."

        started_at = self._recording_started_at
        owner = self._recording_requester if requester_id is None else requester_id
        self._recording_started_at = None
        self._recording_requester = None

        result = await self.assembler.assemble(since=started_at, requester_id=owner)
        self._remember(result, owner)
        logger.info(f"Recording stopped by {requester_id}: {result.status}")

        if result.status == STATUS_DELIVERED:
            return f"Recording saved ({result.duration_seconds:.1f} seconds)."
        if result.status == STATUS_EMPTY:
            return "No audio was captured during the recording."
        return f"Failed to save recording: {result.message}"

    async def replay(self, requester_id: Optional[str] = None) -> str:
        last = self._last_clips.get(requester_id)
        if last is None:
            return "You don't have a clip to replay."
        if self.playback is None:
            return "Replay is not available in this session."

        filename, artifact = last
        try:
            await self.assembler.replay(artifact, filename, self.playback)
        except DeliveryFault as e:
            logger.error(f"Replay failed for {requester_id}: {e}")
            return f"Failed to replay clip: {e}"
        return "Replaying your last saved clip."

    async def handle_text_message(self, text: str, requester_id: Optional[str] = None) -> Optional[str]:
        """Chat message entry point: '!clip' or the trigger phrase clips the default window."""
        if not self.trigger.matches_command_text(text):
            return None
        return await self.clip(self.config.default_clip_seconds, requester_id)

    async def on_transcript(self, result: TranscriptionResult) -> bool:
        """Feed one transcription result to the voice trigger."""
        return await self.trigger.handle_transcript(result)

    async def _on_phrase_match(self, matched_text: str) -> None:
        # Assembly runs in the background so the transcription path is never held up
        self._spawn(self._phrase_clip(matched_text))

    async def _phrase_clip(self, matched_text: str) -> ClipResult:
        self.registry.prune()
        result = await self.assembler.assemble(seconds=self.config.default_clip_seconds)
        logger.info(f"Voice-triggered clip ('{matched_text}'): {result.status} {result.message}")
        return result

    async def _transcribe(self, source_id: SourceId, pcm) -> None:
        try:
            result = await self.transcriber.transcribe_pcm(pcm, source_id=source_id)
        except Exception as e:
            logger.error(f"Transcription failed for source {source_id}: {e}")
            return
        await self.on_transcript(result)

    # -- housekeeping ------------------------------------------------------

    def _remember(self, result: ClipResult, requester_id: Optional[str]) -> None:
        if result.ok and requester_id is not None and result.artifact is not None:
            self._last_clips[requester_id] = (result.filename, result.artifact)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(self._log_task_error)
        return task

    @staticmethod
    def _log_task_error(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task failed: {error!r}\n"
                         f"{''.join(traceback.format_exception(type(error), error, error.__traceback__))}")

    async def wait_background(self) -> None:
        """Wait for voice-triggered clips and transcriptions still in flight."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        """Tear down every ingestion stage and release all buffers."""
        if self._closed:
            return
        self._closed = True

        ingestors = list(self._ingestors.values())
        self._ingestors.clear()
        for ingestor in ingestors:
            await ingestor.stop(drain=False)

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

        self.registry.close()
        self._last_clips.clear()
        self._opened_at.clear()
        logger.info("Voice clip session closed")

    def get_stats(self) -> dict:
        return {
            "closed": self._closed,
            "recording": self._recording_started_at is not None,
            "registry": self.registry.get_stats(),
            "ingestors": [i.get_stats() for i in self._ingestors.values()],
            "assembler": self.assembler.get_stats(),
            "voice_triggers": self.trigger.matches_fired,
        }

#!/usr/bin/env python3
"""
WAV Container Writer

Wraps raw 16-bit PCM in the canonical 44-byte RIFF/WAVE header. The header
is computed from the full body length up front; nothing is patched after
the fact.

An optional FfmpegWavWriter pipes the PCM through an external ffmpeg
process instead. It is bounded by a timeout and killed on expiry.
"""

import asyncio
import struct
import logging
from dataclasses import dataclass
from typing import BinaryIO, List

from .audio.types import PcmBuffer
from .errors import SerializationFault

logger = logging.getLogger(__name__)

WAV_HEADER_SIZE = 44
_HEADER_STRUCT = struct.Struct('<4sI4s4sIHHIIHH4sI')
_PCM_FORMAT_TAG = 1


@dataclass(frozen=True)
class WavInfo:
    """Fields recovered from a WAV header."""
    sample_rate: int
    channels: int
    bit_depth: int
    data_length: int
    byte_rate: int
    block_align: int
    data_offset: int = WAV_HEADER_SIZE


def build_wav_header(data_length: int, sample_rate: int = 48000, channels: int = 1, bit_depth: int = 16) -> bytes:
    """
    Build the 44-byte header for a linear PCM body.

    Args:
        data_length: Exact length in bytes of the PCM body that follows
        sample_rate: Samples per second per channel
        channels: Interleaved channel count
        bit_depth: Bits per sample

    Returns:
        44 header bytes
    """
    if data_length < 0:
        raise ValueError(f"data_length must be non-negative, got {data_length}")

    byte_rate = sample_rate * channels * bit_depth // 8
    block_align = channels * bit_depth // 8
    return _HEADER_STRUCT.pack(
        b'RIFF', 36 + data_length, b'WAVE',
        b'fmt ', 16, _PCM_FORMAT_TAG, channels, sample_rate, byte_rate, block_align, bit_depth,
        b'data', data_length,
    )


def parse_wav_header(data: bytes) -> WavInfo:
    """
    Parse a WAV header, walking chunks until 'data' is found.

    Raises:
        ValueError: Not a RIFF/WAVE PCM file
    """
    if len(data) < 12 or data[0:4] != b'RIFF' or data[8:12] != b'WAVE':
        raise ValueError("Not a RIFF/WAVE file")

    offset = 12
    fmt = None
    while offset + 8 <= len(data):
        chunk_id = data[offset:offset + 4]
        chunk_size = struct.unpack('<I', data[offset + 4:offset + 8])[0]
        body = offset + 8

        if chunk_id == b'fmt ':
            fmt_data = data[body:body + chunk_size]
            if len(fmt_data) < 16:
                raise ValueError("Truncated fmt chunk")
            fmt = struct.unpack('<HHIIHH', fmt_data[:16])
        elif chunk_id == b'data':
            if fmt is None:
                raise ValueError("data chunk before fmt chunk")
            _, channels, sample_rate, byte_rate, block_align, bit_depth = fmt
            return WavInfo(sample_rate=sample_rate, channels=channels, bit_depth=bit_depth,
                           data_length=chunk_size, byte_rate=byte_rate,
                           block_align=block_align, data_offset=body)

        # Chunks are word aligned
        offset = body + chunk_size + (chunk_size & 1)

    raise ValueError("No data chunk found")


def write_wav(sink: BinaryIO, pcm: PcmBuffer) -> int:
    """Write header and body to a binary sink. Returns bytes written."""
    header = build_wav_header(len(pcm.data), pcm.sample_rate, pcm.channels, pcm.bit_depth)
    sink.write(header)
    sink.write(pcm.data)
    return len(header) + len(pcm.data)


class WavWriter:
    """Direct header writer. No external process, so no timeout risk."""

    name = "direct"

    async def encode(self, pcm: PcmBuffer) -> bytes:
        return build_wav_header(len(pcm.data), pcm.sample_rate, pcm.channels, pcm.bit_depth) + pcm.data


class FfmpegWavWriter:
    """Encodes through an external ffmpeg process, bounded by a timeout."""

    name = "ffmpeg"

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: float = 10.0):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = float(timeout)

    def build_command(self, pcm: PcmBuffer) -> List[str]:
        return [
            self.ffmpeg_path, '-hide_banner', '-loglevel', 'error',
            '-f', 's16le', '-ar', str(pcm.sample_rate), '-ac', str(pcm.channels), '-i', 'pipe:0',
            '-c:a', 'pcm_s16le', '-map_metadata', '-1', '-fflags', '+bitexact',
            '-flags:a', '+bitexact', '-f', 'wav', 'pipe:1',
        ]

    async def encode(self, pcm: PcmBuffer) -> bytes:
        """
        Raises:
            SerializationFault: ffmpeg missing, failed, or exceeded the timeout
        """
        cmd = self.build_command(pcm)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise SerializationFault(f"Cannot start ffmpeg ({self.ffmpeg_path}): {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(pcm.data), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error(f"ffmpeg encode timed out after {self.timeout}s; process killed")
            raise SerializationFault(f"ffmpeg timed out after {self.timeout}s")

        if proc.returncode != 0:
            message = stderr.decode('utf-8', errors='replace').strip()
            logger.error(f"ffmpeg exited with code {proc.returncode}: {message}")
            raise SerializationFault(f"ffmpeg exited with code {proc.returncode}")

        try:
            info = parse_wav_header(stdout)
        except ValueError as e:
            raise SerializationFault(f"ffmpeg produced an invalid WAV: {e}") from e

        # A piped muxer cannot seek back to fill in sizes, so re-emit the canonical header
        body = stdout[info.data_offset:]
        return build_wav_header(len(body), info.sample_rate, info.channels, info.bit_depth) + body

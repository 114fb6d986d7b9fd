#!/usr/bin/env python3
"""
Tests for the WAV container writer.
"""

import io
import shutil
import struct
import wave

import numpy as np
import pytest

from voice_clipper.audio.types import PcmBuffer
from voice_clipper.errors import SerializationFault
from voice_clipper.wav_writer import (
    WAV_HEADER_SIZE, FfmpegWavWriter, WavWriter, build_wav_header, parse_wav_header, write_wav,
)


def test_header_is_byte_exact():
    header = build_wav_header(1000, sample_rate=48000, channels=1, bit_depth=16)

    assert len(header) == WAV_HEADER_SIZE
    assert header[0:4] == b'RIFF'
    assert struct.unpack('<I', header[4:8])[0] == 36 + 1000
    assert header[8:12] == b'WAVE'
    assert header[12:16] == b'fmt '
    assert struct.unpack('<I', header[16:20])[0] == 16
    assert struct.unpack('<H', header[20:22])[0] == 1
    assert struct.unpack('<H', header[22:24])[0] == 1
    assert struct.unpack('<I', header[24:28])[0] == 48000
    assert struct.unpack('<I', header[28:32])[0] == 96000
    assert struct.unpack('<H', header[32:34])[0] == 2
    assert struct.unpack('<H', header[34:36])[0] == 16
    assert header[36:40] == b'data'
    assert struct.unpack('<I', header[40:44])[0] == 1000


def test_stereo_rates():
    header = build_wav_header(0, sample_rate=48000, channels=2)
    assert struct.unpack('<I', header[28:32])[0] == 192000
    assert struct.unpack('<H', header[32:34])[0] == 4
    assert struct.unpack('<I', header[4:8])[0] == 36


def test_round_trip_header_fields():
    body = np.arange(-500, 500, dtype='<i2').tobytes()
    pcm = PcmBuffer(sample_rate=44100, channels=2, data=body)

    sink = io.BytesIO()
    written = write_wav(sink, pcm)
    data = sink.getvalue()

    assert written == len(data) == WAV_HEADER_SIZE + len(body)
    info = parse_wav_header(data)
    assert info.sample_rate == 44100
    assert info.channels == 2
    assert info.bit_depth == 16
    assert info.data_length == len(body)
    assert data[info.data_offset:] == body


def test_standard_reader_accepts_artifact():
    body = np.array([0, 1000, -1000, 32767], dtype='<i2').tobytes()
    sink = io.BytesIO()
    write_wav(sink, PcmBuffer(sample_rate=48000, channels=1, data=body))
    sink.seek(0)

    with wave.open(sink, 'rb') as reader:
        assert reader.getframerate() == 48000
        assert reader.getnchannels() == 1
        assert reader.getsampwidth() == 2
        assert reader.readframes(reader.getnframes()) == body


def test_negative_length_rejected():
    with pytest.raises(ValueError):
        build_wav_header(-1)


def test_parse_rejects_non_wav():
    with pytest.raises(ValueError):
        parse_wav_header(b'OggS' + b'\x00' * 40)


def test_parse_skips_unknown_chunks():
    header = build_wav_header(4)
    extra = b'LIST' + struct.pack('<I', 3) + b'abc\x00'
    data = header[:36] + extra + header[36:] + b'\x01\x00\x02\x00'

    info = parse_wav_header(data)
    assert info.data_length == 4
    assert data[info.data_offset:] == b'\x01\x00\x02\x00'


@pytest.mark.asyncio
async def test_direct_writer_encode():
    pcm = PcmBuffer(sample_rate=48000, channels=1, data=b'\x01\x00' * 10)
    artifact = await WavWriter().encode(pcm)
    assert artifact[:WAV_HEADER_SIZE] == build_wav_header(20)
    assert artifact[WAV_HEADER_SIZE:] == pcm.data


@pytest.mark.asyncio
async def test_ffmpeg_missing_binary_is_serialization_fault():
    writer = FfmpegWavWriter(ffmpeg_path='/nonexistent/bin/ffmpeg', timeout=1.0)
    with pytest.raises(SerializationFault):
        await writer.encode(PcmBuffer(sample_rate=48000, channels=1, data=b'\x00\x00' * 4))


class _CommandWriter(FfmpegWavWriter):
    def __init__(self, command, timeout):
        super().__init__(timeout=timeout)
        self.command = command

    def build_command(self, pcm):
        return self.command


@pytest.mark.asyncio
@pytest.mark.skipif(shutil.which('sleep') is None, reason="needs sleep")
async def test_external_encoder_timeout_kills_process():
    writer = _CommandWriter([shutil.which('sleep'), '5'], timeout=0.2)
    with pytest.raises(SerializationFault, match="timed out"):
        await writer.encode(PcmBuffer(sample_rate=48000, channels=1, data=b'\x00\x00' * 4))


@pytest.mark.asyncio
@pytest.mark.skipif(shutil.which('false') is None, reason="needs false")
async def test_external_encoder_failure_exit_code():
    writer = _CommandWriter([shutil.which('false')], timeout=5.0)
    with pytest.raises(SerializationFault, match="exited with code"):
        await writer.encode(PcmBuffer(sample_rate=48000, channels=1, data=b'\x00\x00' * 4))


@pytest.mark.asyncio
@pytest.mark.skipif(shutil.which('ffmpeg') is None, reason="ffmpeg not installed")
async def test_ffmpeg_strategy_produces_readable_wav():
    body = np.linspace(-20000, 20000, 4800).astype('<i2').tobytes()
    artifact = await FfmpegWavWriter(timeout=20.0).encode(PcmBuffer(sample_rate=48000, channels=1, data=body))

    info = parse_wav_header(artifact)
    assert info.sample_rate == 48000
    assert info.channels == 1
    assert info.bit_depth == 16
    assert info.data_length == len(body)
    assert artifact[info.data_offset:] == body

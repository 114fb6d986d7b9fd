#!/usr/bin/env python3
"""
Shared fixtures for voice clipper tests.

Test doubles stand in for the Opus decoder, the clock and the delivery
collaborators; no network, chat platform or libopus is required.
"""

import asyncio
import os
import sys

import numpy as np
import pytest

# Add the package to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from voice_clipper.delivery import ClipDelivery, PlaybackSink
from voice_clipper.errors import DecodeFault
from voice_clipper.stt.base_stt import BaseTranscriber, TranscriptionResult

FRAME_SIZE = 960
SAMPLE_RATE = 48000
FRAME_SECONDS = FRAME_SIZE / SAMPLE_RATE  # 0.02


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDecoder:
    """Decodes a 2-byte 'frame' into 960 copies of that int16 value.

    b'bad' raises DecodeFault, b'crash' raises RuntimeError and b'odd'
    decodes to a ragged 3-byte buffer. conceal() yields the negated value,
    so recovered frames are easy to spot.
    """

    def __init__(self, frame_size: int = FRAME_SIZE, channels: int = 1):
        self.frame_size = frame_size
        self.channels = channels
        self.decoded = 0
        self.concealed = 0

    def decode(self, frame: bytes) -> bytes:
        if frame == b'bad':
            raise DecodeFault("malformed frame")
        if frame == b'crash':
            raise RuntimeError("decoder state corrupted")
        if frame == b'odd':
            return b'\x01\x02\x03'
        value = int.from_bytes(frame[:2], 'little', signed=True)
        self.decoded += 1
        return np.full(self.frame_size * self.channels, value, dtype='<i2').tobytes()

    def conceal(self, next_frame: bytes) -> bytes:
        value = int.from_bytes(next_frame[:2], 'little', signed=True)
        self.concealed += 1
        return np.full(self.frame_size * self.channels, -value, dtype='<i2').tobytes()


def frame_for(value: int) -> bytes:
    return int(value).to_bytes(2, 'little', signed=True)


def pcm_of(values, repeat: int = 1) -> bytes:
    return np.repeat(np.asarray(values, dtype='<i2'), repeat).astype('<i2').tobytes()


class RecordingDelivery(ClipDelivery):
    """Keeps every delivered artifact in memory."""

    def __init__(self):
        self.deliveries = []

    async def deliver(self, filename, byte_length, handle, requester_id=None):
        data = handle.read()
        self.deliveries.append({
            'filename': filename,
            'byte_length': byte_length,
            'data': data,
            'requester_id': requester_id,
            'path': handle.name,
        })


class FailingDelivery(ClipDelivery):
    def __init__(self):
        self.paths = []

    async def deliver(self, filename, byte_length, handle, requester_id=None):
        self.paths.append(handle.name)
        raise ConnectionError("recipient has direct messages disabled")


class SlowDelivery(ClipDelivery):
    async def deliver(self, filename, byte_length, handle, requester_id=None):
        await asyncio.sleep(10)


class RecordingPlayback(PlaybackSink):
    def __init__(self):
        self.played = []

    async def play(self, filename, byte_length, handle):
        self.played.append((filename, byte_length, handle.read()))


class FakeTranscriber(BaseTranscriber):
    def __init__(self, text: str):
        super().__init__(sample_rate=16000)
        self.text = text
        self.calls = []

    async def transcribe(self, audio):
        self.calls.append(audio)
        return TranscriptionResult(text=self.text, is_final=True)


async def wait_until(condition, timeout: float = 2.0) -> None:
    """Yield to the event loop until condition() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_decoder():
    return FakeDecoder()


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def playback():
    return RecordingPlayback()

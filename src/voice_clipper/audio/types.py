#!/usr/bin/env python3
"""
Audio data model shared by the ingestion, mixing and container stages.
"""

from dataclasses import dataclass
from typing import Hashable

import numpy as np

# Any hashable participant identifier (a user id, an SSRC, ...)
SourceId = Hashable

INT16_MIN = -32768
INT16_MAX = 32767


def round_half_away(values: np.ndarray) -> np.ndarray:
    """Round to the nearest integer, ties away from zero (-0.5 -> -1, 0.5 -> 1)."""
    return np.sign(values) * np.floor(np.abs(values) + 0.5)


def to_int16(values: np.ndarray) -> np.ndarray:
    """Round and clamp float samples into the signed 16-bit range."""
    return np.clip(round_half_away(values), INT16_MIN, INT16_MAX).astype(np.int16)


@dataclass(frozen=True)
class AudioChunk:
    """One decoded block of interleaved int16 samples with its capture instant.

    Attributes:
        timestamp: Monotonic capture time in seconds
        pcm: Little-endian int16 samples, interleaved by channel
        seq: Session-wide arrival ordinal, used to break timestamp ties
    """
    timestamp: float
    pcm: bytes
    seq: int = 0

    @property
    def samples(self) -> np.ndarray:
        """Read-only int16 view of the chunk's samples."""
        return np.frombuffer(self.pcm, dtype='<i2')

    def __len__(self) -> int:
        return len(self.pcm) // 2


@dataclass(frozen=True)
class PcmBuffer:
    """Flat raw linear PCM with the format needed to describe it."""
    sample_rate: int
    channels: int
    data: bytes
    bit_depth: int = 16

    @classmethod
    def from_samples(cls, samples: np.ndarray, sample_rate: int, channels: int) -> "PcmBuffer":
        return cls(sample_rate=sample_rate,
                   channels=channels,
                   data=np.asarray(samples, dtype='<i2').tobytes())

    @property
    def samples(self) -> np.ndarray:
        return np.frombuffer(self.data, dtype='<i2')

    @property
    def frame_count(self) -> int:
        return len(self.data) // (self.channels * self.bit_depth // 8)

    @property
    def duration_seconds(self) -> float:
        return self.frame_count / self.sample_rate

    def __len__(self) -> int:
        return len(self.data)

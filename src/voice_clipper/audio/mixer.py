#!/usr/bin/env python3
"""
Mixer

Combines per-source snapshots into one PCM buffer, in one of two modes:

- concatenate: every chunk from every source, spliced in capture order.
  A temporal interleaving of whoever spoke when, not a downmix.
- sample-mixed: a true downmix. Each source is flattened once, all are cut
  to the shortest length, and the per-index mean is rounded and clamped.
"""

import logging
from typing import Mapping, Optional, Sequence

import numpy as np

from .types import AudioChunk, PcmBuffer, SourceId, to_int16
from ..config import MIX_MODE_CONCATENATE, MIX_MODE_SAMPLE_MIXED, MIX_MODES
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

Snapshots = Mapping[SourceId, Sequence[AudioChunk]]


def _chronological(chunks):
    # sorted() is stable; seq breaks timestamp ties by arrival order
    return sorted(chunks, key=lambda c: (c.timestamp, c.seq))


def concatenate_sources(snapshots: Snapshots, sample_rate: int, channels: int) -> Optional[PcmBuffer]:
    """Splice all chunks of all sources into one timeline ordered by timestamp.

    Returns:
        None when there is nothing to mix
    """
    all_chunks = [chunk for chunks in snapshots.values() for chunk in chunks]
    if not all_chunks:
        return None

    data = b"".join(chunk.pcm for chunk in _chronological(all_chunks))
    return PcmBuffer(sample_rate=sample_rate, channels=channels, data=data)


def mix_sources(snapshots: Snapshots, sample_rate: int, channels: int) -> Optional[PcmBuffer]:
    """Average all sources sample-by-sample over their common length.

    Each source is truncated to the shortest source's length, keeping its
    most recent samples so the tails line up at "now".

    Returns:
        None when there is nothing to mix
    """
    # Flatten every source once, before any per-sample work
    tracks = []
    for chunks in snapshots.values():
        if not chunks:
            continue
        data = b"".join(chunk.pcm for chunk in _chronological(chunks))
        tracks.append(np.frombuffer(data, dtype='<i2'))

    if not tracks:
        return None

    if len(tracks) == 1:
        return PcmBuffer.from_samples(tracks[0].copy(), sample_rate, channels)

    # Whole frames only, so channels stay interleaved correctly
    length = min(len(t) for t in tracks)
    length -= length % channels
    if length == 0:
        return PcmBuffer(sample_rate=sample_rate, channels=channels, data=b"")

    stacked = np.stack([t[len(t) - length:] for t in tracks]).astype(np.int64)
    mean = stacked.sum(axis=0) / len(tracks)
    mixed = to_int16(mean)

    logger.debug(f"Mixed {len(tracks)} sources over {length} samples")
    return PcmBuffer.from_samples(mixed, sample_rate, channels)


class Mixer:
    """Mixes snapshots in the configured mode."""

    def __init__(self, mode: str = MIX_MODE_CONCATENATE, sample_rate: int = 48000, channels: int = 1):
        if mode not in MIX_MODES:
            raise ConfigurationError(f"Unknown mix mode: {mode}. Available: {', '.join(MIX_MODES)}")
        self.mode = mode
        self.sample_rate = sample_rate
        self.channels = channels

    def mix(self, snapshots: Snapshots, mode: Optional[str] = None) -> Optional[PcmBuffer]:
        """Mix snapshots; mode overrides the configured one for this call."""
        mode = mode or self.mode
        if mode == MIX_MODE_SAMPLE_MIXED:
            return mix_sources(snapshots, self.sample_rate, self.channels)
        if mode == MIX_MODE_CONCATENATE:
            return concatenate_sources(snapshots, self.sample_rate, self.channels)
        raise ConfigurationError(f"Unknown mix mode: {mode}")

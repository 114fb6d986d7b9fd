#!/usr/bin/env python3
"""
Audio capture, buffering and mixing for the voice clipper
"""

from .types import AudioChunk, PcmBuffer
from .ring_buffer import BufferWriter, SourceRingBuffer
from .registry import SessionBufferRegistry
from .mixer import Mixer, concatenate_sources, mix_sources
from .normalizer import normalize_pcm
from .opus_decoder import OPUS_AVAILABLE, OpusFrameDecoder, SourceIngestor

__all__ = [
    'AudioChunk', 'PcmBuffer', 'BufferWriter', 'SourceRingBuffer', 'SessionBufferRegistry',
    'Mixer', 'concatenate_sources', 'mix_sources', 'normalize_pcm',
    'OPUS_AVAILABLE', 'OpusFrameDecoder', 'SourceIngestor',
]

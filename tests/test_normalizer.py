#!/usr/bin/env python3
"""
Tests for whole-buffer peak normalization.
"""

import numpy as np

from voice_clipper.audio.normalizer import normalize_pcm
from voice_clipper.audio.types import PcmBuffer


def buffer_of(values, channels=1):
    return PcmBuffer.from_samples(np.array(values, dtype=np.int16), 48000, channels)


def test_scales_peak_to_full_scale():
    out = normalize_pcm(buffer_of([-2, 1, 0]))
    # 1 * 16383.5 rounds away from zero
    assert out.samples.tolist() == [-32767, 16384, 0]


def test_idempotent_at_full_scale():
    pcm = buffer_of([32767, -12345, 1, 0])
    once = normalize_pcm(pcm)
    assert once.samples.tolist() == pcm.samples.tolist()
    assert normalize_pcm(once).samples.tolist() == pcm.samples.tolist()


def test_silence_returned_unchanged():
    pcm = buffer_of([0, 0, 0, 0])
    assert normalize_pcm(pcm) is pcm


def test_negative_full_scale_peak():
    out = normalize_pcm(buffer_of([-32768, 16384]))
    assert out.samples.tolist() == [-32767, 16384]


def test_input_not_mutated():
    pcm = buffer_of([10, -20, 30])
    before = bytes(pcm.data)
    out = normalize_pcm(pcm)
    assert pcm.data == before
    assert out is not pcm
    assert int(np.max(np.abs(out.samples.astype(np.int32)))) == 32767


def test_format_preserved():
    pcm = buffer_of([1, 2, 3, 4], channels=2)
    out = normalize_pcm(pcm)
    assert (out.sample_rate, out.channels, out.bit_depth) == (48000, 2, 16)
    assert len(out.data) == len(pcm.data)


def test_empty_buffer():
    pcm = PcmBuffer(sample_rate=48000, channels=1, data=b"")
    assert normalize_pcm(pcm) is pcm

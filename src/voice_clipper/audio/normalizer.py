#!/usr/bin/env python3
"""
Peak Normalizer

One scale factor for the whole clip, so the loudest sample lands on full
scale and there are no volume jumps between chunks.
"""

import logging

import numpy as np

from .types import INT16_MAX, PcmBuffer, to_int16

logger = logging.getLogger(__name__)


def normalize_pcm(pcm: PcmBuffer) -> PcmBuffer:
    """
    Scale a buffer so its peak magnitude reaches 32767.

    Args:
        pcm: Finished 16-bit buffer; never modified

    Returns:
        A new buffer, or the input itself when it is silent or empty
    """
    if not pcm.data:
        return pcm

    # int32 so abs(-32768) does not wrap
    samples = pcm.samples.astype(np.int32)
    peak = int(np.max(np.abs(samples)))
    if peak == 0:
        return pcm

    scale = INT16_MAX / peak
    normalized = to_int16(samples * scale)
    logger.debug(f"Normalized {len(samples)} samples: peak={peak}, scale={scale:.4f}")
    return PcmBuffer.from_samples(normalized, pcm.sample_rate, pcm.channels)

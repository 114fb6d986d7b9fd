#!/usr/bin/env python3
"""
Base Transcriber Interface

Speech-to-text is an external collaborator. This module defines what the
session hands it and what it must hand back, so any backend can be plugged
in to drive the voice trigger.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from math import gcd
from typing import Any, Optional

import numpy as np
from scipy.signal import resample_poly

from ..audio.types import PcmBuffer

logger = logging.getLogger(__name__)


@dataclass
class TranscriptionResult:
    """Represents a transcription result from a transcriber."""
    text: str
    is_final: bool = True
    confidence: float = 1.0
    source_id: Optional[Any] = None
    timestamp: Optional[float] = None


def prepare_audio(pcm: PcmBuffer, target_sample_rate: int = 16000) -> np.ndarray:
    """
    Convert a PCM buffer to float32 mono in [-1, 1] at the target rate.

    Args:
        pcm: 16-bit interleaved buffer
        target_sample_rate: Rate the transcriber expects

    Returns:
        float32 numpy array
    """
    audio = pcm.samples.astype(np.float32) / 32768.0
    if pcm.channels > 1:
        usable = len(audio) - len(audio) % pcm.channels
        audio = audio[:usable].reshape(-1, pcm.channels).mean(axis=1)

    if audio.size and pcm.sample_rate != target_sample_rate:
        g = gcd(int(target_sample_rate), int(pcm.sample_rate))
        up = int(target_sample_rate) // g
        down = int(pcm.sample_rate) // g
        audio = resample_poly(audio, up, down)

    return np.clip(audio, -1.0, 1.0).astype(np.float32, copy=False)


class BaseTranscriber(ABC):
    """Abstract base class for speech-to-text backends."""

    def __init__(self, sample_rate: int = 16000):
        """
        Args:
            sample_rate: Rate of the audio passed to transcribe() (default: 16000)
        """
        self.sample_rate = sample_rate

    @abstractmethod
    async def transcribe(self, audio: np.ndarray) -> TranscriptionResult:
        """
        Transcribe one utterance.

        Args:
            audio: float32 mono samples in [-1, 1] at self.sample_rate
        """
        pass

    async def transcribe_pcm(self, pcm: PcmBuffer, source_id=None) -> TranscriptionResult:
        """Convert a decoded buffer and transcribe it."""
        result = await self.transcribe(prepare_audio(pcm, self.sample_rate))
        if result.source_id is None:
            result.source_id = source_id
        return result

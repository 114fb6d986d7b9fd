#!/usr/bin/env python3
"""
Transcription collaborator interface for the voice trigger
"""

from .base_stt import BaseTranscriber, TranscriptionResult, prepare_audio

__all__ = ['BaseTranscriber', 'TranscriptionResult', 'prepare_audio']

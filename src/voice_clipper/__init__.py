#!/usr/bin/env python3
"""
Voice Clipper

Keeps a rolling window of every speaker's audio in a live voice session and
turns the last N seconds into a normalized WAV on demand.
"""

from .config import ClipperConfig
from .session import VoiceClipSession
from .clip_assembler import ClipAssembler, ClipResult
from .commands import CommandKind, CommandRequest
from .delivery import ClipDelivery, DirectoryDelivery, PlaybackSink

__all__ = [
    'ClipperConfig', 'VoiceClipSession', 'ClipAssembler', 'ClipResult',
    'CommandKind', 'CommandRequest', 'ClipDelivery', 'DirectoryDelivery', 'PlaybackSink',
]

#!/usr/bin/env python3
"""
Voice Clipper - Command Requests

Commands arrive already parsed from the platform's slash commands:
clip, start recording, stop recording and replay.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .errors import InvalidCommand


class CommandKind(Enum):
    CLIP = "clip"
    START_RECORDING = "start_recording"
    STOP_RECORDING = "stop_recording"
    REPLAY = "replay"


_ALIASES = {
    "clip": CommandKind.CLIP,
    "record": CommandKind.START_RECORDING,
    "startrecording": CommandKind.START_RECORDING,
    "start_recording": CommandKind.START_RECORDING,
    "stoprecording": CommandKind.STOP_RECORDING,
    "stop_recording": CommandKind.STOP_RECORDING,
    "replay": CommandKind.REPLAY,
}


@dataclass(frozen=True)
class CommandRequest:
    """A validated command. duration_seconds is only meaningful for clip."""
    kind: CommandKind
    duration_seconds: Optional[int] = None

    @classmethod
    def create(cls, kind, duration_seconds: Optional[int] = None,
               default_seconds: int = 30, max_seconds: int = 120) -> "CommandRequest":
        """
        Build and validate a request.

        Args:
            kind: CommandKind or its name ('clip', 'record', 'stoprecording', 'replay', ...)
            duration_seconds: Requested clip length, 1..max_seconds
            default_seconds: Used for clip when no duration is given
            max_seconds: Upper bound for duration_seconds

        Raises:
            InvalidCommand: Unknown kind, or duration out of range / not an integer
        """
        if not isinstance(kind, CommandKind):
            key = str(kind).strip().lower().replace(" ", "_")
            if key not in _ALIASES:
                raise InvalidCommand(f"Unknown command: {kind}")
            kind = _ALIASES[key]

        if kind != CommandKind.CLIP:
            return cls(kind=kind)

        if duration_seconds is None:
            duration_seconds = default_seconds
        if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, int):
            raise InvalidCommand(f"Clip duration must be a whole number of seconds, got {duration_seconds!r}")
        if not 1 <= duration_seconds <= max_seconds:
            raise InvalidCommand(f"Clip duration must be between 1 and {max_seconds} seconds")
        return cls(kind=kind, duration_seconds=duration_seconds)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], default_seconds: int = 30,
                  max_seconds: int = 120) -> "CommandRequest":
        """Build from {'kind': ..., 'durationSeconds': ...} (snake_case accepted too)."""
        if 'kind' not in payload:
            raise InvalidCommand("Command payload has no 'kind'")
        duration = payload.get('durationSeconds', payload.get('duration_seconds'))
        return cls.create(payload['kind'], duration, default_seconds=default_seconds, max_seconds=max_seconds)

#!/usr/bin/env python3
"""
Phrase Trigger

Fires a clip when transcribed speech (or a chat message) contains the
trigger phrase, "terry clip that" and its common misspellings by default.
"""

import re
import asyncio
import logging
from typing import Callable, Optional

from .config import DEFAULT_TRIGGER_PHRASE
from .stt.base_stt import TranscriptionResult

logger = logging.getLogger(__name__)

CLIP_COMMAND_TEXT = "!clip"


class PhraseTrigger:
    """Matches text against the trigger pattern and calls back on a hit."""

    def __init__(self, pattern: str = DEFAULT_TRIGGER_PHRASE, on_match: Optional[Callable] = None):
        """
        Args:
            pattern: Regular expression, matched case-insensitively
            on_match: Called with the matched text
                      Signature: async callback(matched_text: str) or sync
        """
        self.pattern = re.compile(pattern, re.IGNORECASE)
        self.on_match = on_match
        self.matches_fired = 0

    def match(self, text: str) -> Optional[str]:
        """Return the matched phrase, or None."""
        if not text:
            return None
        found = self.pattern.search(text)
        return found.group(0) if found else None

    def matches_command_text(self, text: str) -> bool:
        """True for a chat message that asks for a clip."""
        if text is None:
            return False
        return text.strip() == CLIP_COMMAND_TEXT or self.match(text) is not None

    async def handle_transcript(self, result: TranscriptionResult) -> bool:
        """Check one transcription result; fire the callback on a match."""
        if not result.is_final:
            return False

        matched = self.match(result.text)
        if matched is None:
            return False

        self.matches_fired += 1
        logger.info(f"Voice trigger matched '{matched}' (source={result.source_id})")
        if self.on_match is not None:
            if asyncio.iscoroutinefunction(self.on_match):
                await self.on_match(matched)
            else:
                self.on_match(matched)
        return True

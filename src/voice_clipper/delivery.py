#!/usr/bin/env python3
"""
Delivery Collaborators

The assembler never talks to the chat platform itself. It hands a finished
artifact as (filename, byte_length, readable handle) to a ClipDelivery, and
replays go to a PlaybackSink. Implementations for a real platform live with
the platform glue; DirectoryDelivery is enough for local runs.
"""

import os
import shutil
import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Optional

logger = logging.getLogger(__name__)


class ClipDelivery(ABC):
    """Receives finished clip artifacts."""

    @abstractmethod
    async def deliver(self, filename: str, byte_length: int, handle: BinaryIO,
                      requester_id: Optional[str] = None) -> None:
        """
        Hand one artifact over. The handle is only valid during this call.

        Args:
            filename: Name the recipient should see (e.g. clip_123_abc.wav)
            byte_length: Total artifact size in bytes
            handle: Binary file object positioned at the start of the artifact
            requester_id: Who asked for the clip, if anyone

        Raises:
            Exception: Any failure; the assembler reports it as a DeliveryFault
        """
        pass


class PlaybackSink(ABC):
    """Plays an artifact back into the voice session (the replay command)."""

    @abstractmethod
    async def play(self, filename: str, byte_length: int, handle: BinaryIO) -> None:
        pass


class DirectoryDelivery(ClipDelivery):
    """Copies every artifact into a local directory."""

    def __init__(self, output_dir: str = "data/clips"):
        self.output_dir = output_dir
        self.delivered_count = 0

    async def deliver(self, filename: str, byte_length: int, handle: BinaryIO,
                      requester_id: Optional[str] = None) -> None:
        Path(self.output_dir).mkdir(parents=True, exist_ok=True)
        target = os.path.join(self.output_dir, os.path.basename(filename))

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._copy, handle, target)

        self.delivered_count += 1
        logger.info(f"Clip saved to: {target} ({byte_length:,} bytes)")

    @staticmethod
    def _copy(handle: BinaryIO, target: str) -> None:
        with open(target, 'wb') as out:
            shutil.copyfileobj(handle, out)

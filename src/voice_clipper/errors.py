#!/usr/bin/env python3
"""
Error taxonomy for the voice clipper.

Per-chunk and per-source faults are contained by the ingestion path, clip
faults by the assembler. An empty buffer is not an error and has no class here.
"""


class ClipperError(Exception):
    """Base class for all voice clipper errors."""


class ConfigurationError(ClipperError, ValueError):
    """Invalid configuration value."""


class InvalidCommand(ClipperError, ValueError):
    """A command request that cannot be served (bad kind or duration)."""


class DecodeFault(ClipperError):
    """A single compressed frame could not be decoded. The frame is dropped."""


class StreamFault(ClipperError):
    """Fatal failure of one source's ingestion path."""

    def __init__(self, message: str, source_id=None):
        super().__init__(message)
        self.source_id = source_id


class SerializationFault(ClipperError):
    """Container writing failed, including an external encoder timing out."""


class DeliveryFault(ClipperError):
    """The finished artifact could not be handed to the delivery collaborator."""

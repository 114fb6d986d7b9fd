#!/usr/bin/env python3
"""
Voice Clipper Configuration

Settings are read from the environment (a .env file is honoured) and
collected into a ClipperConfig. Every field may also be passed directly.

Environment Variables:
    CLIP_RETENTION_SECONDS: Rolling window kept per speaker (default: 30)
    CLIP_MAX_SECONDS: Longest clip a command may request (default: 120)
    CLIP_DEFAULT_SECONDS: Clip length when none is given (default: 30)
    CLIP_SAMPLE_RATE: Decoded PCM sample rate (default: 48000)
    CLIP_CHANNELS: Decoded PCM channel count, 1 or 2 (default: 1)
    CLIP_FRAME_SIZE: Samples per channel per decoded frame (default: 960)
    CLIP_OPUS_FEC: Rebuild lost packets from Opus FEC data (default: true)
    CLIP_MIX_MODE: 'concatenate' or 'sample-mixed' (default: concatenate)
    CLIP_SILENCE_POLICY: 'retain-until-eviction' or 'clear-on-silence'
    CLIP_CONTAINER_STRATEGY: 'direct' or 'ffmpeg' (default: direct)
    CLIP_FFMPEG_PATH: ffmpeg binary for the ffmpeg strategy (default: ffmpeg)
    CLIP_SERIALIZE_TIMEOUT: Seconds allowed for the external encoder (default: 10)
    CLIP_DELIVERY_TIMEOUT: Seconds allowed for delivery hand-off (default: 30)
    CLIP_TRIGGER_PHRASE: Regex that fires a voice-triggered clip
    CLIP_INGEST_QUEUE_SIZE: Compressed frames buffered per source (default: 250)
    CLIP_TEMP_DIR: Directory for transient clip files (default: system temp)
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

MIX_MODE_CONCATENATE = "concatenate"
MIX_MODE_SAMPLE_MIXED = "sample-mixed"
MIX_MODES = (MIX_MODE_CONCATENATE, MIX_MODE_SAMPLE_MIXED)

POLICY_CLEAR_ON_SILENCE = "clear-on-silence"
POLICY_RETAIN_UNTIL_EVICTION = "retain-until-eviction"
SILENCE_POLICIES = (POLICY_CLEAR_ON_SILENCE, POLICY_RETAIN_UNTIL_EVICTION)

CONTAINER_DIRECT = "direct"
CONTAINER_FFMPEG = "ffmpeg"
CONTAINER_STRATEGIES = (CONTAINER_DIRECT, CONTAINER_FFMPEG)

DEFAULT_TRIGGER_PHRASE = r"\b[tT][eEaA3][rR][rR][yYi1lL!|]\s+clip\s+that\b"


@dataclass
class ClipperConfig:
    """Runtime settings for one voice session."""
    retention_seconds: float = 30.0
    max_clip_seconds: int = 120
    default_clip_seconds: int = 30
    sample_rate: int = 48000
    channels: int = 1
    bit_depth: int = 16
    frame_size: int = 960
    opus_fec: bool = True
    mix_mode: str = MIX_MODE_CONCATENATE
    silence_policy: str = POLICY_RETAIN_UNTIL_EVICTION
    container_strategy: str = CONTAINER_DIRECT
    ffmpeg_path: str = "ffmpeg"
    serialize_timeout: float = 10.0
    delivery_timeout: float = 30.0
    trigger_pattern: str = DEFAULT_TRIGGER_PHRASE
    ingest_queue_size: int = 250
    temp_dir: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError if any field is out of range."""
        if self.retention_seconds <= 0:
            raise ConfigurationError(f"retention_seconds must be positive, got {self.retention_seconds}")
        if self.max_clip_seconds < 1:
            raise ConfigurationError(f"max_clip_seconds must be at least 1, got {self.max_clip_seconds}")
        if not 1 <= self.default_clip_seconds <= self.max_clip_seconds:
            raise ConfigurationError(
                f"default_clip_seconds must be within 1..{self.max_clip_seconds}, got {self.default_clip_seconds}")
        if self.channels not in (1, 2):
            raise ConfigurationError(f"channels must be 1 or 2, got {self.channels}")
        if self.bit_depth != 16:
            raise ConfigurationError(f"only 16-bit PCM is supported, got {self.bit_depth}")
        if self.sample_rate <= 0 or self.frame_size <= 0:
            raise ConfigurationError("sample_rate and frame_size must be positive")
        if self.mix_mode not in MIX_MODES:
            raise ConfigurationError(f"Unknown mix mode: {self.mix_mode}. Available: {', '.join(MIX_MODES)}")
        if self.silence_policy not in SILENCE_POLICIES:
            raise ConfigurationError(
                f"Unknown silence policy: {self.silence_policy}. Available: {', '.join(SILENCE_POLICIES)}")
        if self.container_strategy not in CONTAINER_STRATEGIES:
            raise ConfigurationError(
                f"Unknown container strategy: {self.container_strategy}. "
                f"Available: {', '.join(CONTAINER_STRATEGIES)}")
        if self.serialize_timeout <= 0 or self.delivery_timeout <= 0:
            raise ConfigurationError("timeouts must be positive")
        if self.ingest_queue_size < 1:
            raise ConfigurationError(f"ingest_queue_size must be at least 1, got {self.ingest_queue_size}")

    @property
    def frame_duration(self) -> float:
        """Seconds of audio in one decoded frame (0.02 for 960 samples at 48 kHz)."""
        return self.frame_size / self.sample_rate

    @classmethod
    def from_env(cls, load_dotenv_file: bool = True) -> "ClipperConfig":
        """Build a config from CLIP_* environment variables."""
        if load_dotenv_file:
            load_dotenv()

        try:
            config = cls(
                retention_seconds=float(os.getenv('CLIP_RETENTION_SECONDS', '30')),
                max_clip_seconds=int(os.getenv('CLIP_MAX_SECONDS', '120')),
                default_clip_seconds=int(os.getenv('CLIP_DEFAULT_SECONDS', '30')),
                sample_rate=int(os.getenv('CLIP_SAMPLE_RATE', '48000')),
                channels=int(os.getenv('CLIP_CHANNELS', '1')),
                frame_size=int(os.getenv('CLIP_FRAME_SIZE', '960')),
                opus_fec=os.getenv('CLIP_OPUS_FEC', 'true').lower() in ('true', '1', 'yes', 'on'),
                mix_mode=os.getenv('CLIP_MIX_MODE', MIX_MODE_CONCATENATE).strip().lower(),
                silence_policy=os.getenv('CLIP_SILENCE_POLICY', POLICY_RETAIN_UNTIL_EVICTION).strip().lower(),
                container_strategy=os.getenv('CLIP_CONTAINER_STRATEGY', CONTAINER_DIRECT).strip().lower(),
                ffmpeg_path=os.getenv('CLIP_FFMPEG_PATH', 'ffmpeg'),
                serialize_timeout=float(os.getenv('CLIP_SERIALIZE_TIMEOUT', '10')),
                delivery_timeout=float(os.getenv('CLIP_DELIVERY_TIMEOUT', '30')),
                trigger_pattern=os.getenv('CLIP_TRIGGER_PHRASE', DEFAULT_TRIGGER_PHRASE),
                ingest_queue_size=int(os.getenv('CLIP_INGEST_QUEUE_SIZE', '250')),
                temp_dir=os.getenv('CLIP_TEMP_DIR') or None,
            )
        except ValueError as e:
            if isinstance(e, ConfigurationError):
                raise
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

        logger.info(f"Voice clipper configuration: retention={config.retention_seconds}s, "
                    f"max_clip={config.max_clip_seconds}s, mix_mode={config.mix_mode}, "
                    f"silence_policy={config.silence_policy}, container={config.container_strategy}")
        return config

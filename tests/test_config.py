#!/usr/bin/env python3
"""
Tests for configuration, command validation, the phrase trigger and the
transcriber audio hand-off.
"""

import numpy as np
import pytest

from conftest import FakeTranscriber
from voice_clipper.audio.types import PcmBuffer
from voice_clipper.commands import CommandKind, CommandRequest
from voice_clipper.config import (
    MIX_MODE_SAMPLE_MIXED, POLICY_CLEAR_ON_SILENCE, POLICY_RETAIN_UNTIL_EVICTION, ClipperConfig,
)
from voice_clipper.errors import ConfigurationError, InvalidCommand
from voice_clipper.phrase_trigger import PhraseTrigger
from voice_clipper.stt.base_stt import TranscriptionResult, prepare_audio

ENV_KEYS = [
    'CLIP_RETENTION_SECONDS', 'CLIP_MAX_SECONDS', 'CLIP_DEFAULT_SECONDS', 'CLIP_SAMPLE_RATE',
    'CLIP_CHANNELS', 'CLIP_FRAME_SIZE', 'CLIP_MIX_MODE', 'CLIP_SILENCE_POLICY',
    'CLIP_CONTAINER_STRATEGY', 'CLIP_FFMPEG_PATH', 'CLIP_SERIALIZE_TIMEOUT', 'CLIP_DELIVERY_TIMEOUT',
    'CLIP_TRIGGER_PHRASE', 'CLIP_INGEST_QUEUE_SIZE', 'CLIP_TEMP_DIR', 'CLIP_OPUS_FEC',
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


# -- configuration ---------------------------------------------------------

def test_defaults(clean_env):
    config = ClipperConfig.from_env(load_dotenv_file=False)
    assert config.retention_seconds == 30.0
    assert config.max_clip_seconds == 120
    assert config.default_clip_seconds == 30
    assert config.sample_rate == 48000 and config.channels == 1
    assert config.silence_policy == POLICY_RETAIN_UNTIL_EVICTION
    assert config.frame_duration == pytest.approx(0.02)
    assert config.temp_dir is None
    assert config.opus_fec is True


def test_environment_overrides(clean_env):
    clean_env.setenv('CLIP_RETENTION_SECONDS', '60')
    clean_env.setenv('CLIP_MIX_MODE', 'Sample-Mixed')
    clean_env.setenv('CLIP_SILENCE_POLICY', 'clear-on-silence')
    clean_env.setenv('CLIP_CHANNELS', '2')
    clean_env.setenv('CLIP_TEMP_DIR', '/tmp/clips')
    clean_env.setenv('CLIP_OPUS_FEC', 'off')

    config = ClipperConfig.from_env(load_dotenv_file=False)

    assert config.retention_seconds == 60.0
    assert config.mix_mode == MIX_MODE_SAMPLE_MIXED
    assert config.silence_policy == POLICY_CLEAR_ON_SILENCE
    assert config.channels == 2
    assert config.temp_dir == '/tmp/clips'
    assert config.opus_fec is False


@pytest.mark.parametrize("key,value", [
    ('CLIP_RETENTION_SECONDS', 'forever'),
    ('CLIP_RETENTION_SECONDS', '0'),
    ('CLIP_CHANNELS', '6'),
    ('CLIP_MIX_MODE', 'average'),
    ('CLIP_SILENCE_POLICY', 'keep'),
    ('CLIP_CONTAINER_STRATEGY', 'mp3'),
    ('CLIP_DEFAULT_SECONDS', '500'),
])
def test_invalid_environment_values(clean_env, key, value):
    clean_env.setenv(key, value)
    with pytest.raises(ConfigurationError):
        ClipperConfig.from_env(load_dotenv_file=False)


def test_direct_construction_is_validated():
    with pytest.raises(ConfigurationError):
        ClipperConfig(bit_depth=24)
    with pytest.raises(ValueError):
        ClipperConfig(ingest_queue_size=0)


# -- commands --------------------------------------------------------------

@pytest.mark.parametrize("name,kind", [
    ("clip", CommandKind.CLIP),
    ("record", CommandKind.START_RECORDING),
    ("Start Recording", CommandKind.START_RECORDING),
    ("stoprecording", CommandKind.STOP_RECORDING),
    ("replay", CommandKind.REPLAY),
])
def test_command_aliases(name, kind):
    assert CommandRequest.create(name).kind == kind


def test_clip_duration_defaults_and_bounds():
    assert CommandRequest.create("clip").duration_seconds == 30
    assert CommandRequest.create("clip", 1).duration_seconds == 1
    assert CommandRequest.create("clip", 120).duration_seconds == 120
    assert CommandRequest.create("clip", default_seconds=15).duration_seconds == 15


@pytest.mark.parametrize("duration", [0, 121, -5, 2.5, "30", True])
def test_clip_duration_rejected(duration):
    with pytest.raises(InvalidCommand):
        CommandRequest.create("clip", duration)


def test_non_clip_commands_ignore_duration():
    assert CommandRequest.create("replay", 999).duration_seconds is None


def test_from_dict_accepts_both_spellings():
    assert CommandRequest.from_dict({'kind': 'clip', 'durationSeconds': 45}).duration_seconds == 45
    assert CommandRequest.from_dict({'kind': 'clip', 'duration_seconds': 12}).duration_seconds == 12
    with pytest.raises(InvalidCommand):
        CommandRequest.from_dict({'durationSeconds': 12})


# -- phrase trigger --------------------------------------------------------

@pytest.mark.parametrize("text", [
    "Terry clip that",
    "hey terry clip that!",
    "t3rry clip that",
    "Terri   clip that",
    "TARRY CLIP THAT",
])
def test_trigger_phrase_variants_match(text):
    assert PhraseTrigger().match(text) is not None


@pytest.mark.parametrize("text", ["jerry clip that", "terry clipped that", "terry, clip that", "", None])
def test_trigger_phrase_non_matches(text):
    assert PhraseTrigger().match(text) is None


def test_command_text():
    trigger = PhraseTrigger()
    assert trigger.matches_command_text("!clip")
    assert trigger.matches_command_text("terry clip that")
    assert not trigger.matches_command_text("!clipboard")
    assert not trigger.matches_command_text(None)


@pytest.mark.asyncio
async def test_trigger_callback_sync_and_async():
    seen = []

    async def on_match_async(text):
        seen.append(("async", text))

    await PhraseTrigger(on_match=on_match_async).handle_transcript(TranscriptionResult("terry clip that"))
    await PhraseTrigger(on_match=lambda t: seen.append(("sync", t))).handle_transcript(
        TranscriptionResult("Terry clip that"))

    assert seen == [("async", "terry clip that"), ("sync", "Terry clip that")]


def test_custom_pattern():
    trigger = PhraseTrigger(r"\bsave\s+that\b")
    assert trigger.match("please SAVE that") == "SAVE that"
    assert trigger.match("terry clip that") is None


# -- transcriber hand-off --------------------------------------------------

def test_prepare_audio_downmixes_and_resamples():
    stereo = np.tile(np.array([[16384, -16384]], dtype='<i2'), (4800, 1)).reshape(-1)
    pcm = PcmBuffer.from_samples(stereo, sample_rate=48000, channels=2)

    audio = prepare_audio(pcm, 16000)

    assert audio.dtype == np.float32
    assert len(audio) == 1600
    assert np.all(np.abs(audio) <= 1.0)
    # Opposite channels cancel when downmixed
    assert np.allclose(audio, 0.0, atol=1e-6)


def test_prepare_audio_same_rate_is_scaled_only():
    pcm = PcmBuffer.from_samples(np.array([-32768, 0, 16384], dtype='<i2'), sample_rate=16000, channels=1)
    assert prepare_audio(pcm, 16000).tolist() == [-1.0, 0.0, 0.5]


@pytest.mark.asyncio
async def test_transcribe_pcm_tags_source():
    transcriber = FakeTranscriber("hello")
    pcm = PcmBuffer.from_samples(np.zeros(960, dtype='<i2'), sample_rate=48000, channels=1)

    result = await transcriber.transcribe_pcm(pcm, source_id="alice")

    assert result.source_id == "alice"
    assert len(transcriber.calls[0]) == 320

"""Shared configuration and logging setup.

This module provides:
- Configuration loaded from environment variables
- Loguru sink configuration
- BridgeConfig, the per-session settings handed to each SessionBridge
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any

from dotenv import load_dotenv
from loguru import logger

load_dotenv()

# =============================================================================
# Configuration
# =============================================================================


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name, "")
    try:
        return int(value) if value else default
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {value!r}, using {default}")
        return default


# Server
SERVER_HOST = os.getenv("HOST", "0.0.0.0")
SERVER_PORT = _env_int("PORT", 3000)
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG").upper()
MAX_PAYLOAD = _env_int("MAX_PAYLOAD", 1048576)  # 1MB

# ElevenLabs Conversational AI
ELEVENLABS_AGENT_ID = os.getenv("ELEVENLABS_AGENT_ID", "")
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY", "")
ELEVENLABS_API_URL = os.getenv("ELEVENLABS_API_URL", "https://api.elevenlabs.io")

# Agent overrides sent in conversation_initiation_client_data
AGENT_PROMPT = os.getenv("AGENT_PROMPT", "")
AGENT_FIRST_MESSAGE = os.getenv("AGENT_FIRST_MESSAGE", "")
AGENT_LANGUAGE = os.getenv("AGENT_LANGUAGE", "")

# Audio
FFMPEG_PATH = os.getenv("FFMPEG_PATH", "")
VOICE_AI_OUTPUT_FORMAT = os.getenv("VOICE_AI_OUTPUT_FORMAT", "pcm_16000")
OPTIMIZE_STREAMING_LATENCY = _env_int("OPTIMIZE_STREAMING_LATENCY", 3)
TELEPHONY_SAMPLE_RATE = 8000  # Telephony media streams are 8kHz μ-law

# Early audio (media that arrives before the voice-AI socket is open)
BUFFER_EARLY_AUDIO = _env_bool("BUFFER_EARLY_AUDIO", False)
EARLY_AUDIO_BUFFER_SIZE = _env_int("EARLY_AUDIO_BUFFER_SIZE", 50)


def output_format_sample_rate(output_format: str) -> int:
    """Return the sample rate encoded in a format name like ``pcm_16000``."""
    codec, _, rate = output_format.partition("_")
    if not rate.isdigit():
        raise ValueError(f"Output format has no sample rate: {output_format}")
    if codec != "pcm":
        raise ValueError(f"Only raw PCM output can be transcoded, got: {output_format}")
    return int(rate)


@dataclass
class BridgeConfig:
    """Settings for one SessionBridge."""

    agent_id: str = ""
    api_key: str = ""
    api_url: str = "https://api.elevenlabs.io"
    optimize_streaming_latency: int = 3
    output_format: str = "pcm_16000"
    ffmpeg_path: str = ""
    buffer_early_audio: bool = False
    early_audio_buffer_size: int = 50
    max_payload: int = 1048576
    agent_override: dict[str, Any] = field(default_factory=dict)

    @property
    def transcoding_enabled(self) -> bool:
        return bool(self.ffmpeg_path)


def build_agent_override(
    prompt: str = "", first_message: str = "", language: str = ""
) -> dict[str, Any]:
    """Build the ``agent`` section of conversation_config_override, skipping empty values."""
    agent: dict[str, Any] = {}
    if prompt:
        agent["prompt"] = {"prompt": prompt}
    if first_message:
        agent["first_message"] = first_message
    if language:
        agent["language"] = language
    return agent


def bridge_config_from_env() -> BridgeConfig:
    """Build a BridgeConfig from the module-level environment settings."""
    return BridgeConfig(
        agent_id=ELEVENLABS_AGENT_ID,
        api_key=ELEVENLABS_API_KEY,
        api_url=ELEVENLABS_API_URL,
        optimize_streaming_latency=OPTIMIZE_STREAMING_LATENCY,
        output_format=VOICE_AI_OUTPUT_FORMAT,
        ffmpeg_path=FFMPEG_PATH,
        buffer_early_audio=BUFFER_EARLY_AUDIO,
        early_audio_buffer_size=EARLY_AUDIO_BUFFER_SIZE,
        max_payload=MAX_PAYLOAD,
        agent_override=build_agent_override(AGENT_PROMPT, AGENT_FIRST_MESSAGE, AGENT_LANGUAGE),
    )


# =============================================================================
# Logging
# =============================================================================


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Replace loguru's default sink with a stderr sink at the given level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=(
            "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
            "<cyan>{extra[session]}</cyan> | {message}"
        ),
    )
    logger.configure(extra={"session": "-"})

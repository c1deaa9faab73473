"""Message codecs for the two sides of the bridge.

Telephony side (media-stream protocol):
    connected, start, media, mark, stop, clear events keyed by ``event``.

Voice-AI side (ElevenLabs Conversational AI protocol):
    messages keyed by ``type``; the bridge consumes audio, error, ping,
    interruption and conversation_initiation_metadata, and produces
    conversation_initiation_client_data, user_audio_chunk, pong and
    contextual_update messages.

Decoding never raises anything but DecodeError. Unknown event names decode to
an Unhandled variant so newer peer messages are ignored rather than rejected.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

TELEPHONY = "telephony"
VOICE_AI = "voice-ai"


class DecodeError(ValueError):
    """A peer sent a message that could not be decoded."""

    def __init__(self, peer: str, reason: str, raw: str | bytes = "") -> None:
        self.peer = peer
        self.reason = reason
        sample = raw if isinstance(raw, str) else raw.decode("utf-8", errors="replace")
        self.sample = sample[:120]
        super().__init__(f"{peer}: {reason} (raw={self.sample!r})")


def _load_object(peer: str, raw: str | bytes) -> dict[str, Any]:
    try:
        message = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodeError(peer, f"invalid JSON: {e}", raw) from e
    if not isinstance(message, dict):
        raise DecodeError(peer, "message is not a JSON object", raw)
    return message


def _section(message: dict[str, Any], key: str) -> dict[str, Any]:
    value = message.get(key)
    return value if isinstance(value, dict) else {}


def _require_str(peer: str, raw: str | bytes, value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value:
        raise DecodeError(peer, f"missing or invalid '{field_name}'", raw)
    return value


# =============================================================================
# Telephony events
# =============================================================================


@dataclass(frozen=True)
class Connected:
    def to_message(self) -> dict[str, Any]:
        return {"event": "connected"}


@dataclass(frozen=True)
class Start:
    stream_sid: str


@dataclass(frozen=True)
class Media:
    stream_sid: str | None
    payload: str

    def to_message(self) -> dict[str, Any]:
        return {
            "event": "media",
            "streamSid": self.stream_sid,
            "media": {"payload": self.payload},
        }


@dataclass(frozen=True)
class Mark:
    stream_sid: str | None
    name: str = ""

    def to_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"event": "mark", "streamSid": self.stream_sid}
        if self.name:
            message["mark"] = {"name": self.name}
        return message


@dataclass(frozen=True)
class Stop:
    stream_sid: str | None = None


@dataclass(frozen=True)
class Clear:
    """Tells the telephony side to discard audio it has queued for playback."""

    stream_sid: str | None

    def to_message(self) -> dict[str, Any]:
        return {"event": "clear", "streamSid": self.stream_sid}


@dataclass(frozen=True)
class Unhandled:
    event: str


OutboundEvent = Union[Connected, Media, Mark, Clear]
TelephonyEvent = Union[Connected, Start, Media, Mark, Stop, Clear, Unhandled]


def decode_telephony(raw: str | bytes) -> TelephonyEvent:
    """Decode one telephony frame into a TelephonyEvent."""
    message = _load_object(TELEPHONY, raw)
    event = message.get("event")
    if not isinstance(event, str):
        raise DecodeError(TELEPHONY, "missing 'event'", raw)

    stream_sid = message.get("streamSid")
    if event == "connected":
        return Connected()
    if event == "start":
        # Twilio repeats the sid inside the start block; either location is accepted
        if not stream_sid:
            stream_sid = _section(message, "start").get("streamSid")
        return Start(stream_sid=_require_str(TELEPHONY, raw, stream_sid, "streamSid"))
    if event == "media":
        media = message.get("media")
        if not isinstance(media, dict):
            raise DecodeError(TELEPHONY, "missing 'media'", raw)
        payload = _require_str(TELEPHONY, raw, media.get("payload"), "media.payload")
        return Media(stream_sid=stream_sid, payload=payload)
    if event == "mark":
        name = _section(message, "mark").get("name", "")
        return Mark(stream_sid=stream_sid, name=name if isinstance(name, str) else "")
    if event == "stop":
        return Stop(stream_sid=stream_sid)
    if event == "clear":
        return Clear(stream_sid=stream_sid)
    return Unhandled(event=event)


def encode_telephony(event: OutboundEvent) -> str:
    return json.dumps(event.to_message())


# =============================================================================
# Voice-AI events
# =============================================================================


@dataclass(frozen=True)
class Audio:
    audio_base_64: str
    event_id: int | None = None


@dataclass(frozen=True)
class VoiceAiError:
    message: str
    raw: dict[str, Any]


@dataclass(frozen=True)
class ConversationMetadata:
    conversation_id: str | None
    output_format: str | None = None
    input_format: str | None = None


@dataclass(frozen=True)
class Ping:
    event_id: int | None


@dataclass(frozen=True)
class Interruption:
    event_id: int | None = None


@dataclass(frozen=True)
class UnhandledVoiceAi:
    type: str


VoiceAiEvent = Union[
    Audio, VoiceAiError, ConversationMetadata, Ping, Interruption, UnhandledVoiceAi
]


def _error_text(message: dict[str, Any]) -> str:
    for key in ("message", "error", "error_event"):
        value = message.get(key)
        if isinstance(value, str):
            return value
        if isinstance(value, dict):
            text = value.get("message") or value.get("error") or value.get("reason")
            if text:
                return str(text)
    return "unknown error"


def decode_voice_ai(raw: str | bytes) -> VoiceAiEvent:
    """Decode one voice-AI frame into a VoiceAiEvent."""
    message = _load_object(VOICE_AI, raw)
    msg_type = message.get("type")
    if not isinstance(msg_type, str):
        raise DecodeError(VOICE_AI, "missing 'type'", raw)

    if msg_type == "audio":
        audio_event = message.get("audio_event")
        if not isinstance(audio_event, dict):
            raise DecodeError(VOICE_AI, "missing 'audio_event'", raw)
        audio = _require_str(VOICE_AI, raw, audio_event.get("audio_base_64"), "audio_base_64")
        return Audio(audio_base_64=audio, event_id=audio_event.get("event_id"))

    if msg_type == "error":
        return VoiceAiError(message=_error_text(message), raw=message)

    if msg_type == "conversation_initiation_metadata":
        meta = _section(message, "conversation_initiation_metadata_event")
        return ConversationMetadata(
            conversation_id=meta.get("conversation_id"),
            output_format=meta.get("agent_output_audio_format"),
            input_format=meta.get("user_input_audio_format"),
        )

    if msg_type == "ping":
        ping = _section(message, "ping_event")
        return Ping(event_id=ping.get("event_id"))

    if msg_type == "interruption":
        interruption = _section(message, "interruption_event")
        return Interruption(event_id=interruption.get("event_id"))

    return UnhandledVoiceAi(type=msg_type)


# =============================================================================
# Bridge -> voice-AI messages
# =============================================================================


def conversation_initiation(agent_override: dict[str, Any], output_format: str = "") -> str:
    """Build the conversation_initiation_client_data message sent on open."""
    override: dict[str, Any] = {}
    if agent_override:
        override["agent"] = agent_override
    if output_format:
        override["tts"] = {"agent_output_audio_format": output_format}
    return json.dumps(
        {
            "type": "conversation_initiation_client_data",
            "conversation_config_override": override,
        }
    )


def user_audio_chunk(payload: str, optimize_streaming_latency: int) -> str:
    return json.dumps(
        {
            "user_audio_chunk": payload,
            "optimize_streaming_latency": optimize_streaming_latency,
        }
    )


def conversation_start(stream_sid: str | None) -> str:
    """Signal that the caller's media stream has started."""
    return json.dumps(
        {
            "type": "contextual_update",
            "text": f"Caller connected on stream {stream_sid}.",
        }
    )


def conversation_end(stream_sid: str | None) -> str:
    """Signal that the caller's media stream has stopped."""
    return json.dumps(
        {
            "type": "contextual_update",
            "text": f"Caller disconnected from stream {stream_sid}. The conversation is over.",
        }
    )


def pong(event_id: int | None) -> str:
    return json.dumps({"type": "pong", "event_id": event_id})

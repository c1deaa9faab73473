"""Tests for the telephony and ElevenLabs message codecs."""

import json

import pytest

from protocol import (
    TELEPHONY,
    VOICE_AI,
    Audio,
    Clear,
    Connected,
    ConversationMetadata,
    DecodeError,
    Interruption,
    Mark,
    Media,
    Ping,
    Start,
    Stop,
    Unhandled,
    UnhandledVoiceAi,
    VoiceAiError,
    conversation_end,
    conversation_initiation,
    conversation_start,
    decode_telephony,
    decode_voice_ai,
    encode_telephony,
    pong,
    user_audio_chunk,
)


class TestDecodeTelephony:
    """Tests for decoding telephony media-stream events."""

    def test_start_with_top_level_stream_sid(self):
        event = decode_telephony('{"event": "start", "streamSid": "CA123"}')
        assert event == Start(stream_sid="CA123")

    def test_start_with_nested_stream_sid(self):
        raw = json.dumps({"event": "start", "start": {"streamSid": "MZ42", "callSid": "CA1"}})
        assert decode_telephony(raw) == Start(stream_sid="MZ42")

    def test_start_without_stream_sid_is_rejected(self):
        with pytest.raises(DecodeError, match="streamSid"):
            decode_telephony('{"event": "start", "start": "oops"}')

    def test_media(self):
        raw = json.dumps(
            {"event": "media", "streamSid": "CA123", "media": {"track": "inbound", "payload": "AAA="}}
        )
        assert decode_telephony(raw) == Media(stream_sid="CA123", payload="AAA=")

    def test_media_without_payload_is_rejected(self):
        with pytest.raises(DecodeError):
            decode_telephony('{"event": "media", "media": {}}')

    def test_media_without_media_block_is_rejected(self):
        with pytest.raises(DecodeError, match="media"):
            decode_telephony('{"event": "media"}')

    def test_mark_stop_and_connected(self):
        assert decode_telephony('{"event": "connected", "protocol": "Call"}') == Connected()
        assert decode_telephony(
            '{"event": "mark", "streamSid": "CA123", "mark": {"name": "greeting"}}'
        ) == Mark(stream_sid="CA123", name="greeting")
        assert decode_telephony('{"event": "stop", "streamSid": "CA123"}') == Stop("CA123")

    def test_unknown_event_is_unhandled(self):
        assert decode_telephony('{"event": "dtmf", "dtmf": {"digit": "1"}}') == Unhandled("dtmf")

    def test_bytes_input(self):
        assert decode_telephony(b'{"event": "stop"}') == Stop(stream_sid=None)

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '"media"', '{"streamSid": "CA1"}'])
    def test_malformed_messages(self, raw):
        with pytest.raises(DecodeError) as exc_info:
            decode_telephony(raw)
        assert exc_info.value.peer == TELEPHONY

    def test_decode_error_truncates_sample(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_telephony("x" * 500)
        assert len(exc_info.value.sample) == 120


class TestEncodeTelephony:
    """Tests for messages sent to the telephony side."""

    def test_connected(self):
        assert json.loads(encode_telephony(Connected())) == {"event": "connected"}

    def test_media(self):
        message = json.loads(encode_telephony(Media(stream_sid="CA123", payload="XYZ=")))
        assert message == {"event": "media", "streamSid": "CA123", "media": {"payload": "XYZ="}}

    def test_media_without_stream_sid(self):
        message = json.loads(encode_telephony(Media(stream_sid=None, payload="XYZ=")))
        assert message["streamSid"] is None

    def test_mark(self):
        assert json.loads(encode_telephony(Mark(stream_sid="CA123"))) == {
            "event": "mark",
            "streamSid": "CA123",
        }
        assert json.loads(encode_telephony(Mark(stream_sid="CA123", name="start")))["mark"] == {
            "name": "start"
        }

    def test_clear(self):
        assert json.loads(encode_telephony(Clear(stream_sid="CA123"))) == {
            "event": "clear",
            "streamSid": "CA123",
        }


class TestDecodeVoiceAi:
    """Tests for decoding ElevenLabs messages."""

    def test_audio(self):
        raw = json.dumps(
            {"type": "audio", "audio_event": {"audio_base_64": "XYZ=", "event_id": 3}}
        )
        assert decode_voice_ai(raw) == Audio(audio_base_64="XYZ=", event_id=3)

    def test_audio_without_payload_is_rejected(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_voice_ai('{"type": "audio", "audio_event": {}}')
        assert exc_info.value.peer == VOICE_AI

    def test_error(self):
        event = decode_voice_ai('{"type": "error", "message": "quota exceeded"}')
        assert isinstance(event, VoiceAiError)
        assert event.message == "quota exceeded"
        assert event.raw["type"] == "error"

    def test_error_with_nested_details(self):
        event = decode_voice_ai('{"type": "error", "error_event": {"reason": "bad audio"}}')
        assert event.message == "bad audio"

    def test_error_without_details(self):
        assert decode_voice_ai('{"type": "error"}').message == "unknown error"

    def test_metadata(self):
        raw = json.dumps(
            {
                "type": "conversation_initiation_metadata",
                "conversation_initiation_metadata_event": {
                    "conversation_id": "conv_1",
                    "agent_output_audio_format": "pcm_16000",
                    "user_input_audio_format": "ulaw_8000",
                },
            }
        )
        assert decode_voice_ai(raw) == ConversationMetadata(
            conversation_id="conv_1", output_format="pcm_16000", input_format="ulaw_8000"
        )

    def test_ping_and_interruption(self):
        assert decode_voice_ai(
            '{"type": "ping", "ping_event": {"event_id": 7, "ping_ms": 40}}'
        ) == Ping(event_id=7)
        assert decode_voice_ai(
            '{"type": "interruption", "interruption_event": {"event_id": 9}}'
        ) == Interruption(event_id=9)

    def test_unknown_type_is_unhandled(self):
        assert decode_voice_ai('{"type": "agent_response"}') == UnhandledVoiceAi("agent_response")

    @pytest.mark.parametrize("raw", ["{bad", "null", '{"audio_event": {}}'])
    def test_malformed_messages(self, raw):
        with pytest.raises(DecodeError):
            decode_voice_ai(raw)


class TestVoiceAiMessages:
    """Tests for messages sent to ElevenLabs."""

    def test_conversation_initiation(self):
        message = json.loads(conversation_initiation({"language": "en"}, "pcm_16000"))
        assert message == {
            "type": "conversation_initiation_client_data",
            "conversation_config_override": {
                "agent": {"language": "en"},
                "tts": {"agent_output_audio_format": "pcm_16000"},
            },
        }

    def test_conversation_initiation_without_overrides(self):
        message = json.loads(conversation_initiation({}))
        assert message["conversation_config_override"] == {}

    def test_user_audio_chunk(self):
        assert json.loads(user_audio_chunk("BBB=", 3)) == {
            "user_audio_chunk": "BBB=",
            "optimize_streaming_latency": 3,
        }

    def test_start_and_end_signals(self):
        start = json.loads(conversation_start("CA123"))
        end = json.loads(conversation_end("CA123"))
        assert start["type"] == end["type"] == "contextual_update"
        assert "CA123" in start["text"]
        assert "over" in end["text"]

    def test_pong(self):
        assert json.loads(pong(7)) == {"type": "pong", "event_id": 7}

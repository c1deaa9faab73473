"""
Session bridge between a telephony media stream and an ElevenLabs conversation.

This module provides the per-call bridge that:
- Acknowledges the telephony socket and authenticates against ElevenLabs
- Opens the ElevenLabs conversation websocket and sends the agent overrides
- Forwards caller audio to ElevenLabs and agent audio back to the caller
- Optionally transcodes agent audio to 8kHz μ-law with ffmpeg
- Closes each side when the other one goes away

Usage:
    from agent import run_agent

    # In your WebSocket handler:
    await run_agent(websocket)

One SessionBridge exists per accepted telephony connection. All session state
lives on that instance and is only touched by its own two receive tasks.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import uuid
from collections import deque
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loguru import logger
from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from convai import (
    AuthenticationError,
    VoiceAiConnectionError,
    get_signed_url,
    open_voice_ai_connection,
)
from protocol import (
    Audio,
    Clear,
    Connected,
    ConversationMetadata,
    DecodeError,
    Interruption,
    Mark,
    Media,
    OutboundEvent,
    Ping,
    Start,
    Stop,
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
from transcoder import FfmpegTranscoder, TranscodeError, create_transcoder
from utils import BridgeConfig, bridge_config_from_env

if TYPE_CHECKING:
    from fastapi import WebSocket


class SessionState(Enum):
    AUTHENTICATING = "authenticating"
    CONNECTING_VOICE_AI = "connecting_voice_ai"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_STATES = (SessionState.CLOSED, SessionState.FAILED)


async def authenticate_with_elevenlabs(config: BridgeConfig) -> str:
    return await get_signed_url(config.agent_id, config.api_key, base_url=config.api_url)


class SessionBridge:
    """Bridges one telephony connection to one ElevenLabs conversation."""

    def __init__(
        self,
        telephony_ws: WebSocket,
        config: BridgeConfig,
        *,
        authenticate: Callable[[BridgeConfig], Awaitable[str]] = authenticate_with_elevenlabs,
        connect: Callable[[str], Awaitable[Any]] = open_voice_ai_connection,
        transcoder: FfmpegTranscoder | None = None,
    ):
        self.telephony_ws = telephony_ws
        self.config = config
        self.transcoder = transcoder
        self._authenticate = authenticate
        self._connect = connect

        self.session_id = uuid.uuid4().hex[:8]
        self.state = SessionState.AUTHENTICATING
        self.stream_sid: str | None = None
        self.voice_ai_ready = False
        self.conversation_started = False

        self._voice_ai_ws = None
        self._voice_ai_closed = False
        self._telephony_closed = False
        self._hung_up = False  # a telephony stop event ended the conversation
        self._early_audio: deque[str] = deque(maxlen=max(config.early_audio_buffer_size, 1))

        # Stats
        self.frames_to_voice_ai = 0
        self.frames_to_telephony = 0
        self.frames_dropped = 0
        self.chunks_dropped = 0
        self.malformed_messages = 0

        self._log = logger.bind(session=self.session_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        if self.state in TERMINAL_STATES or self.state == state:
            return
        self._log.debug(f"State {self.state.value} -> {state.value}")
        self.state = state

    async def run(self) -> None:
        """Run the session until both connections are closed."""
        self._log.info("Starting bridge session")
        await self._send_telephony(Connected())

        tasks = [
            asyncio.create_task(self._receive_from_telephony(), name="telephony_rx"),
            asyncio.create_task(self._run_voice_ai(), name="voice_ai_rx"),
        ]
        telephony_task = tasks[0]

        try:
            done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            if telephony_task not in done and self._hung_up and self.state != SessionState.FAILED:
                # The stop event closed the conversation; the caller's socket stays up
                self._log.info("Conversation ended by stop event, waiting for telephony close")
                done, _pending = await asyncio.wait([telephony_task])
            for task in done:
                if not task.cancelled() and task.exception():
                    self._log.error(f"Task {task.get_name()} failed: {task.exception()}")
                    self._set_state(SessionState.FAILED)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            await self._shutdown()

    async def _shutdown(self) -> None:
        self._set_state(SessionState.CLOSING)
        self.voice_ai_ready = False
        self._early_audio.clear()
        await self._close_voice_ai()
        await self._close_telephony()
        self._set_state(SessionState.CLOSED)
        self._log.info(
            f"Bridge session ended ({self.state.value}): "
            f"to_voice_ai={self.frames_to_voice_ai}, to_telephony={self.frames_to_telephony}, "
            f"dropped_frames={self.frames_dropped}, dropped_chunks={self.chunks_dropped}, "
            f"malformed={self.malformed_messages}"
        )

    async def _run_voice_ai(self) -> None:
        """Authenticate, open the conversation socket, and relay its messages."""
        try:
            signed_url = await self._authenticate(self.config)
            self._log.info("Got signed URL from ElevenLabs")
            self._set_state(SessionState.CONNECTING_VOICE_AI)
            self._voice_ai_ws = await self._connect(signed_url)
        except AuthenticationError as e:
            self._log.error(f"ElevenLabs authentication failed (status={e.status_code}): {e}")
            self._set_state(SessionState.FAILED)
            return
        except VoiceAiConnectionError as e:
            self._log.error(f"ElevenLabs connection failed: {e}")
            self._set_state(SessionState.FAILED)
            return
        except Exception as e:
            self._log.exception(f"Error establishing bridge: {e}")
            self._set_state(SessionState.FAILED)
            return

        if self._hung_up:
            self._log.info("Stop received before ElevenLabs opened, closing it")
            await self._close_voice_ai()
            return

        if not await self._on_voice_ai_open():
            return
        await self._receive_from_voice_ai()

    async def _on_voice_ai_open(self) -> bool:
        """Send the init message and go ACTIVE. Returns False if a stop won the race."""
        await self._send_voice_ai(
            conversation_initiation(
                self.config.agent_override,
                self.config.output_format if self.transcoder is not None else "",
            )
        )
        if self._hung_up or self._voice_ai_closed:
            self._log.info("Stop received while ElevenLabs was opening, not going active")
            await self._close_voice_ai()
            return False

        self.voice_ai_ready = True
        self._set_state(SessionState.ACTIVE)

        if self._early_audio:
            self._log.info(f"Flushing {len(self._early_audio)} buffered audio frames")
            while self._early_audio and self.voice_ai_ready:
                await self._forward_audio(self._early_audio.popleft())

        # The stream may have started while we were still authenticating
        if self.voice_ai_ready and self.stream_sid is not None and not self.conversation_started:
            await self._start_conversation()
        return True

    async def _start_conversation(self) -> None:
        self.conversation_started = True
        await self._send_voice_ai(conversation_start(self.stream_sid))
        self._log.info(f"Conversation started for stream {self.stream_sid}")

    # -------------------------------------------------------------------------
    # Telephony -> ElevenLabs
    # -------------------------------------------------------------------------

    async def _receive_from_telephony(self) -> None:
        """Read telephony frames until the socket disconnects."""
        while True:
            message = await self.telephony_ws.receive()
            if message["type"] == "websocket.disconnect":
                self._telephony_closed = True
                self._log.info(f"Twilio connection closed (code={message.get('code')})")
                return

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await self._handle_telephony_message(raw)

    async def _handle_telephony_message(self, raw: str | bytes) -> None:
        if len(raw) > self.config.max_payload:
            self.malformed_messages += 1
            self._log.warning(f"Dropping oversized telephony message ({len(raw)} bytes)")
            return

        try:
            event = decode_telephony(raw)
        except DecodeError as e:
            self.malformed_messages += 1
            self._log.warning(f"Error processing Twilio message: {e}")
            return

        if isinstance(event, Media):
            await self._on_media(event)
        elif isinstance(event, Start):
            await self._on_start(event)
        elif isinstance(event, Stop):
            await self._on_stop(event)
        elif isinstance(event, Mark):
            self._log.debug(f"Twilio mark: {event.name}")
        else:
            self._log.debug(f"Ignoring Twilio event: {type(event).__name__}")

    async def _on_start(self, event: Start) -> None:
        if self.stream_sid is None:
            self.stream_sid = event.stream_sid
            self._log.info(f"Stream started: streamSid={event.stream_sid}")
        elif event.stream_sid != self.stream_sid:
            self._log.warning(
                f"Ignoring streamSid {event.stream_sid}, session is bound to {self.stream_sid}"
            )

        await self._send_telephony(Mark(stream_sid=event.stream_sid, name="start"))

        if self.voice_ai_ready and not self.conversation_started:
            await self._start_conversation()

    async def _on_media(self, event: Media) -> None:
        if self.voice_ai_ready:
            await self._forward_audio(event.payload)
        elif self.config.buffer_early_audio and not self._hung_up:
            self._early_audio.append(event.payload)
        else:
            self.frames_dropped += 1
            if self.frames_dropped == 1:
                self._log.debug("Dropping caller audio, ElevenLabs is not ready")

    async def _forward_audio(self, payload: str) -> None:
        await self._send_voice_ai(
            user_audio_chunk(payload, self.config.optimize_streaming_latency)
        )
        self.frames_to_voice_ai += 1

    async def _on_stop(self, event: Stop) -> None:
        self._log.info(f"Stream stopped: streamSid={event.stream_sid or self.stream_sid}")
        self._hung_up = True
        self._early_audio.clear()
        self.voice_ai_ready = False
        if self._voice_ai_ws is not None and not self._voice_ai_closed:
            await self._send_voice_ai(conversation_end(self.stream_sid))
            await self._close_voice_ai()
        self.conversation_started = False

    # -------------------------------------------------------------------------
    # ElevenLabs -> telephony
    # -------------------------------------------------------------------------

    async def _receive_from_voice_ai(self) -> None:
        """Relay ElevenLabs messages until its socket closes."""
        try:
            async for raw in self._voice_ai_ws:
                await self._handle_voice_ai_message(raw)
        except ConnectionClosedError as e:
            self._log.warning(f"ElevenLabs WebSocket error: {e}")
        # Not reached on cancellation, so shutdown still closes the socket
        self.voice_ai_ready = False
        self._voice_ai_closed = True
        self._log.info("ElevenLabs connection closed")

    async def _handle_voice_ai_message(self, raw: str | bytes) -> None:
        try:
            event = decode_voice_ai(raw)
        except DecodeError as e:
            self.malformed_messages += 1
            self._log.warning(f"Error processing ElevenLabs message: {e}")
            return

        self._log.debug(f"Received message from ElevenLabs: {type(event).__name__}")

        if isinstance(event, Audio):
            await self._on_voice_ai_audio(event)
        elif isinstance(event, Ping):
            await self._send_voice_ai(pong(event.event_id))
        elif isinstance(event, Interruption):
            await self._send_telephony(Clear(stream_sid=self.stream_sid))
        elif isinstance(event, VoiceAiError):
            self._log.error(f"ElevenLabs error: {event.message}")
        elif isinstance(event, ConversationMetadata):
            self._log.info(
                f"ElevenLabs conversation {event.conversation_id}: "
                f"output={event.output_format}, input={event.input_format}"
            )
            if (
                self.transcoder is not None
                and event.output_format
                and event.output_format != self.config.output_format
            ):
                self._log.warning(
                    f"Agent output format {event.output_format} differs from "
                    f"transcoder input {self.config.output_format}"
                )

    async def _on_voice_ai_audio(self, event: Audio) -> None:
        payload = event.audio_base_64
        if self.transcoder is not None:
            try:
                audio = base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError) as e:
                self.chunks_dropped += 1
                self._log.warning(f"Dropping agent audio with invalid base64: {e}")
                return
            try:
                payload = await self.transcoder.transcode(audio)
            except TranscodeError as e:
                self.chunks_dropped += 1
                self._log.warning(f"Dropping agent audio chunk, transcode failed: {e} {e.stderr}")
                return

        await self._send_telephony(Media(stream_sid=self.stream_sid, payload=payload))
        self.frames_to_telephony += 1

    # -------------------------------------------------------------------------
    # Transport helpers
    # -------------------------------------------------------------------------

    async def _send_telephony(self, event: OutboundEvent) -> None:
        if self._telephony_closed:
            self._log.debug(f"Telephony closed, dropping {type(event).__name__}")
            return
        try:
            await self.telephony_ws.send_text(encode_telephony(event))
        except Exception as e:
            self._telephony_closed = True
            self._log.warning(f"Failed to send to Twilio: {e}")

    async def _send_voice_ai(self, message: str) -> None:
        if self._voice_ai_ws is None or self._voice_ai_closed:
            self._log.debug("ElevenLabs closed, dropping message")
            return
        try:
            await self._voice_ai_ws.send(message)
        except ConnectionClosed as e:
            self.voice_ai_ready = False
            self._voice_ai_closed = True
            self._log.warning(f"Failed to send to ElevenLabs: {e}")

    async def _close_voice_ai(self) -> None:
        if self._voice_ai_ws is None or self._voice_ai_closed:
            return
        self._voice_ai_closed = True
        self.voice_ai_ready = False
        with contextlib.suppress(Exception):
            await self._voice_ai_ws.close()

    async def _close_telephony(self) -> None:
        if self._telephony_closed:
            return
        self._telephony_closed = True
        with contextlib.suppress(Exception):
            await self.telephony_ws.close()


# =============================================================================
# Public API
# =============================================================================


async def run_agent(websocket: WebSocket, config: BridgeConfig | None = None) -> SessionBridge:
    """Bridge an accepted telephony WebSocket to ElevenLabs until the call ends.

    Args:
        websocket: Accepted FastAPI WebSocket from the telephony provider
        config: Bridge settings (default: read from the environment)
    """
    config = config or bridge_config_from_env()
    bridge = SessionBridge(
        telephony_ws=websocket,
        config=config,
        transcoder=create_transcoder(config.ffmpeg_path, config.output_format),
    )
    await bridge.run()
    return bridge

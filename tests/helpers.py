"""Fake peers and helpers shared by the bridge tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable
from unittest.mock import AsyncMock

from agent import SessionBridge
from utils import BridgeConfig

SIGNED_URL = "wss://api.elevenlabs.test/v1/convai/conversation?agent_id=agent&token=abc"


class FakeTelephonySocket:
    """Stands in for an accepted FastAPI WebSocket from the telephony provider."""

    def __init__(self) -> None:
        self._incoming: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.close_calls = 0

    def push(self, message: dict[str, Any]) -> None:
        self.push_raw(json.dumps(message))

    def push_raw(self, text: str) -> None:
        self._incoming.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self, code: int = 1000) -> None:
        self._incoming.put_nowait({"type": "websocket.disconnect", "code": code})

    async def receive(self) -> dict[str, Any]:
        return await self._incoming.get()

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        self.close_calls += 1

    def events(self, name: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("event") == name]


class FakeVoiceAiSocket:
    """Stands in for the websockets client connection to ElevenLabs."""

    def __init__(self) -> None:
        self._incoming: asyncio.Queue[str | None] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.close_calls = 0

    def push(self, message: dict[str, Any]) -> None:
        self.push_raw(json.dumps(message))

    def push_raw(self, text: str) -> None:
        self._incoming.put_nowait(text)

    def remote_close(self) -> None:
        self._incoming.put_nowait(None)

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.close_calls += 1
        self._incoming.put_nowait(None)

    def __aiter__(self) -> FakeVoiceAiSocket:
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def audio_chunks(self) -> list[str]:
        return [m["user_audio_chunk"] for m in self.sent if "user_audio_chunk" in m]

    def of_type(self, msg_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == msg_type]


def make_bridge(
    config: BridgeConfig | None = None,
    *,
    authenticate: Callable | None = None,
    transcoder: Any = None,
) -> tuple[SessionBridge, FakeTelephonySocket, FakeVoiceAiSocket, AsyncMock]:
    """Build a bridge wired to fake peers. Returns (bridge, telephony, voice_ai, connect)."""
    telephony = FakeTelephonySocket()
    voice_ai = FakeVoiceAiSocket()
    connect = AsyncMock(return_value=voice_ai)
    bridge = SessionBridge(
        telephony,
        config or BridgeConfig(agent_id="agent", api_key="key"),
        authenticate=authenticate or AsyncMock(return_value=SIGNED_URL),
        connect=connect,
        transcoder=transcoder,
    )
    return bridge, telephony, voice_ai, connect


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until predicate() is true."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)

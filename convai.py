"""ElevenLabs Conversational AI session setup.

- get_signed_url: exchanges an agent id and API key for a signed websocket URL
- open_voice_ai_connection: opens the outbound conversation websocket
"""

from __future__ import annotations

from typing import Any

import httpx
import websockets
from loguru import logger
from websockets.exceptions import WebSocketException

SIGNED_URL_PATH = "/v1/convai/conversation/get_signed_url"


class AuthenticationError(Exception):
    """The signed URL could not be obtained."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class VoiceAiConnectionError(ConnectionError):
    """The voice-AI websocket could not be opened."""


async def get_signed_url(
    agent_id: str,
    api_key: str,
    *,
    base_url: str = "https://api.elevenlabs.io",
    client: httpx.AsyncClient | None = None,
) -> str:
    """Get a signed conversation URL for an agent.

    Args:
        agent_id: ElevenLabs agent id
        api_key: ElevenLabs API key, sent as ``xi-api-key``
        base_url: API root
        client: Optional client to reuse; a short-lived one is created otherwise

    Raises:
        AuthenticationError: On missing credentials, a network failure, or a
            non-success response.
    """
    if not agent_id or not api_key:
        raise AuthenticationError("ELEVENLABS_AGENT_ID and ELEVENLABS_API_KEY must be set")

    url = f"{base_url.rstrip('/')}{SIGNED_URL_PATH}"
    params = {"agent_id": agent_id}
    headers = {"xi-api-key": api_key}

    try:
        if client is not None:
            response = await client.get(url, params=params, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=10.0) as owned_client:
                response = await owned_client.get(url, params=params, headers=headers)
    except httpx.HTTPError as e:
        raise AuthenticationError(f"ElevenLabs API request failed: {e}") from e

    if not response.is_success:
        raise AuthenticationError(
            f"ElevenLabs API error: {response.status_code} {response.reason_phrase}",
            status_code=response.status_code,
        )

    try:
        data: Any = response.json()
    except ValueError as e:
        raise AuthenticationError(
            "ElevenLabs API returned invalid JSON", status_code=response.status_code
        ) from e

    signed_url = data.get("signed_url") if isinstance(data, dict) else None
    if not signed_url:
        raise AuthenticationError(
            "ElevenLabs API response has no signed_url", status_code=response.status_code
        )
    return signed_url


async def open_voice_ai_connection(url: str):
    """Open the conversation websocket at a signed URL.

    Raises:
        VoiceAiConnectionError: If the connection cannot be established.
    """
    try:
        connection = await websockets.connect(url, max_size=None)
    except (WebSocketException, OSError, TimeoutError) as e:
        raise VoiceAiConnectionError(f"Failed to connect to ElevenLabs: {e}") from e

    logger.info("Connected to ElevenLabs WebSocket")
    return connection

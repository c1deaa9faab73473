"""FastAPI server for the telephony media-stream WebSocket."""

from __future__ import annotations

import contextlib

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from loguru import logger

import agent
from utils import (
    SERVER_HOST,
    SERVER_PORT,
    bridge_config_from_env,
    configure_logging,
    output_format_sample_rate,
)

app = FastAPI(
    title="Telephony to ElevenLabs Bridge",
    description="Bridges telephony media streams to ElevenLabs Conversational AI agents",
    version="0.1.0",
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every HTTP request before routing it."""
    logger.info(
        f"Incoming request: {request.method} {request.url} "
        f"client={request.client.host if request.client else None} "
        f"headers={dict(request.headers)}"
    )
    return await call_next(request)


def _log_upgrade(name: str, websocket: WebSocket) -> None:
    logger.info(
        f"{name} WebSocket connection attempt: url={websocket.url} "
        f"client={websocket.client.host if websocket.client else None} "
        f"headers={dict(websocket.headers)}"
    )


@app.get("/")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@app.websocket("/test-ws")
async def test_websocket(websocket: WebSocket) -> None:
    """Echo endpoint for checking WebSocket connectivity through proxies."""
    _log_upgrade("Test", websocket)
    await websocket.accept()
    logger.info("Test WebSocket connection opened")

    try:
        while True:
            message = await websocket.receive_text()
            logger.info(f"Test message received: {message}")
            await websocket.send_text(f"Server received: {message}")
    except WebSocketDisconnect:
        logger.info("Test WebSocket disconnected")


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket) -> None:
    """WebSocket endpoint for bidirectional audio streaming with the telephony provider."""
    _log_upgrade("Twilio", websocket)
    await websocket.accept()
    logger.info("Twilio WebSocket connection accepted")

    try:
        await agent.run_agent(websocket, bridge_config_from_env())
    except Exception as e:
        logger.error(f"Error in WebSocket handler: {e}")
    finally:
        with contextlib.suppress(Exception):
            await websocket.close()


def main() -> None:
    """Run the server."""
    configure_logging()
    config = bridge_config_from_env()
    logger.info(f"Starting telephony bridge on {SERVER_HOST}:{SERVER_PORT}")
    if config.transcoding_enabled:
        try:
            output_format_sample_rate(config.output_format)
        except ValueError as e:
            logger.error(f"Invalid VOICE_AI_OUTPUT_FORMAT for transcoding: {e}")
            raise SystemExit(1) from e
        logger.info(f"Transcoding {config.output_format} agent audio with {config.ffmpeg_path}")
    else:
        logger.info("Transcoding disabled, agent audio is forwarded as-is")
    uvicorn.run("server:app", host=SERVER_HOST, port=SERVER_PORT, log_level="info")


if __name__ == "__main__":
    main()

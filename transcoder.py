"""ffmpeg-backed audio transcoder.

Converts raw PCM16 mono audio from the voice-AI side into 8kHz μ-law for the
telephony side. Every chunk runs through its own short-lived ffmpeg process:
the whole input is written to stdin, stdout and stderr are drained
concurrently, and the result is returned once the process exits.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib

from loguru import logger

from utils import TELEPHONY_SAMPLE_RATE, output_format_sample_rate


class TranscodeError(RuntimeError):
    """The encoder process could not be run or exited with an error."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class FfmpegTranscoder:
    """Transcodes PCM16 chunks to 8kHz μ-law by piping them through ffmpeg."""

    def __init__(self, ffmpeg_path: str, input_sample_rate: int = 16000) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.input_sample_rate = input_sample_rate

    def command(self) -> list[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "warning",
            "-f", "s16le",
            "-ar", str(self.input_sample_rate),
            "-ac", "1",
            "-i", "pipe:0",
            "-f", "mulaw",
            "-ar", str(TELEPHONY_SAMPLE_RATE),
            "-ac", "1",
            "pipe:1",
        ]

    async def transcode(self, data: bytes) -> str:
        """Transcode one chunk and return the μ-law audio base64-encoded.

        Raises:
            TranscodeError: If ffmpeg cannot be spawned, its pipes fail,
                or it exits with a non-zero code.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodeError(f"Failed to start {self.ffmpeg_path}: {e}") from e

        try:
            stdout, stderr = await proc.communicate(input=data)
        except (BrokenPipeError, ConnectionResetError) as e:
            await proc.wait()
            raise TranscodeError(f"ffmpeg pipe failed: {e}", returncode=proc.returncode) from e
        except asyncio.CancelledError:
            # Session torn down mid-chunk, reap the process
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
            raise

        diagnostics = stderr.decode(errors="ignore").strip() if stderr else ""
        if diagnostics:
            logger.debug(f"[ffmpeg] {diagnostics}")

        if proc.returncode != 0:
            raise TranscodeError(
                f"ffmpeg exited with code {proc.returncode}",
                returncode=proc.returncode,
                stderr=diagnostics,
            )

        return base64.b64encode(stdout).decode("utf-8")


def create_transcoder(ffmpeg_path: str, output_format: str) -> FfmpegTranscoder | None:
    """Return a transcoder for the voice-AI output format, or None when no ffmpeg is configured."""
    if not ffmpeg_path:
        return None
    return FfmpegTranscoder(ffmpeg_path, output_format_sample_rate(output_format))

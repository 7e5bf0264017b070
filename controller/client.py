"""Controller side of the channel: send a file to the worker, follow its events."""

from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path

import numpy as np
import websockets

from common.config import ControllerSettings
from common.schemas import (
    DownloadingMessage,
    ErrorMessage,
    InferenceRequest,
    LoadingMessage,
    PartialResultMessage,
    ResultMessage,
    TranscriptionEvent,
    is_terminal,
    parse_event,
)
from controller.audio_utils import SAMPLE_RATE, decode_audio

logger = logging.getLogger(__name__)


async def stream_transcription(
    audio: np.ndarray,
    model_name: str,
    url: str,
) -> AsyncIterator[TranscriptionEvent]:
    """Send one inference request and yield worker events up to the terminal one."""
    async with websockets.connect(url, max_size=None) as ws:
        await ws.send(InferenceRequest(model_name=model_name).model_dump_json(exclude_none=True))
        await ws.send(audio.astype("<f4").tobytes())

        async for raw in ws:
            event = parse_event(raw)
            yield event
            if is_terminal(event):
                break


async def transcribe_file(
    path: str | Path,
    model_name: str | None = None,
    settings: ControllerSettings | None = None,
) -> AsyncIterator[TranscriptionEvent]:
    settings = settings or ControllerSettings()
    audio = decode_audio(Path(path).read_bytes(), ffmpeg_bin=settings.ffmpeg_bin)
    logger.info("Decoded %s: %.1fs of audio", path, len(audio) / SAMPLE_RATE)
    async for event in stream_transcription(audio, model_name or settings.model_name, settings.worker_ws_url):
        yield event


async def _print_transcript(path: str, model_name: str | None) -> int:
    async for event in transcribe_file(path, model_name):
        if isinstance(event, LoadingMessage):
            print(f"[loading] {event.status.value} {event.message or ''}".rstrip())
        elif isinstance(event, DownloadingMessage):
            print(f"[download] {event.file} {event.progress:.0f}%")
        elif isinstance(event, PartialResultMessage):
            print(f"[{event.result.start}s ...] {event.result.text}")
        elif isinstance(event, ResultMessage):
            text = "".join(segment.text for segment in event.results)
            print(f"[until {event.completed_until_timestamp}s] {text}")
        elif isinstance(event, ErrorMessage):
            print(f"[error] {event.reason}")
            return 1
        if isinstance(event, LoadingMessage) and is_terminal(event):
            return 1
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Transcribe a media file with the whisper worker")
    parser.add_argument("path", help="audio or video file")
    parser.add_argument("--model", default=None, help="model identifier")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    return asyncio.run(_print_transcript(args.path, args.model))


if __name__ == "__main__":
    raise SystemExit(main())

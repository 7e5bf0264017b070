from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterator
from typing import Any, Optional

import numpy as np

from common.schemas import DownloadingMessage, ErrorMessage, LoadingMessage, LoadingStatus
from whisper_worker.errors import InferenceCancelled, ModelLoadError, UnknownModelError
from whisper_worker.models import SAMPLE_RATE, ChunkEvent, Recognizer, RecognizerEvent, RunOptions, StepEvent
from whisper_worker.registry import ModelRegistry
from whisper_worker.tracker import GenerationTracker

logger = logging.getLogger(__name__)

DISTILLED_MARKER = "distil-whisper"

SUPPORTED_MODELS = (
    "distil-whisper/distil-small.en",
    "distil-whisper/distil-medium.en",
    "distil-whisper/distil-large-v3",
    "openai/whisper-tiny.en",
    "openai/whisper-tiny",
    "openai/whisper-base.en",
    "openai/whisper-base",
    "openai/whisper-small.en",
    "openai/whisper-small",
    "openai/whisper-medium",
    "openai/whisper-medium.en",
    "openai/whisper-large-v3",
)

_EXHAUSTED = object()


def run_options_for(model_name: str) -> RunOptions:
    """Distilled models are decoded in shorter windows with a smaller stride."""
    if DISTILLED_MARKER in model_name:
        return RunOptions(chunk_length_s=20, stride_length_s=3)
    return RunOptions(chunk_length_s=30, stride_length_s=5)


class TranscriptionSession:
    """Runs inference requests end to end and reports them as channel events.

    ``post_message`` is called on the event loop thread with one typed event
    at a time. Every request ends with exactly one terminal event: a loading
    error, an error, or inference done.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        post_message: Callable[[Any], None],
        *,
        partial_interval: int = 10,
        supported_models: tuple[str, ...] = SUPPORTED_MODELS,
        run_lock: Optional[asyncio.Lock] = None,
    ) -> None:
        self.registry = registry
        self.partial_interval = partial_interval
        self.supported_models = supported_models
        self._post = post_message
        self._run_lock = run_lock or asyncio.Lock()

    def post(self, event: Any) -> None:
        self._post(event)

    async def handle_inference_request(
        self,
        audio: np.ndarray,
        model_name: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.post(LoadingMessage(status=LoadingStatus.loading))

        if model_name not in self.supported_models:
            error = UnknownModelError(model_name)
            logger.warning("%s", error)
            self.post(LoadingMessage(status=LoadingStatus.error, message=str(error)))
            return

        try:
            recognizer = await self.registry.get_recognizer(model_name, self._progress_callback())
        except ModelLoadError as exc:
            self.post(LoadingMessage(status=LoadingStatus.error, message=str(exc)))
            return
        except Exception as exc:
            logger.exception("Unexpected error while loading %s", model_name)
            self.post(LoadingMessage(status=LoadingStatus.error, message=str(exc)))
            return
        self.post(LoadingMessage(status=LoadingStatus.success))

        options = run_options_for(model_name)
        tracker = GenerationTracker(
            recognizer,
            options.stride_length_s,
            self._threadsafe_post(),
            partial_interval=self.partial_interval,
        )

        try:
            async with self._run_lock:
                logger.info(
                    "Transcribing %.1fs of audio with %s (chunk=%ss, stride=%ss)",
                    len(audio) / SAMPLE_RATE,
                    model_name,
                    options.chunk_length_s,
                    options.stride_length_s,
                )
                await self._consume(recognizer, audio, options, tracker, cancel_event)
        except InferenceCancelled:
            logger.info("Inference cancelled after %d chunks", len(tracker.chunk_history))
            self.post(ErrorMessage(reason="Inference cancelled"))
            return
        except Exception as exc:
            logger.exception("Inference failed for %s", model_name)
            self.post(ErrorMessage(reason=str(exc) or type(exc).__name__))
            return

        tracker.send_final_result()

    async def _consume(
        self,
        recognizer: Recognizer,
        audio: np.ndarray,
        options: RunOptions,
        tracker: GenerationTracker,
        cancel_event: Optional[threading.Event],
    ) -> None:
        """Drive the recognizer to completion, one event per worker-thread hop.

        Stepping the recognizer and the tracker work for that event (decoding,
        reconciliation) both happen off the event loop. Must be called with the
        run lock held: the lock is only released once the recognizer's events
        are closed and no generation is left running.
        """
        stop_event = threading.Event()
        events = recognizer.run(audio, options, stop_event=stop_event)
        pending: Optional[asyncio.Future] = None
        try:
            while True:
                pending = asyncio.ensure_future(asyncio.to_thread(_advance, events, tracker))
                event = await asyncio.shield(pending)
                pending = None
                if event is _EXHAUSTED:
                    return
                if isinstance(event, ChunkEvent) and cancel_event is not None and cancel_event.is_set():
                    raise InferenceCancelled()
        finally:
            stop_event.set()
            if pending is not None:
                # the abandoned step has to finish before the events can be closed
                try:
                    await pending
                except Exception as exc:
                    logger.debug("Abandoned recognizer step ended with %r", exc)
            close = getattr(events, "close", None)
            if callable(close):
                close()

    def _threadsafe_post(self) -> Callable[[Any], None]:
        """Return a poster that may be called from worker threads."""
        loop = asyncio.get_running_loop()
        loop_thread = threading.get_ident()

        def _post(event: Any) -> None:
            if threading.get_ident() == loop_thread:
                self.post(event)
            else:
                loop.call_soon_threadsafe(self.post, event)

        return _post

    def _progress_callback(self) -> Callable[[dict], None]:
        post = self._threadsafe_post()

        def _on_progress(data: dict) -> None:
            status = data.get("status")
            if status == "progress":
                event = DownloadingMessage(
                    file=str(data.get("file") or ""),
                    progress=float(data.get("progress") or 0.0),
                    loaded=int(data.get("loaded") or 0),
                    total=int(data.get("total") or 0),
                )
                post(event)
            else:
                logger.debug("Model load status %s: %s", status, data.get("file", ""))

        return _on_progress


def _advance(events: Iterator[RecognizerEvent], tracker: GenerationTracker) -> Any:
    """Pull the next recognizer event and feed it to the tracker."""
    event = next(events, _EXHAUSTED)
    if isinstance(event, StepEvent):
        tracker.on_step(event.candidates)
    elif isinstance(event, ChunkEvent):
        tracker.on_chunk(event.chunk)
    elif event is not _EXHAUSTED:
        logger.warning("Ignoring unknown recognizer event: %r", event)
    return event

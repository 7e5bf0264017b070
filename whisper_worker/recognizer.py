"""HuggingFace transformers implementation of the Recognizer capability."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterator, Sequence
from typing import Any

import numpy as np
from transformers import WhisperForConditionalGeneration, WhisperProcessor
from transformers.generation.streamers import BaseStreamer

from common.config import WorkerSettings
from whisper_worker.chunking import iter_chunk_bounds
from whisper_worker.downloader import fetch_model_files
from whisper_worker.models import (
    ChunkEvent,
    ProgressCallback,
    RawChunk,
    RawSegment,
    RecognizerEvent,
    RunOptions,
    StepEvent,
)

logger = logging.getLogger(__name__)

_GENERATION_FINISHED = object()


class GenerationAborted(Exception):
    """Raised inside ``model.generate`` to stop a generation nobody is waiting on."""


class _StepStreamer(BaseStreamer):
    """Publishes the running token sequence after every generation step."""

    def __init__(self, steps: queue.Queue, stop_events: Sequence[threading.Event] = ()):
        self._steps = steps
        self._stop_events = stop_events
        self._tokens: list[int] = []
        self._next_tokens_are_prompt = True

    def put(self, value) -> None:
        if any(event.is_set() for event in self._stop_events):
            raise GenerationAborted()
        self._tokens.extend(int(t) for t in value.reshape(-1).tolist())
        if self._next_tokens_are_prompt:
            self._next_tokens_are_prompt = False
            return
        self._steps.put(list(self._tokens))

    def end(self) -> None:
        pass


class WhisperRecognizer:
    def __init__(self, processor, model, device: str = "cpu", torch_dtype=None):
        self.processor = processor
        self.model = model
        self.device = device
        self.torch_dtype = torch_dtype
        self.time_precision = processor.feature_extractor.chunk_length / model.config.max_source_positions

    def decode(self, token_ids: Sequence[int]) -> str:
        return self.processor.tokenizer.decode(list(token_ids), skip_special_tokens=True)

    def reconcile(self, chunks: Sequence[RawChunk], time_precision: float) -> list[RawSegment]:
        model_outputs = []
        for chunk in chunks:
            output: dict[str, Any] = {"tokens": np.asarray([chunk.tokens])}
            if chunk.stride is not None:
                output["stride"] = chunk.stride
            model_outputs.append(output)

        _, optional = self.processor.tokenizer._decode_asr(
            model_outputs,
            return_timestamps=True,
            return_language=None,
            time_precision=time_precision,
        )
        segments: list[RawSegment] = []
        for item in optional.get("chunks", []):
            start, end = item["timestamp"]
            if start is None:
                # no opening timestamp token: the segment starts at 0
                start = 0.0
            segments.append(RawSegment(text=item["text"], start=start, end=end))
        return segments

    def run(
        self,
        audio: np.ndarray,
        options: RunOptions,
        stop_event: threading.Event | None = None,
    ) -> Iterator[RecognizerEvent]:
        sampling_rate = self.processor.feature_extractor.sampling_rate
        chunk_samples = int(round(options.chunk_length_s * sampling_rate))
        stride_samples = int(round(options.stride_length_s * sampling_rate))

        for start, end, stride_left, stride_right in iter_chunk_bounds(len(audio), chunk_samples, stride_samples):
            window = audio[start:end]
            features = self.processor.feature_extractor(
                window, sampling_rate=sampling_rate, return_tensors="pt"
            ).input_features.to(self.device, dtype=self.torch_dtype)

            tokens = yield from self._generate(features, options, stop_event)
            stride = (
                len(window) / sampling_rate,
                stride_left / sampling_rate,
                stride_right / sampling_rate,
            )
            logger.debug("Chunk %.1f-%.1fs decoded to %d tokens", start / sampling_rate, end / sampling_rate, len(tokens))
            yield ChunkEvent(RawChunk(tokens=tokens, stride=stride))

    def _generate(self, features, options: RunOptions, stop_event: threading.Event | None = None):
        """Run ``model.generate`` on a helper thread and yield its steps.

        The helper thread never outlives this generator: closing the generator
        (or an error in the consumer) aborts the generation at its next step
        and joins the thread before control returns.
        """
        steps: queue.Queue = queue.Queue()
        outcome: dict[str, Any] = {}
        abandoned = threading.Event()
        stop_events = [abandoned] if stop_event is None else [abandoned, stop_event]

        def _target() -> None:
            try:
                outcome["sequences"] = self.model.generate(
                    features,
                    streamer=_StepStreamer(steps, stop_events),
                    do_sample=options.do_sample,
                    num_beams=1,
                    return_timestamps=options.return_timestamps,
                )
            except Exception as exc:
                outcome["error"] = exc
            finally:
                steps.put(_GENERATION_FINISHED)

        thread = threading.Thread(target=_target, name="whisper-generate", daemon=True)
        thread.start()
        try:
            while True:
                item = steps.get()
                if item is _GENERATION_FINISHED:
                    break
                yield StepEvent(candidates=[item])
        finally:
            abandoned.set()
            thread.join()

        if "error" in outcome:
            raise outcome["error"]
        sequences = getattr(outcome["sequences"], "sequences", outcome["sequences"])
        return [int(t) for t in sequences[0].tolist()]


def _pick_device(torch_mod, requested: str) -> str:
    if requested != "auto":
        return requested
    if torch_mod.cuda.is_available():
        return "cuda"
    return "cpu"


def _pick_dtype(torch_mod, requested: str, device: str):
    if requested == "auto":
        return torch_mod.float16 if device == "cuda" else torch_mod.float32
    return getattr(torch_mod, requested)


def load_recognizer(
    model_name: str,
    on_progress: ProgressCallback,
    settings: WorkerSettings | None = None,
) -> WhisperRecognizer:
    """Download (if needed) and instantiate a Whisper model for inference."""
    import torch

    settings = settings or WorkerSettings()
    offline = fetch_model_files(model_name, on_progress, cache_dir=settings.cache_dir) is None

    device = _pick_device(torch, settings.device)
    torch_dtype = _pick_dtype(torch, settings.torch_dtype, device)
    logger.info("Loading whisper model: %s (device=%s, dtype=%s)", model_name, device, torch_dtype)

    processor = WhisperProcessor.from_pretrained(
        model_name,
        cache_dir=settings.cache_dir,
        local_files_only=offline,
    )
    model = WhisperForConditionalGeneration.from_pretrained(
        model_name,
        torch_dtype=torch_dtype,
        cache_dir=settings.cache_dir,
        local_files_only=offline,
    ).to(device)
    model.eval()
    on_progress({"status": "loaded"})
    logger.info("Model loaded")
    return WhisperRecognizer(processor, model, device=device, torch_dtype=torch_dtype)

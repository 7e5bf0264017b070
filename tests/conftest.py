from __future__ import annotations

import threading
import time
from types import SimpleNamespace

import numpy as np
import pytest

from whisper_worker.models import ChunkEvent, RawSegment, RunOptions, StepEvent
from whisper_worker.registry import ModelRegistry


class StubRecognizer:
    """Replays scripted events; chunks are dicts with ``text`` and ``timestamp``."""

    time_precision = 0.02

    def __init__(self, events=None, vocab=None, fail_after: int | None = None):
        self.events = list(events or [])
        self.vocab = vocab or {}
        self.fail_after = fail_after
        self.runs: list[RunOptions] = []
        self.reconcile_calls: list[int] = []
        self.closed = False

    def run(self, audio, options, stop_event=None):
        self.runs.append(options)
        for position, event in enumerate(self.events):
            if self.fail_after is not None and position >= self.fail_after:
                raise RuntimeError("engine fault")
            yield event

    def decode(self, token_ids):
        return " ".join(self.vocab.get(t, f"<{t}>") for t in token_ids)

    def reconcile(self, chunks, time_precision):
        self.reconcile_calls.append(len(chunks))
        segments = []
        for chunk in chunks:
            start, end = chunk["timestamp"]
            segments.append(RawSegment(text=chunk["text"], start=start, end=end))
        return segments

    def close(self):
        self.closed = True


class CountingLoader:
    def __init__(self, recognizer=None, delay: float = 0.0, failures: int = 0, progress: list[dict] | None = None):
        self.recognizer = recognizer or StubRecognizer()
        self.delay = delay
        self.failures = failures
        self.progress = progress or []
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, model_name, on_progress):
        with self._lock:
            self.calls.append(model_name)
            attempt = len(self.calls)
        for update in self.progress:
            on_progress(update)
        if self.delay:
            time.sleep(self.delay)
        if attempt <= self.failures:
            raise ConnectionError("hub unreachable")
        return self.recognizer


def chunk(text, start, end):
    return ChunkEvent({"text": text, "timestamp": (start, end)})


def steps(count, tokens=(1,)):
    return [StepEvent(candidates=[list(tokens)]) for _ in range(count)]


@pytest.fixture
def audio():
    return np.zeros(16000, dtype=np.float32)


@pytest.fixture
def hello_world_recognizer():
    return StubRecognizer(events=[chunk("hello", 0, 2), chunk("world", 2, 4)])


@pytest.fixture
def registry(hello_world_recognizer):
    return ModelRegistry(loader=CountingLoader(hello_world_recognizer))


class FakeFeatures:
    def __init__(self, samples):
        self.samples = samples

    def to(self, device, dtype=None):
        return self


class FakeFeatureExtractor:
    sampling_rate = 100
    chunk_length = 30

    def __init__(self):
        self.windows = []

    def __call__(self, window, sampling_rate, return_tensors):
        self.windows.append(len(window))
        return SimpleNamespace(input_features=FakeFeatures(window))


class FakeTokenizer:
    def __init__(self, chunks=None):
        self.chunks = chunks or []
        self.decode_asr_calls = []

    def decode(self, token_ids, skip_special_tokens):
        return "|".join(str(t) for t in token_ids if t < 50000)

    def _decode_asr(self, model_outputs, *, return_timestamps, return_language, time_precision):
        self.decode_asr_calls.append((model_outputs, time_precision))
        return "", {"chunks": self.chunks}


class FakeModel:
    config = SimpleNamespace(max_source_positions=1500)

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def generate(self, features, streamer, do_sample, num_beams, return_timestamps):
        self.calls.append({"do_sample": do_sample, "num_beams": num_beams, "return_timestamps": return_timestamps})
        streamer.put(np.array([[50258, 50259]]))
        if self.fail:
            raise RuntimeError("out of memory")
        for token in (11, 12, 13):
            streamer.put(np.array([token]))
        streamer.end()
        return np.array([[50258, 50259, 11, 12, 13]])


class SlowModel(FakeModel):
    """Streams ``step_count`` tokens, sleeping between steps; tracks overlapping calls."""

    def __init__(self, step_count=20, delay=0.05):
        super().__init__()
        self.step_count = step_count
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.steps_streamed = 0
        self._lock = threading.Lock()

    def generate(self, features, streamer, do_sample, num_beams, return_timestamps):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            streamer.put(np.array([[50258, 50259]]))
            for _ in range(self.step_count):
                time.sleep(self.delay)
                streamer.put(np.array([11]))
                with self._lock:
                    self.steps_streamed += 1
            streamer.end()
            return np.array([[50258, 50259] + [11] * self.step_count])
        finally:
            with self._lock:
                self.active -= 1


def fake_processor(chunks=None):
    return SimpleNamespace(feature_extractor=FakeFeatureExtractor(), tokenizer=FakeTokenizer(chunks))


def generate_threads():
    return [t for t in threading.enumerate() if t.name == "whisper-generate" and t.is_alive()]

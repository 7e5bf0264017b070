"""Internal models shared by the recognizer, tracker and session."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

import numpy as np

SAMPLE_RATE = 16000

# {"status": "progress"|"done"|"loaded", "file"?, "progress"?, "loaded"?, "total"?}
ProgressCallback = Callable[[dict], None]


@dataclass(frozen=True)
class RunOptions:
    chunk_length_s: float
    stride_length_s: float
    top_k: int = 0
    do_sample: bool = False
    return_timestamps: bool = True
    force_full_sequences: bool = False


@dataclass
class RawChunk:
    """Token output of one audio window. Stride is (chunk_len, left, right) in seconds."""

    tokens: list[int]
    stride: Optional[tuple[float, float, float]] = None


@dataclass
class RawSegment:
    text: str
    start: float
    end: Optional[float] = None


@dataclass(frozen=True)
class StepEvent:
    # ranked candidate token sequences, best first
    candidates: Sequence[Sequence[int]]


@dataclass(frozen=True)
class ChunkEvent:
    chunk: Any


RecognizerEvent = Union[StepEvent, ChunkEvent]


class Recognizer(Protocol):
    """An instantiated speech-recognition model."""

    time_precision: float

    def run(
        self,
        audio: np.ndarray,
        options: RunOptions,
        stop_event: Optional[threading.Event] = None,
    ) -> Iterator[RecognizerEvent]:
        """Lazily run chunked inference, yielding step and chunk events in order.

        Setting ``stop_event`` aborts the generation in flight at its next step.
        """
        ...

    def decode(self, token_ids: Sequence[int]) -> str:
        """Decode token ids to text with special tokens stripped."""
        ...

    def reconcile(self, chunks: Sequence[Any], time_precision: float) -> list[RawSegment]:
        """Merge the full chunk history into non-overlapping timestamped segments."""
        ...


RecognizerLoader = Callable[[str, ProgressCallback], Recognizer]

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from typing import Any

from common.schemas import (
    InferenceDoneMessage,
    PartialResult,
    PartialResultMessage,
    ProcessedSegment,
    ResultMessage,
)
from whisper_worker.models import RawSegment, Recognizer

logger = logging.getLogger(__name__)

# share of the stride used as segment length when the engine gives no end
END_ESTIMATE_FACTOR = 0.9


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def remove_overlap(previous: str, following: str) -> str:
    """Strip from *following* the longest prefix that repeats a suffix of *previous*."""
    overlap = min(len(previous), len(following))
    while overlap > 0:
        if following.startswith(previous[len(previous) - overlap:]):
            return following[overlap:]
        overlap -= 1
    return following


class GenerationTracker:
    """Turns the recognizer's step and chunk events into transcript messages.

    Every chunk re-runs reconciliation over the whole chunk history and
    replaces the processed segment list, because later chunks can move the
    boundaries of segments that were already sent.
    """

    def __init__(
        self,
        recognizer: Recognizer,
        stride_seconds: float,
        post_message: Callable[[Any], None],
        partial_interval: int = 10,
    ) -> None:
        self.recognizer = recognizer
        self.stride_seconds = stride_seconds
        self.partial_interval = partial_interval
        self.time_precision = recognizer.time_precision
        self.chunk_history: list[Any] = []
        self.processed_segments: list[ProcessedSegment] = []
        self.step_counter = 0
        self._post = post_message

    @property
    def completed_until(self) -> int:
        if not self.processed_segments:
            return 0
        return self.processed_segments[-1].end

    @property
    def transcript(self) -> str:
        return "".join(segment.text for segment in self.processed_segments)

    def on_step(self, candidates: Sequence[Sequence[int]]) -> None:
        self.step_counter += 1
        if self.step_counter % self.partial_interval != 0 or not candidates:
            return

        text = self.recognizer.decode(candidates[0])
        self._post(PartialResultMessage(result=PartialResult(text=text, start=self.completed_until)))

    def on_chunk(self, raw_chunk: Any) -> None:
        self.chunk_history.append(raw_chunk)
        raw_segments = self.recognizer.reconcile(self.chunk_history, self.time_precision)
        self.processed_segments = [
            self._process_segment(segment, index) for index, segment in enumerate(raw_segments)
        ]
        logger.debug(
            "Chunk %d reconciled into %d segments", len(self.chunk_history), len(self.processed_segments)
        )
        self._post(
            ResultMessage(
                results=list(self.processed_segments),
                is_done=False,
                completed_until_timestamp=self.completed_until,
            )
        )

    def send_final_result(self) -> None:
        self._post(InferenceDoneMessage())

    def _process_segment(self, segment: RawSegment, index: int) -> ProcessedSegment:
        start = max(round_half_up(segment.start), 0)
        if segment.end is not None:
            end = round_half_up(segment.end)
        else:
            end = round_half_up(segment.start + END_ESTIMATE_FACTOR * self.stride_seconds)
        return ProcessedSegment(
            index=index,
            text=f"{segment.text.strip()} ",
            start=start,
            end=max(end, start),
        )

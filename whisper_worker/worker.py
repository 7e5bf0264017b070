from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field

import numpy as np

from common.schemas import ErrorMessage
from whisper_worker.session import TranscriptionSession

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    audio: np.ndarray
    model_name: str
    cancel_event: threading.Event = field(default_factory=threading.Event)


class TranscriptionWorker:
    """Serves one channel's inference requests strictly one at a time.

    Requests are queued in arrival order; once ``max_pending`` requests are
    waiting, further ones are rejected with an error event.
    """

    def __init__(self, session: TranscriptionSession, max_pending: int = 4) -> None:
        self._session = session
        self._queue: asyncio.Queue[PendingRequest] = asyncio.Queue(maxsize=max_pending)
        self._current: PendingRequest | None = None
        self._task: asyncio.Task | None = None

    @property
    def busy(self) -> bool:
        return self._current is not None

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="transcription-worker")

    def submit(self, audio: np.ndarray, model_name: str) -> PendingRequest | None:
        request = PendingRequest(audio=audio, model_name=model_name)
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull:
            logger.warning("Rejecting request for %s: queue full (%d pending)", model_name, self._queue.qsize())
            self._session.post(ErrorMessage(reason="Request queue is full"))
            return None
        logger.info("Queued request for %s (%d pending)", model_name, self._queue.qsize())
        return request

    def cancel_current(self) -> bool:
        if self._current is None:
            return False
        self._current.cancel_event.set()
        logger.info("Cancellation requested for %s", self._current.model_name)
        return True

    async def join(self) -> None:
        """Wait until every queued request has reached its terminal event."""
        await self._queue.join()

    async def stop(self) -> None:
        self.cancel_current()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            request = await self._queue.get()
            self._current = request
            try:
                await self._session.handle_inference_request(
                    request.audio,
                    request.model_name,
                    cancel_event=request.cancel_event,
                )
            except Exception:
                logger.exception("Unhandled error while serving %s", request.model_name)
                self._session.post(ErrorMessage(reason="Internal worker error"))
            finally:
                self._current = None
                self._queue.task_done()

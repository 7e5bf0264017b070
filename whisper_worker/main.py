from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import numpy as np
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from common.config import WorkerSettings
from common.schemas import CancelRequest, InferenceRequest, dump_event, parse_inbound
from whisper_worker.models import Recognizer
from whisper_worker.registry import ModelRegistry
from whisper_worker.session import TranscriptionSession
from whisper_worker.worker import TranscriptionWorker

logger = logging.getLogger(__name__)

settings = WorkerSettings()
app = FastAPI(title="Whisper Worker")


def _default_loader(model_name: str, on_progress) -> Recognizer:
    # transformers/torch are only imported once a model is actually needed
    from whisper_worker.recognizer import load_recognizer

    return load_recognizer(model_name, on_progress, settings=settings)


@app.on_event("startup")
async def startup():
    app.state.registry = ModelRegistry(loader=_default_loader)
    app.state.inference_lock = asyncio.Lock()
    app.state.workers = set()


@app.on_event("shutdown")
async def shutdown():
    for worker in list(app.state.workers):
        await worker.stop()
    app.state.registry.shutdown()


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "loaded_models": app.state.registry.loaded_models,
        "busy": any(worker.busy for worker in app.state.workers),
    }


class EventOutbox:
    """Events waiting to be sent on one channel.

    Once a send fails the channel is treated as gone: queued and later events
    are dropped and ``on_close`` is called once.
    """

    def __init__(self, on_close: Callable[[], Any] | None = None) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self.closed = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def post(self, event: Any) -> None:
        if self.closed:
            logger.debug("Dropping %s: channel closed", type(event).__name__)
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        if self._on_close is not None:
            self._on_close()

    async def drain(self, ws: WebSocket) -> None:
        while True:
            event = await self._queue.get()
            try:
                await ws.send_text(dump_event(event))
            except (WebSocketDisconnect, RuntimeError):
                logger.info("Dropping %s: channel closed", type(event).__name__)
                self.close()
                return


@app.websocket("/transcribe")
async def transcribe_endpoint(ws: WebSocket):
    await ws.accept()
    worker: TranscriptionWorker | None = None

    def _on_outbox_closed() -> None:
        if worker is not None:
            worker.cancel_current()

    outbox = EventOutbox(on_close=_on_outbox_closed)
    session = TranscriptionSession(
        app.state.registry,
        outbox.post,
        partial_interval=settings.partial_interval,
        run_lock=app.state.inference_lock,
    )
    worker = TranscriptionWorker(session, max_pending=settings.max_pending_requests)
    worker.start()
    app.state.workers.add(worker)
    sender = asyncio.create_task(outbox.drain(ws))
    logger.info("Channel opened")

    try:
        while True:
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                break

            if message.get("text") is not None:
                await _handle_text(ws, worker, message["text"])
            elif message.get("bytes") is not None:
                logger.warning("Ignoring binary frame without a pending inference request")

    except WebSocketDisconnect:
        logger.info("Controller disconnected")
    except Exception as exc:
        logger.exception("Channel error: %s", exc)
    finally:
        app.state.workers.discard(worker)
        await worker.stop()
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        logger.info("Channel closed")


async def _handle_text(ws: WebSocket, worker: TranscriptionWorker, raw: str) -> None:
    try:
        request = parse_inbound(raw)
    except ValidationError as exc:
        logger.warning("Ignoring malformed message: %s", exc)
        return

    if isinstance(request, CancelRequest):
        if not worker.cancel_current():
            logger.info("Cancel request with nothing in flight")
        return

    audio = await _receive_audio(ws, request)
    if audio is None:
        return
    worker.submit(audio, request.model_name)


async def _receive_audio(ws: WebSocket, request: InferenceRequest) -> np.ndarray | None:
    if request.audio is not None:
        return np.asarray(request.audio, dtype=np.float32)

    message = await ws.receive()
    if message.get("type") == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    payload = message.get("bytes")
    if payload is None:
        logger.warning("Expected float32 audio frame after request for %s", request.model_name)
        return None
    if len(payload) % 4:
        logger.warning("Audio frame of %d bytes is not a float32 sequence", len(payload))
        return None
    return np.frombuffer(payload, dtype="<f4").astype(np.float32)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        ws_max_size=settings.ws_max_size,
    )

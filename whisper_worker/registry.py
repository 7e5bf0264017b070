from __future__ import annotations

import asyncio
import logging
from collections.abc import MutableMapping
from typing import Optional

from whisper_worker.errors import ModelLoadError
from whisper_worker.models import ProgressCallback, Recognizer, RecognizerLoader

logger = logging.getLogger(__name__)


def _ignore_progress(data: dict) -> None:
    pass


class ModelRegistry:
    """Builds each recognizer at most once and hands out the cached handle.

    Construction is single-flight per model name: concurrent first requests
    wait on the same load instead of starting a second one. A failed load is
    not cached, so the next request retries it.
    """

    def __init__(
        self,
        loader: RecognizerLoader,
        storage: Optional[MutableMapping[str, Recognizer]] = None,
    ) -> None:
        self._loader = loader
        self._handles: MutableMapping[str, Recognizer] = storage if storage is not None else {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def loaded_models(self) -> list[str]:
        return sorted(self._handles)

    def is_loaded(self, model_name: str) -> bool:
        return model_name in self._handles

    async def get_recognizer(
        self,
        model_name: str,
        on_progress: ProgressCallback | None = None,
    ) -> Recognizer:
        handle = self._handles.get(model_name)
        if handle is not None:
            return handle

        lock = self._locks.setdefault(model_name, asyncio.Lock())
        async with lock:
            handle = self._handles.get(model_name)
            if handle is not None:
                return handle

            logger.info("Loading recognizer: %s", model_name)
            try:
                handle = await asyncio.to_thread(self._loader, model_name, on_progress or _ignore_progress)
            except Exception as exc:
                logger.warning("Recognizer load failed for %s: %s", model_name, exc)
                raise ModelLoadError(model_name, exc) from exc

            self._handles[model_name] = handle
            logger.info("Recognizer ready: %s", model_name)
            return handle

    def shutdown(self) -> None:
        """Drop every cached handle, closing those that support it."""
        for model_name, handle in list(self._handles.items()):
            close = getattr(handle, "close", None)
            if callable(close):
                try:
                    close()
                except Exception:
                    logger.exception("Failed to close recognizer %s", model_name)
        self._handles.clear()
        self._locks.clear()

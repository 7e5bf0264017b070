"""Fetch model weights from the HuggingFace hub, reporting per-file progress."""

from __future__ import annotations

import logging
from fnmatch import fnmatch

from huggingface_hub import hf_hub_download, list_repo_files

from whisper_worker.models import ProgressCallback

logger = logging.getLogger(__name__)

MODEL_FILE_PATTERNS = ("*.json", "*.txt", "model.safetensors")


def _make_progress_class(filename: str, callback: ProgressCallback) -> type:
    """Create a tqdm-compatible class that reports download progress for *filename*."""

    class _ProgressReporter:
        def __init__(self, *args, **kwargs):
            self.total: int = kwargs.get("total", 0) or 0
            self.n: int = kwargs.get("initial", 0) or 0
            self._report()

        def _report(self) -> None:
            progress = min(self.n / self.total * 100, 100.0) if self.total > 0 else 0.0
            callback(
                {
                    "status": "progress",
                    "file": filename,
                    "progress": progress,
                    "loaded": self.n,
                    "total": self.total,
                }
            )

        def update(self, n: int = 1) -> None:
            self.n += n
            self._report()

        def close(self) -> None:
            pass

        def set_description(self, *a, **kw) -> None:
            pass

        def set_description_str(self, *a, **kw) -> None:
            pass

        def refresh(self) -> None:
            pass

        def __enter__(self):
            return self

        def __exit__(self, *args):
            self.close()

    return _ProgressReporter


def select_model_files(repo_files: list[str]) -> list[str]:
    """Keep the top-level config, tokenizer and safetensors files of a repo."""
    return [
        name
        for name in repo_files
        if "/" not in name and any(fnmatch(name, pattern) for pattern in MODEL_FILE_PATTERNS)
    ]


def fetch_model_files(
    model_name: str,
    on_progress: ProgressCallback,
    cache_dir: str | None = None,
) -> list[str] | None:
    """Download the files needed to build *model_name* into the hub cache.

    Returns None when the hub cannot be listed, in which case the model can
    only be built from files that are already cached.
    """
    try:
        repo_files = list_repo_files(model_name)
    except Exception as exc:
        logger.warning("Cannot list %s on the hub, using cached files only: %s", model_name, exc)
        return None

    filenames = select_model_files(repo_files)
    logger.info("Fetching %d files for %s", len(filenames), model_name)

    paths: list[str] = []
    for filename in filenames:
        kwargs: dict = dict(
            repo_id=model_name,
            filename=filename,
            cache_dir=cache_dir,
            tqdm_class=_make_progress_class(filename, on_progress),
        )
        paths.append(hf_hub_download(**kwargs))
        on_progress({"status": "done", "file": filename})
    return paths

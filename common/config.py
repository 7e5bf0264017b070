from pydantic_settings import BaseSettings


class WorkerSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8001
    device: str = "auto"
    torch_dtype: str = "auto"
    cache_dir: str | None = None
    partial_interval: int = 10
    max_pending_requests: int = 4
    ws_max_size: int = 256 * 1024 * 1024
    log_level: str = "info"

    model_config = {"env_prefix": "WORKER_"}


class ControllerSettings(BaseSettings):
    worker_ws_url: str = "ws://localhost:8001/transcribe"
    model_name: str = "distil-whisper/distil-small.en"
    ffmpeg_bin: str = "ffmpeg"

    model_config = {"env_prefix": "CONTROLLER_"}

from __future__ import annotations

import subprocess

import numpy as np

SAMPLE_RATE = 16000


def decode_audio(data: bytes, ffmpeg_bin: str = "ffmpeg", sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Decode any audio/video container to mono float32 samples at *sample_rate*.

    Shells out to ffmpeg, which sniffs the input format from the bytes.
    """
    cmd = [
        ffmpeg_bin,
        "-hide_banner",
        "-loglevel", "error",
        "-i", "pipe:0",
        "-vn",
        "-f", "f32le",
        "-acodec", "pcm_f32le",
        "-ar", str(sample_rate),
        "-ac", "1",
        "pipe:1",
    ]
    result = subprocess.run(cmd, input=data, capture_output=True, check=True)
    return np.frombuffer(result.stdout, dtype="<f4").astype(np.float32)

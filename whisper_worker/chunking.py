from __future__ import annotations

from collections.abc import Iterator


def iter_chunk_bounds(
    num_samples: int,
    chunk_samples: int,
    stride_samples: int,
) -> Iterator[tuple[int, int, int, int]]:
    """Yield (start, end, stride_left, stride_right) sample windows over the input.

    Consecutive windows overlap by ``stride_samples`` on each side; the first
    window has no left stride and the last has no right stride.
    """
    if chunk_samples <= 2 * stride_samples:
        raise ValueError("chunk length must be larger than twice the stride")

    step = chunk_samples - 2 * stride_samples
    for start in range(0, num_samples, step):
        end = min(start + chunk_samples, num_samples)
        is_last = start + chunk_samples >= num_samples
        stride_left = 0 if start == 0 else stride_samples
        stride_right = 0 if is_last else stride_samples
        if end - start > stride_left:
            yield start, end, stride_left, stride_right
        if is_last:
            break

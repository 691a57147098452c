"""
Robust adaptive thresholding over bounded histories.

The threshold is median + k * 1.4826 * MAD. MAD (median absolute deviation)
times 1.4826 estimates the standard deviation of normally distributed data
while ignoring the outliers that beats themselves produce. Used by both the
flux vote and the bass-spike vote.
"""

import math
from collections import deque
from typing import Iterable, Sequence

import numpy as np

MAD_SCALE = 1.4826
MIN_HISTORY = 5
LOCAL_MAX_TOLERANCE = 0.98


class HistoryBuffer:
    """FIFO of floats that never exceeds `capacity`; the oldest value is evicted first."""
    __slots__ = ('capacity', '_values')

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = int(capacity)
        self._values: deque[float] = deque(maxlen=self.capacity)

    def append(self, value: float) -> None:
        self._values.append(float(value))

    def values(self) -> list[float]:
        return list(self._values)

    def recent(self, count: int) -> list[float]:
        if count <= 0:
            return []
        return list(self._values)[-count:]

    def max(self) -> float:
        return max(self._values) if self._values else 0.0

    def clear(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self):
        return iter(self._values)


def _upper_median(values: np.ndarray) -> float:
    # Element at n // 2 of the sorted values (upper median for even n)
    return float(np.sort(values)[values.size // 2])


def median_absolute_deviation(values: Iterable[float]) -> tuple[float, float]:
    """Return (median, MAD) of the values."""
    arr = np.fromiter(values, dtype=np.float64)
    if arr.size == 0:
        return 0.0, 0.0
    median = _upper_median(arr)
    mad = _upper_median(np.abs(arr - median))
    return median, mad


def adaptive_threshold(history: Iterable[float], k: float) -> float:
    """median + k * 1.4826 * MAD, or +inf until MIN_HISTORY samples exist."""
    values = list(history)
    if len(values) < MIN_HISTORY:
        return math.inf
    median, mad = median_absolute_deviation(values)
    return median + k * MAD_SCALE * mad


def is_local_maximum(value: float, history: Sequence[float], window: int = 3) -> bool:
    """True when value is within 2% of the max of the last `window` samples.

    Combined with a threshold crossing this makes a beat fire once on the
    rising edge instead of on every frame the signal stays high.
    """
    recent = list(history)[-window:] if window > 0 else []
    if len(recent) < window or not recent:
        return False
    return value >= max(recent) * LOCAL_MAX_TOLERANCE

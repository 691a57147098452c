"""Three-point onset peak picking over bass+mid amplitude sums."""

from typing import Optional

import numpy as np

from config import Band

RISE_MARGIN = 1.1   # middle frame must beat the oldest by 10%
FALL_MARGIN = 0.95  # and must not be clearly below the newest


def range_sum(linear: np.ndarray, start_bin: int, end_bin: int) -> float:
    start = max(0, start_bin)
    end = min(end_bin + 1, len(linear))
    if end <= start:
        return 0.0
    return float(np.sum(linear[start:end]))


def detect_onset(current: Optional[np.ndarray],
                 previous: Optional[np.ndarray],
                 previous2: Optional[np.ndarray],
                 bass_band: Band,
                 mid_band: Band) -> bool:
    """
    Flag an onset when frame t-1 is a peak between t-2 and t.

    The peak is reported one frame after it happened. Returns False until
    three frames are available.
    """
    if current is None or previous is None or previous2 is None:
        return False

    start, end = bass_band.start_bin, mid_band.end_bin
    newest = range_sum(current, start, end)
    middle = range_sum(previous, start, end)
    oldest = range_sum(previous2, start, end)
    return middle > oldest * RISE_MARGIN and middle > newest * FALL_MARGIN

"""
beatlock - Tempo estimation and one-way lock

Tempo state is a tagged variant: a session is either Unlocked (collecting
confirmed beat times) or Locked (emitting on a fixed clock). The only
transition is Unlocked -> Locked, and it happens at most once.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

import numpy as np

from logging_utils import log_event

MIN_INTERVAL_S = 0.25   # 240 BPM
MAX_INTERVAL_S = 2.0    # 30 BPM
MIN_INTERVALS = 3

BPM_ACCEPT_RANGE = (60.0, 200.0)
BPM_HALVE_RANGE = (200.0, 400.0)   # (low, high]: assumed double-time detection
BPM_DOUBLE_RANGE = (30.0, 60.0)    # [low, high): assumed half-time detection


@dataclass
class Unlocked:
    """Signal-driven detection. beat_times holds the latest confirmed beats."""
    capacity: int
    beat_times: deque = field(init=False)

    def __post_init__(self):
        self.beat_times = deque(maxlen=self.capacity)

    def record(self, timestamp: float) -> None:
        self.beat_times.append(float(timestamp))


@dataclass
class Locked:
    """Schedule-driven emission at a constant tempo."""
    bpm: float
    next_scheduled_beat: float

    @property
    def period(self) -> float:
        return 60.0 / self.bpm


TempoState = Union[Unlocked, Locked]


def plausible_intervals(beat_times: Iterable[float]) -> list[float]:
    """Consecutive intervals, dropping those outside [0.25s, 2.0s]."""
    times = list(beat_times)
    intervals = np.diff(np.asarray(times, dtype=np.float64)) if len(times) > 1 else np.empty(0)
    return [float(i) for i in intervals if MIN_INTERVAL_S <= i <= MAX_INTERVAL_S]


def correct_octave(bpm: float) -> Optional[float]:
    """Fold a raw BPM into [60, 200], or None if it cannot be trusted."""
    lo, hi = BPM_ACCEPT_RANGE
    if lo <= bpm <= hi:
        return bpm
    lo, hi = BPM_HALVE_RANGE
    if lo < bpm <= hi:
        return bpm / 2.0
    lo, hi = BPM_DOUBLE_RANGE
    if lo <= bpm < hi:
        return bpm * 2.0
    return None


def estimate_bpm(beat_times: Iterable[float]) -> Optional[float]:
    """60 / median(plausible intervals), octave-corrected; None to abstain."""
    intervals = plausible_intervals(beat_times)
    if len(intervals) < MIN_INTERVALS:
        return None
    median_interval = float(np.median(intervals))
    if median_interval <= 0:
        return None
    return correct_octave(60.0 / median_interval)


class TempoTracker:
    """Owns the tempo state of one session."""

    def __init__(self, beats_to_analyze: int, enabled: bool = True):
        self.beats_to_analyze = int(beats_to_analyze)
        self.enabled = enabled
        self.state: TempoState = Unlocked(capacity=self.beats_to_analyze + 2)
        self.lock_attempts = 0

    @property
    def locked(self) -> bool:
        return isinstance(self.state, Locked)

    @property
    def bpm(self) -> float:
        return self.state.bpm if isinstance(self.state, Locked) else 0.0

    def record_beat(self, timestamp: float) -> Optional[Locked]:
        """Add a confirmed beat and try to lock. Returns the new Locked state on transition."""
        state = self.state
        if not isinstance(state, Unlocked):
            return None
        state.record(timestamp)
        if not self.enabled or len(state.beat_times) < self.beats_to_analyze:
            return None

        self.lock_attempts += 1
        bpm = estimate_bpm(state.beat_times)
        if bpm is None:
            log_event("DEBUG", "Tempo", "Lock attempt abstained",
                      beats=len(state.beat_times), attempt=self.lock_attempts)
            return None

        locked = Locked(bpm=bpm, next_scheduled_beat=timestamp + 60.0 / bpm)
        self.state = locked
        log_event("INFO", "Tempo", "Tempo locked",
                  bpm=f"{bpm:.1f}", at=f"{timestamp:.3f}",
                  next_beat=f"{locked.next_scheduled_beat:.3f}")
        return locked

    def due_beat(self, media_time: float) -> Optional[float]:
        """If locked and the next beat is due, return its scheduled time and advance."""
        state = self.state
        if not isinstance(state, Locked) or media_time < state.next_scheduled_beat:
            return None
        scheduled = state.next_scheduled_beat
        state.next_scheduled_beat = scheduled + state.period
        return scheduled

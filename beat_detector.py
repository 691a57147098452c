"""
beatlock - Beat Detector
Per-session beat decision engine: three-method voting while unlocked,
constant-tempo schedule once locked.
"""

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from adaptive_threshold import HistoryBuffer, adaptive_threshold, is_local_maximum
from config import BeatDetectorConfig
from logging_utils import log_event
from onset_detector import detect_onset
from spectral_features import FrameFeatures, SpectralFrameWindow, compute_frame_features
from tempo_tracker import TempoTracker

FLUX_WARMUP_FRACTION = 0.3     # flux vote needs 30% of history capacity
BASS_SPIKE_FACTOR = 1.2
BASS_LOCAL_MAX_WINDOW = 4
SINGLE_VOTE_SEPARATION = 1.5   # a lone vote needs 1.5x the separation
LOCKED_INTENSITY = 0.8


@dataclass(frozen=True)
class BeatEvent:
    """A beat emitted by the detector"""
    timestamp: float          # Media-relative seconds
    intensity: float          # 0.0-1.0
    votes: int = 0            # Detection methods that agreed (0 for scheduled beats)
    locked: bool = False      # True if emitted by the tempo schedule
    bpm: float = 0.0          # Locked tempo, 0 while unlocked


@dataclass(frozen=True)
class Votes:
    flux: bool
    bass_spike: bool
    onset: bool

    @property
    def count(self) -> int:
        return int(self.flux) + int(self.bass_spike) + int(self.onset)


def should_fire(votes: int, elapsed: float, min_separation: float) -> bool:
    """Separation guard with hysteresis: two votes need `elapsed > sep`,
    a single vote needs `elapsed > 1.5 * sep`."""
    if votes < 1 or not elapsed > min_separation:
        return False
    return votes >= 2 or elapsed > min_separation * SINGLE_VOTE_SEPARATION


def clamp01(value: float) -> float:
    return min(1.0, max(0.0, value))


class BeatDetector:
    """
    Owns all mutable detection state for one session: the frame window,
    the three history buffers, the last beat time and the tempo state.
    Frames must be fed in increasing media-time order.
    """

    def __init__(self, config: BeatDetectorConfig):
        self.config = config
        self.bands = config.bands
        self._bass_band = next(b for b in self.bands if b.name == 'bass')
        self._mid_band = next(b for b in self.bands if b.name == 'mid')

        self.window = SpectralFrameWindow()
        self.flux_history = HistoryBuffer(config.history_size)
        self.energy_history = HistoryBuffer(config.history_size)
        self.bass_energy_history = HistoryBuffer(config.history_size)

        self.tempo = TempoTracker(config.beats_to_analyze, enabled=config.bpm_sync_enabled)
        self.last_beat_time: float = -math.inf
        self.frames_processed = 0
        self.beats_detected = 0
        self.beats_scheduled = 0
        self.last_features: Optional[FrameFeatures] = None

    @property
    def locked(self) -> bool:
        return self.tempo.locked

    def process_frame(self, spectrum_db: np.ndarray, media_time: float) -> Optional[BeatEvent]:
        """Feed one spectral frame (dB per bin). Returns a BeatEvent if a beat fires."""
        self.window.push(spectrum_db)
        features = compute_frame_features(self.window, self.bands)
        self.last_features = features
        self.frames_processed += 1

        self.flux_history.append(features.total_flux)
        self.energy_history.append(features.total_energy)
        self.bass_energy_history.append(features.bass_energy)

        if self.tempo.locked:
            return self._scheduled_beat(media_time)
        return self._detected_beat(features, media_time)

    def compute_votes(self, features: FrameFeatures) -> Votes:
        cfg = self.config
        k = cfg.energy_threshold

        flux_values = self.flux_history.values()
        flux_vote = (
            features.total_flux > adaptive_threshold(flux_values, k)
            and is_local_maximum(features.total_flux, flux_values)
            and len(flux_values) >= cfg.history_size * FLUX_WARMUP_FRACTION
        )

        bass_vote = False
        if cfg.use_energy_spikes:
            bass_values = self.bass_energy_history.values()
            bass_vote = (
                features.bass_energy > adaptive_threshold(bass_values, k) * BASS_SPIKE_FACTOR
                and is_local_maximum(features.bass_energy, bass_values, BASS_LOCAL_MAX_WINDOW)
            )

        onset_vote = cfg.use_onset_detection and detect_onset(
            self.window.current, self.window.previous, self.window.previous2,
            self._bass_band, self._mid_band,
        )
        return Votes(flux=bool(flux_vote), bass_spike=bool(bass_vote), onset=bool(onset_vote))

    def _detected_beat(self, features: FrameFeatures, media_time: float) -> Optional[BeatEvent]:
        votes = self.compute_votes(features)
        elapsed = media_time - self.last_beat_time
        if not should_fire(votes.count, elapsed, self.config.min_beat_separation):
            return None

        peak_flux = self.flux_history.max()
        intensity = clamp01(features.total_flux / (peak_flux or 1.0))

        self.last_beat_time = media_time
        self.beats_detected += 1
        log_event(
            "DEBUG",
            "BEAT",
            "Beat detected",
            t=f"{media_time:.3f}",
            votes=votes.count,
            flux=f"{features.total_flux:.4f}",
            bass=f"{features.bass_energy:.4f}",
            intensity=f"{intensity:.2f}",
        )
        event = BeatEvent(timestamp=media_time, intensity=intensity, votes=votes.count)
        self.tempo.record_beat(media_time)
        return event

    def _scheduled_beat(self, media_time: float) -> Optional[BeatEvent]:
        scheduled = self.tempo.due_beat(media_time)
        if scheduled is None:
            return None
        # Anchor to the schedule, not the sampled time, so frame jitter never accumulates
        self.last_beat_time = scheduled
        self.beats_scheduled += 1
        log_event("DEBUG", "BEAT", "Scheduled beat", t=f"{scheduled:.3f}", bpm=f"{self.tempo.bpm:.1f}")
        return BeatEvent(
            timestamp=scheduled,
            intensity=LOCKED_INTENSITY,
            locked=True,
            bpm=self.tempo.bpm,
        )

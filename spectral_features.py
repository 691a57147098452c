"""Per-band energy and half-wave rectified spectral flux over a 3-frame window."""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from config import Band


def db_to_linear(spectrum_db: np.ndarray) -> np.ndarray:
    """10 ** (dB / 20). -inf dB (silence) maps to 0."""
    db = np.asarray(spectrum_db, dtype=np.float64)
    return np.power(10.0, db / 20.0)


def band_slice(band: Band, bin_count: int) -> slice:
    """Inclusive bin range of a band, clipped to the frame length."""
    start = min(max(0, band.start_bin), bin_count)
    end = min(band.end_bin + 1, bin_count)
    return slice(start, max(start, end))


def band_frequency_range(band: Band, sample_rate: float, fft_size: int) -> tuple[float, float]:
    """Approximate (low_hz, high_hz) covered by a band."""
    hz_per_bin = sample_rate / fft_size
    return band.start_bin * hz_per_bin, (band.end_bin + 1) * hz_per_bin


def band_energy(linear: np.ndarray, band: Band) -> float:
    """RMS of linear amplitude over the band's bins."""
    values = linear[band_slice(band, len(linear))]
    if values.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(values * values)))


def band_flux(current: np.ndarray, previous: Optional[np.ndarray], band: Band) -> float:
    """L2 norm of the rising part of the change; decays contribute nothing."""
    if previous is None:
        return 0.0
    sl = band_slice(band, min(len(current), len(previous)))
    rise = np.maximum(0.0, current[sl] - previous[sl])
    return float(np.sqrt(np.sum(rise * rise)))


@dataclass(frozen=True)
class FrameFeatures:
    total_flux: float
    bass_flux: float
    total_energy: float
    bass_energy: float


class SpectralFrameWindow:
    """Keeps the current linear frame and the two before it; older frames drop off."""

    def __init__(self):
        self.current: Optional[np.ndarray] = None
        self.previous: Optional[np.ndarray] = None
        self.previous2: Optional[np.ndarray] = None

    def push(self, spectrum_db: np.ndarray) -> np.ndarray:
        linear = db_to_linear(spectrum_db)
        self.previous2 = self.previous
        self.previous = self.current
        self.current = linear
        return linear

    @property
    def full(self) -> bool:
        return self.previous2 is not None

    def clear(self) -> None:
        self.current = self.previous = self.previous2 = None


def bass_span(bands: Sequence[Band]) -> Optional[Band]:
    """One band spanning from the first to the last bass-classified bin."""
    bass = [b for b in bands if b.is_bass]
    if not bass:
        return None
    return Band(
        name='bass_span',
        start_bin=min(b.start_bin for b in bass),
        end_bin=max(b.end_bin for b in bass),
        weight=1.0,
        is_bass=True,
    )


def compute_frame_features(window: SpectralFrameWindow, bands: Sequence[Band]) -> FrameFeatures:
    """Weighted flux/energy aggregates for the window's current frame."""
    current = window.current
    if current is None:
        return FrameFeatures(0.0, 0.0, 0.0, 0.0)

    total_flux = 0.0
    bass_flux = 0.0
    total_energy = 0.0
    for band in bands:
        weighted_flux = band_flux(current, window.previous, band) * band.weight
        total_flux += weighted_flux
        if band.is_bass:
            bass_flux += weighted_flux
        total_energy += band_energy(current, band) * band.weight

    span = bass_span(bands)
    bass = band_energy(current, span) if span is not None else 0.0
    return FrameFeatures(total_flux, bass_flux, total_energy, bass)

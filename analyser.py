"""
beatlock - Spectrum pipeline
A tap that collects the most recent samples a source is playing, and an
analyser that turns that window into a smoothed dB magnitude spectrum.
"""

import threading
from typing import Callable, Optional

import numpy as np


class AudioTap:
    """
    Fixed-size ring buffer holding the latest mono samples of a source.

    The source writes from its audio thread; the engine reads a copy of the
    whole window from the ticking thread. Both sides take the same lock.
    Until enough audio has been written the unwritten part reads as silence.
    """
    __slots__ = ('size', '_buffer', '_write_pos', '_lock', '_closed', '_on_close')

    def __init__(self, size: int, on_close: Optional[Callable[['AudioTap'], None]] = None):
        if size <= 0:
            raise ValueError(f"tap size must be positive, got {size}")
        self.size = int(size)
        self._buffer = np.zeros(self.size, dtype=np.float32)
        self._write_pos = 0
        self._lock = threading.Lock()
        self._closed = False
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, samples: np.ndarray) -> None:
        """Append mono samples, overwriting the oldest ones."""
        if self._closed:
            return
        block = np.asarray(samples, dtype=np.float32).reshape(-1)
        if block.size >= self.size:
            block = block[-self.size:]
        n = block.size
        if n == 0:
            return
        with self._lock:
            end = self._write_pos + n
            if end <= self.size:
                self._buffer[self._write_pos:end] = block
            else:
                first = self.size - self._write_pos
                self._buffer[self._write_pos:] = block[:first]
                self._buffer[:n - first] = block[first:]
            self._write_pos = end % self.size

    def read(self) -> np.ndarray:
        """Return the latest `size` samples, oldest first."""
        with self._lock:
            return np.concatenate((self._buffer[self._write_pos:], self._buffer[:self._write_pos]))

    def close(self) -> None:
        """Disconnect from the source. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            callback, self._on_close = self._on_close, None
            callback(self)


class SpectrumAnalyser:
    """
    Produces fft_size // 2 dB magnitudes per call, the way a browser
    AnalyserNode does: Blackman window, |FFT| / N, exponential smoothing
    against the previous frame, then 20 * log10. Silent bins are -inf.
    """

    def __init__(self, fft_size: int, smoothing_time_constant: float = 0.7):
        self.fft_size = int(fft_size)
        self.smoothing_time_constant = float(smoothing_time_constant)
        self.bin_count = self.fft_size // 2
        self._window = np.blackman(self.fft_size).astype(np.float64)
        self._smoothed = np.zeros(self.bin_count, dtype=np.float64)

    def reset(self) -> None:
        self._smoothed.fill(0.0)

    def get_float_frequency_data(self, samples: np.ndarray) -> np.ndarray:
        frame = np.asarray(samples, dtype=np.float64).reshape(-1)
        if frame.size != self.fft_size:
            # Left-pad short reads with silence, keep the newest samples of long ones
            padded = np.zeros(self.fft_size, dtype=np.float64)
            frame = frame[-self.fft_size:]
            padded[self.fft_size - frame.size:] = frame
            frame = padded

        magnitude = np.abs(np.fft.rfft(frame * self._window))[:self.bin_count] / self.fft_size
        tau = self.smoothing_time_constant
        self._smoothed = tau * self._smoothed + (1.0 - tau) * magnitude

        with np.errstate(divide='ignore'):
            return 20.0 * np.log10(self._smoothed)

"""
beatlock - Audio Engine
Drives beat detection from a playing media source, one tick per host frame.
Pulls a spectrum from the source's tap, runs the beat detector and hands
beats to the consumer callback.
"""

import time
from typing import Callable, Optional, Protocol, Union

import numpy as np

from analyser import AudioTap, SpectrumAnalyser
from beat_detector import BeatDetector, BeatEvent
from config import BeatDetectorConfig, build_config
from logging_utils import log_event, log_exception
from spectral_features import band_frequency_range

BeatCallback = Callable[[float, float], None]


class PipelineSetupError(RuntimeError):
    """The spectral pipeline could not be built; the session never runs."""


class MediaSource(Protocol):
    """What the engine needs from a playable source."""
    sample_rate: int

    @property
    def playing(self) -> bool: ...

    @property
    def current_time(self) -> float: ...

    def create_tap(self, size: int) -> AudioTap: ...

    def resume(self) -> None: ...


class BeatEmitter:
    """Invokes the consumer callback per beat; a failing consumer never stops the loop."""

    def __init__(self, callback: BeatCallback):
        self._callback: Optional[BeatCallback] = callback
        self.emitted = 0
        self.failures = 0

    @property
    def closed(self) -> bool:
        return self._callback is None

    def emit(self, event: BeatEvent) -> bool:
        callback = self._callback
        if callback is None:
            return False
        try:
            callback(event.timestamp, event.intensity)
        except Exception as e:
            self.failures += 1
            log_exception("ERROR", "Emitter", "Beat callback failed", e,
                          t=f"{event.timestamp:.3f}", failures=self.failures)
            return False
        self.emitted += 1
        return True

    def close(self) -> None:
        self._callback = None


class AudioEngine:
    """
    One beat-detection session: start() -> tick()/run() -> stop().

    All detection state lives in this instance, so independent sessions can
    run side by side. tick() must be called from a single thread.
    """

    def __init__(self, config: BeatDetectorConfig, beat_callback: BeatCallback):
        self.config = config
        self.beat_callback = beat_callback

        self.source: Optional[MediaSource] = None
        self.running = False
        self._stopped = False
        self._tap: Optional[AudioTap] = None
        self._analyser: Optional[SpectrumAnalyser] = None
        self._emitter = BeatEmitter(beat_callback)
        self.detector = BeatDetector(config)

        self._session_started_at: float = 0.0
        self._session_ticks: int = 0
        self._session_idle_ticks: int = 0
        self._session_flux_max: float = 0.0
        self._session_energy_max: float = 0.0

    @property
    def locked(self) -> bool:
        return self.detector.locked

    @property
    def bpm(self) -> float:
        return self.detector.tempo.bpm

    def _reset_session_stats(self) -> None:
        self._session_started_at = time.time()
        self._session_ticks = 0
        self._session_idle_ticks = 0
        self._session_flux_max = 0.0
        self._session_energy_max = 0.0

    def start(self, source: MediaSource) -> None:
        """Build the spectral pipeline on `source` and start accepting ticks.

        Raises PipelineSetupError if the pipeline cannot be built. A failure
        to resume audio output is only logged.
        """
        if self.running:
            return
        if self._stopped:
            raise PipelineSetupError("engine was stopped; create a new AudioEngine for a new session")

        try:
            self._analyser = SpectrumAnalyser(self.config.fft_size, self.config.smoothing_time_constant)
            self._tap = source.create_tap(self.config.fft_size)
        except Exception as e:
            self._analyser = None
            self._tap = None
            log_exception("ERROR", "Engine", "Failed to build spectral pipeline", e)
            raise PipelineSetupError(f"could not build spectral pipeline: {e}") from e

        self.source = source
        self._reset_session_stats()
        self.running = True

        try:
            source.resume()
        except Exception as e:
            log_exception("WARNING", "Engine", "Audio resume failed, reading silence until resumed", e)

        self._log_band_layout(source)
        log_event("INFO", "Engine", "Started",
                  fft_size=self.config.fft_size,
                  mode=self.config.sensitivity_mode.value,
                  k=self.config.energy_threshold,
                  min_sep=self.config.min_beat_separation,
                  bpm_sync=self.config.bpm_sync_enabled)

    def _log_band_layout(self, source: MediaSource) -> None:
        sample_rate = getattr(source, 'sample_rate', None)
        if not sample_rate:
            return
        for band in self.detector.bands:
            low_hz, high_hz = band_frequency_range(band, sample_rate, self.config.fft_size)
            log_event("DEBUG", "Engine", "Band", name=band.name,
                      bins=f"{band.start_bin}-{band.end_bin}",
                      hz=f"{low_hz:.0f}-{high_hz:.0f}", weight=band.weight)

    def tick(self) -> Optional[BeatEvent]:
        """Run one acquisition step. Returns the beat emitted this tick, if any."""
        if not self.running or self.source is None or self._tap is None:
            return None

        self._session_ticks += 1
        if not self.source.playing:
            self._session_idle_ticks += 1
            return None

        samples = self._tap.read()
        spectrum_db = self._analyser.get_float_frequency_data(samples)
        return self.process_spectrum(spectrum_db, float(self.source.current_time))

    def process_spectrum(self, spectrum_db: np.ndarray, media_time: float) -> Optional[BeatEvent]:
        """Feed an already computed spectrum frame through detection and emission."""
        if not self.running:
            return None
        event = self.detector.process_frame(spectrum_db, media_time)

        features = self.detector.last_features
        if features is not None:
            self._session_flux_max = max(self._session_flux_max, features.total_flux)
            self._session_energy_max = max(self._session_energy_max, features.total_energy)

        if event is not None:
            self._emitter.emit(event)
        return event

    def run(self, fps: float = 60.0, stop_when: Optional[Callable[[], bool]] = None) -> None:
        """Tick at `fps` in the calling thread until stop() or stop_when() is true."""
        if fps <= 0:
            raise ValueError(f"fps must be positive, got {fps}")
        period = 1.0 / fps
        next_tick = time.perf_counter()
        while self.running:
            self.tick()
            if stop_when is not None and stop_when():
                break
            next_tick += period
            delay = next_tick - time.perf_counter()
            if delay > 0:
                time.sleep(delay)
            else:
                # Fell behind; skip missed frames instead of bursting
                next_tick = time.perf_counter()

    def stop(self) -> None:
        """Stop the session. Idempotent; no callback runs after this returns."""
        self._emitter.close()
        if self._stopped:
            return
        self._stopped = True
        was_running = self.running
        self.running = False

        tap, self._tap = self._tap, None
        if tap is not None:
            try:
                tap.close()
            except Exception as e:
                log_exception("WARNING", "Engine", "Cleanup error", e)

        if was_running:
            self._log_shutdown_summary()
        log_event("INFO", "Engine", "Stopped")

    # The engine returned by detect_beats doubles as its stop handle
    __call__ = stop

    def _log_shutdown_summary(self) -> None:
        if self._session_ticks <= 0:
            return

        elapsed_s = max(0.0, time.time() - self._session_started_at)
        detector = self.detector
        log_event(
            "INFO",
            "Engine",
            "Shutdown summary",
            ticks=self._session_ticks,
            idle_ticks=self._session_idle_ticks,
            frames=detector.frames_processed,
            seconds=f"{elapsed_s:.1f}",
            detected=detector.beats_detected,
            scheduled=detector.beats_scheduled,
            emitted=self._emitter.emitted,
            callback_failures=self._emitter.failures,
            locked=detector.locked,
            bpm=f"{detector.tempo.bpm:.1f}",
            flux_max=f"{self._session_flux_max:.4f}",
            energy_max=f"{self._session_energy_max:.4f}",
        )


def detect_beats(source: MediaSource,
                 callback: BeatCallback,
                 config: Union[BeatDetectorConfig, dict, None] = None) -> AudioEngine:
    """Start a session on `source`; calling the returned engine stops it.

    `config` may be a built BeatDetectorConfig or a dict of overrides.
    Raises PipelineSetupError if the pipeline cannot be built.
    """
    if not isinstance(config, BeatDetectorConfig):
        config = build_config(config)
    engine = AudioEngine(config, callback)
    engine.start(source)
    return engine

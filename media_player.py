"""
beatlock - Media Player
Plays an audio file through PortAudio (sounddevice) and feeds the samples it
plays into analysis taps. This is the MediaSource the CLI hands to the engine.
"""

import threading
from pathlib import Path
from typing import Optional, Union

import numpy as np
import sounddevice as sd
import soundfile as sf
from scipy.signal import butter, sosfilt, sosfilt_zi

from analyser import AudioTap
from logging_utils import log_event


def list_output_devices() -> list[dict]:
    """Output-capable PortAudio devices as {index, name, outputs, sample_rate}."""
    devices = []
    for i, d in enumerate(sd.query_devices()):
        if d['max_output_channels'] <= 0:
            continue
        devices.append({
            'index': i,
            'name': d['name'],
            'outputs': d['max_output_channels'],
            'sample_rate': d['default_samplerate'],
        })
    return devices


class FilePlayer:
    """
    Decoded audio file + output stream + play head.

    The PortAudio callback thread advances the play head and writes the
    mono mix of every block it plays into each connected tap. Taps are
    only touched under their own lock, play-head state under ours.
    """

    def __init__(self,
                 path: Union[str, Path],
                 *,
                 blocksize: int = 1024,
                 device: Optional[int] = None,
                 highpass_hz: float = 0.0):
        self.path = Path(path)
        data, sample_rate = sf.read(str(self.path), dtype='float32', always_2d=True)
        self._data: np.ndarray = data
        self.sample_rate: int = int(sample_rate)
        self.channels: int = int(data.shape[1])
        self.blocksize = int(blocksize)
        self.device = device

        self._lock = threading.Lock()
        self._position = 0
        self._playing = False
        self._taps: list[AudioTap] = []
        self._stream: Optional[sd.OutputStream] = None

        # Optional high-pass on the analysis path only; playback is untouched
        self._highpass_sos = None
        self._highpass_zi = None
        if highpass_hz > 0:
            self._init_highpass(highpass_hz)

        log_event("INFO", "Player", "Loaded", file=self.path.name,
                  sample_rate=self.sample_rate, channels=self.channels,
                  seconds=f"{self.duration:.1f}")

    def _init_highpass(self, cutoff_hz: float) -> None:
        nyquist = self.sample_rate / 2
        norm = max(0.001, min(0.99, cutoff_hz / nyquist))
        self._highpass_sos = butter(4, norm, btype='highpass', output='sos')
        log_event("INFO", "Player", "Analysis high-pass initialized", cutoff=f"{cutoff_hz:.0f}")

    @property
    def duration(self) -> float:
        return len(self._data) / self.sample_rate

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._position / self.sample_rate

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._position >= len(self._data)

    @property
    def playing(self) -> bool:
        with self._lock:
            return self._playing and self._position < len(self._data)

    def play(self) -> None:
        with self._lock:
            self._playing = True

    def pause(self) -> None:
        with self._lock:
            self._playing = False

    def seek(self, seconds: float) -> None:
        frame = int(max(0.0, seconds) * self.sample_rate)
        with self._lock:
            self._position = min(frame, len(self._data))

    def create_tap(self, size: int) -> AudioTap:
        """Connect a new analysis tap; opens the output stream on first use."""
        if self._stream is None:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                blocksize=self.blocksize,
                dtype='float32',
                device=self.device,
                callback=self._audio_callback,
            )
        tap = AudioTap(size, on_close=self._disconnect_tap)
        with self._lock:
            self._taps.append(tap)
        return tap

    def _disconnect_tap(self, tap: AudioTap) -> None:
        with self._lock:
            if tap in self._taps:
                self._taps.remove(tap)

    def resume(self) -> None:
        """Start audio output. Raises if the device refuses."""
        if self._stream is not None and not self._stream.active:
            self._stream.start()
            log_event("INFO", "Player", "Output stream started", device=self.device)

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()
        log_event("INFO", "Player", "Closed")

    def _audio_callback(self, outdata, frames, time_info, status):
        """PortAudio callback - copy the next block out and into the taps"""
        if status:
            log_event("WARNING", "Player", "Output stream status", status=status)

        with self._lock:
            if self._playing:
                chunk = self._data[self._position:self._position + frames]
                self._position += len(chunk)
            else:
                chunk = self._data[:0]
            taps = list(self._taps)

        n = len(chunk)
        outdata[:n] = chunk
        outdata[n:] = 0.0
        if n == 0 or not taps:
            return

        mono = chunk.mean(axis=1) if self.channels > 1 else chunk[:, 0]
        if self._highpass_sos is not None:
            if self._highpass_zi is None:
                self._highpass_zi = sosfilt_zi(self._highpass_sos) * mono[0]
            mono, self._highpass_zi = sosfilt(self._highpass_sos, mono, zi=self._highpass_zi)
        for tap in taps:
            tap.write(mono)

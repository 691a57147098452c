# beatlock Configuration
# All default values, presets and the band layout

import re
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Mapping, Optional

from logging_utils import log_event


class ConfigError(ValueError):
    """Raised when a configuration override is invalid."""


class SensitivityMode(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Sensitivity presets: override k (energy_threshold) and min_beat_separation
# unless the caller sets those explicitly.
SENSITIVITY_PRESETS = {
    SensitivityMode.LOW: {'energy_threshold': 1.8, 'min_beat_separation': 0.5},
    SensitivityMode.MEDIUM: {'energy_threshold': 1.4, 'min_beat_separation': 0.35},
    SensitivityMode.HIGH: {'energy_threshold': 1.1, 'min_beat_separation': 0.25},
}

BAND_NAMES = ('sub_bass', 'bass', 'low_mid', 'mid', 'high_mid', 'high')
BASS_BANDS = frozenset({'sub_bass', 'bass'})


@dataclass(frozen=True)
class Band:
    """A contiguous, inclusive range of spectrum bins with a weight."""
    name: str
    start_bin: int
    end_bin: int
    weight: float
    is_bass: bool = False


@dataclass(frozen=True)
class BeatDetectorConfig:
    """Beat detection parameters. Built once per session by build_config()."""
    fft_size: int = 2048              # Power of two; frame has fft_size // 2 bins

    # Frequency ranges (in bins, inclusive). At 44.1kHz / 2048 one bin ~= 21.5Hz
    sub_bass_range: tuple[int, int] = (0, 4)      # Deep bass drops
    bass_range: tuple[int, int] = (4, 12)         # Kick drums
    low_mid_range: tuple[int, int] = (12, 24)     # Bass guitars, low synths
    mid_range: tuple[int, int] = (24, 48)         # Snare, vocals
    high_mid_range: tuple[int, int] = (48, 96)    # Presence, hi-hats
    high_range: tuple[int, int] = (96, 180)       # Cymbals, brightness

    # Weights per band - kicks and snares carry the clearest beat signal
    sub_bass_weight: float = 1.5
    bass_weight: float = 2.0
    low_mid_weight: float = 1.0
    mid_weight: float = 1.4
    high_mid_weight: float = 0.8
    high_weight: float = 0.5

    min_beat_separation: float = 0.35  # Seconds between unlocked beats (~170 BPM max)
    energy_threshold: float = 1.4      # k in median + k * 1.4826 * MAD
    history_size: int = 50             # ~0.8s of history at 60 ticks/s

    use_onset_detection: bool = True
    use_energy_spikes: bool = True
    sensitivity_mode: SensitivityMode = SensitivityMode.MEDIUM

    # Tempo lock
    bpm_sync_enabled: bool = True
    beats_to_analyze: int = 8          # Confirmed beats required before a lock attempt

    # Analyser temporal smoothing between frames (0 = none, 1 = frozen)
    smoothing_time_constant: float = 0.7

    @property
    def bands(self) -> tuple[Band, ...]:
        return tuple(
            Band(
                name=name,
                start_bin=int(getattr(self, f'{name}_range')[0]),
                end_bin=int(getattr(self, f'{name}_range')[1]),
                weight=float(getattr(self, f'{name}_weight')),
                is_bass=name in BASS_BANDS,
            )
            for name in BAND_NAMES
        )

    @property
    def bin_count(self) -> int:
        return self.fft_size // 2


DEFAULT_CONFIG = BeatDetectorConfig()

_FIELD_NAMES = frozenset(f.name for f in fields(BeatDetectorConfig))
_BOOL_STRINGS = {'true': True, 'false': False}


def _snake_case(key: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', key).lower()


def _normalize_overrides(overrides: Mapping[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key, value in overrides.items():
        name = _snake_case(str(key))
        if name not in _FIELD_NAMES:
            log_event("WARNING", "Config", "Ignoring unknown option", key=key)
            continue
        if value is None:
            continue
        normalized[name] = value
    return normalized


def _coerce(name: str, value: Any) -> Any:
    if name == 'sensitivity_mode':
        try:
            return SensitivityMode(value)
        except ValueError:
            raise ConfigError(f"sensitivity_mode must be one of low/medium/high, got {value!r}") from None
    if name.endswith('_range'):
        try:
            start, end = (int(v) for v in value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be a (start_bin, end_bin) pair, got {value!r}") from None
        return (start, end)
    default = getattr(DEFAULT_CONFIG, name)
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _BOOL_STRINGS:
            return _BOOL_STRINGS[value.strip().lower()]
        raise ConfigError(f"{name} must be true or false, got {value!r}")
    try:
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}") from None
    return value


def validate_config(config: BeatDetectorConfig) -> BeatDetectorConfig:
    """Check invariants of a merged config; raise ConfigError on the first violation."""
    n = config.fft_size
    if n < 32 or n > 32768 or n & (n - 1):
        raise ConfigError(f"fft_size must be a power of two in [32, 32768], got {n}")
    for band in config.bands:
        if band.start_bin < 0 or band.end_bin < band.start_bin:
            raise ConfigError(f"{band.name}_range is malformed: ({band.start_bin}, {band.end_bin})")
        if band.weight < 0:
            raise ConfigError(f"{band.name}_weight must be >= 0, got {band.weight}")
    if config.min_beat_separation <= 0:
        raise ConfigError("min_beat_separation must be > 0")
    if config.energy_threshold < 0:
        raise ConfigError("energy_threshold must be >= 0")
    if config.history_size < 5:
        raise ConfigError("history_size must be >= 5")
    if config.beats_to_analyze < 3:
        raise ConfigError("beats_to_analyze must be >= 3")
    if not 0.0 <= config.smoothing_time_constant <= 1.0:
        raise ConfigError("smoothing_time_constant must be within [0, 1]")
    return config


def build_config(overrides: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> BeatDetectorConfig:
    """Merge defaults, the sensitivity preset and explicit overrides.

    Keys may be snake_case or camelCase (``minBeatSeparation``). The preset
    supplies energy_threshold and min_beat_separation only where the caller
    did not set them.
    """
    explicit = _normalize_overrides({**(overrides or {}), **kwargs})
    values = {name: _coerce(name, value) for name, value in explicit.items()}

    mode = values.get('sensitivity_mode', DEFAULT_CONFIG.sensitivity_mode)
    for key, preset_value in SENSITIVITY_PRESETS[mode].items():
        values.setdefault(key, preset_value)

    return validate_config(replace(DEFAULT_CONFIG, **values))

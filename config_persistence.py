import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

from config import (
    DEFAULT_CONFIG,
    SENSITIVITY_PRESETS,
    BeatDetectorConfig,
    ConfigError,
    SensitivityMode,
    build_config,
)
from logging_utils import log_event


def get_config_dir() -> Path:
    """Per-user config directory (~/.beatlock)."""
    config_dir = Path.home() / '.beatlock'
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_file() -> Path:
    """Get config file path."""
    return get_config_dir() / 'config.json'


def config_to_dict(config: BeatDetectorConfig) -> dict[str, Any]:
    """Overrides that rebuild `config`: fields that differ from the defaults.

    energy_threshold and min_beat_separation are compared against the saved
    mode's preset instead, so a mode changed later still applies its preset.
    """
    preset = SENSITIVITY_PRESETS[config.sensitivity_mode]
    defaults = asdict(DEFAULT_CONFIG)
    data: dict[str, Any] = {}
    for key, value in asdict(config).items():
        baseline = preset[key] if key in preset else defaults[key]
        if value == baseline:
            continue
        if isinstance(value, SensitivityMode):
            value = value.value
        elif isinstance(value, tuple):
            value = list(value)
        data[key] = value
    return data


def save_config(config: BeatDetectorConfig, path: Optional[Path] = None) -> bool:
    """Save config overrides to a JSON file."""
    try:
        config_file = Path(path) if path is not None else get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, 'w', encoding='utf-8') as f:
            json.dump(config_to_dict(config), f, indent=2)
        log_event("INFO", "Config", "Saved", path=config_file)
        return True
    except (OSError, TypeError) as e:
        log_event("ERROR", "Config", "Failed to save", error=e)
        return False


def load_overrides(path: Optional[Path] = None) -> dict[str, Any]:
    """Read a JSON object of overrides; missing or unreadable files give {}."""
    try:
        config_file = Path(path) if path is not None else get_config_file()
        if not config_file.exists():
            log_event("INFO", "Config", "No saved config found, using defaults", path=config_file)
            return {}
        with open(config_file, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log_event("ERROR", "Config", "Failed to load, using defaults", error=e)
        return {}

    if not isinstance(data, dict):
        log_event("ERROR", "Config", "Config file is not a JSON object, using defaults", path=config_file)
        return {}
    log_event("INFO", "Config", "Loaded", path=config_file, keys=len(data))
    return data


def load_config(path: Optional[Path] = None, **overrides: Any) -> BeatDetectorConfig:
    """File overrides, then keyword overrides, merged onto defaults and the preset.

    Invalid values in the file fall back to defaults; invalid keyword
    overrides raise ConfigError.
    """
    file_overrides = load_overrides(path)
    overrides = {k: v for k, v in overrides.items() if v is not None}
    try:
        return build_config(file_overrides, **overrides)
    except ConfigError as e:
        log_event("ERROR", "Config", "Invalid config file, using defaults", error=e)
        return build_config(overrides)

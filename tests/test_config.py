import dataclasses
import unittest
from unittest import mock

from config import (
    BeatDetectorConfig,
    ConfigError,
    DEFAULT_CONFIG,
    SENSITIVITY_PRESETS,
    SensitivityMode,
    build_config,
)


class TestBuildConfig(unittest.TestCase):
    def test_defaults_use_medium_preset(self):
        cfg = build_config()
        self.assertEqual(cfg.sensitivity_mode, SensitivityMode.MEDIUM)
        self.assertAlmostEqual(cfg.energy_threshold, 1.4)
        self.assertAlmostEqual(cfg.min_beat_separation, 0.35)
        self.assertEqual(cfg.fft_size, 2048)
        self.assertEqual(cfg.history_size, 50)

    def test_preset_overrides_threshold_and_separation(self):
        for mode, preset in SENSITIVITY_PRESETS.items():
            cfg = build_config(sensitivity_mode=mode.value)
            self.assertAlmostEqual(cfg.energy_threshold, preset['energy_threshold'])
            self.assertAlmostEqual(cfg.min_beat_separation, preset['min_beat_separation'])

    def test_explicit_values_beat_preset(self):
        cfg = build_config({'sensitivity_mode': 'high', 'min_beat_separation': 1.5})
        self.assertAlmostEqual(cfg.min_beat_separation, 1.5)
        self.assertAlmostEqual(cfg.energy_threshold, 1.1)

    def test_camel_case_keys(self):
        cfg = build_config({'minBeatSeparation': 1.5, 'sensitivityMode': 'low', 'fftSize': 1024,
                            'bassRange': [3, 10], 'bpmSyncEnabled': False})
        self.assertAlmostEqual(cfg.min_beat_separation, 1.5)
        self.assertEqual(cfg.sensitivity_mode, SensitivityMode.LOW)
        self.assertEqual(cfg.fft_size, 1024)
        self.assertEqual(cfg.bass_range, (3, 10))
        self.assertFalse(cfg.bpm_sync_enabled)

    def test_unknown_keys_are_logged_and_ignored(self):
        with mock.patch("config.log_event") as log_event_mock:
            cfg = build_config({'not_an_option': 3})
        self.assertEqual(cfg, build_config())
        log_event_mock.assert_called_once()

    def test_boolean_strings(self):
        cfg = build_config({'bpmSyncEnabled': 'false', 'useOnsetDetection': 'False',
                            'useEnergySpikes': 'true'})
        self.assertFalse(cfg.bpm_sync_enabled)
        self.assertFalse(cfg.use_onset_detection)
        self.assertTrue(cfg.use_energy_spikes)

    def test_none_values_are_skipped(self):
        cfg = build_config(energy_threshold=None)
        self.assertAlmostEqual(cfg.energy_threshold, 1.4)

    def test_config_is_immutable(self):
        cfg = build_config()
        with self.assertRaises(dataclasses.FrozenInstanceError):
            cfg.history_size = 10  # type: ignore[misc]

    def test_bands(self):
        bands = DEFAULT_CONFIG.bands
        self.assertEqual([b.name for b in bands],
                         ['sub_bass', 'bass', 'low_mid', 'mid', 'high_mid', 'high'])
        self.assertEqual([b.is_bass for b in bands], [True, True, False, False, False, False])
        self.assertEqual([b.weight for b in bands], [1.5, 2.0, 1.0, 1.4, 0.8, 0.5])
        self.assertEqual((bands[-1].start_bin, bands[-1].end_bin), (96, 180))
        self.assertEqual(DEFAULT_CONFIG.bin_count, 1024)


class TestConfigValidation(unittest.TestCase):
    def test_invalid_values_raise(self):
        bad = [
            {'fft_size': 1000},
            {'fft_size': 16},
            {'beats_to_analyze': 2},
            {'history_size': 4},
            {'min_beat_separation': 0},
            {'energy_threshold': -1},
            {'mid_range': (10, 5)},
            {'mid_range': 'nope'},
            {'sensitivity_mode': 'extreme'},
            {'smoothing_time_constant': 1.5},
            {'bpmSyncEnabled': 'nope'},
            {'use_onset_detection': 1},
            {'fft_size': 'abc'},
        ]
        for overrides in bad:
            with self.subTest(overrides=overrides):
                with self.assertRaises(ConfigError):
                    build_config(overrides)

    def test_config_error_is_value_error(self):
        self.assertTrue(issubclass(ConfigError, ValueError))

    def test_default_dataclass_is_valid(self):
        self.assertIsInstance(build_config(), BeatDetectorConfig)


if __name__ == "__main__":
    unittest.main()

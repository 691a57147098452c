import math
import unittest
from unittest import mock

import numpy as np

from beat_detector import BeatDetector, LOCKED_INTENSITY, should_fire
from config import build_config
from tempo_tracker import Locked, Unlocked

FPS = 60.0
BINS = 1024
SILENT = np.full(BINS, -np.inf)
LOUD = np.zeros(BINS)  # 0 dB = linear 1.0 in every bin


def pulse_train(total_frames: int, every: int, first: int = 30, level_db: float = 0.0):
    """Silence with a one-frame broadband hit every `every` frames."""
    for i in range(total_frames):
        if i >= first and (i - first) % every == 0:
            yield i, np.full(BINS, level_db)
        else:
            yield i, SILENT


def run_frames(detector: BeatDetector, frames) -> list:
    events = []
    for i, spectrum in frames:
        event = detector.process_frame(spectrum, i / FPS)
        if event is not None:
            events.append(event)
    return events


class TestShouldFire(unittest.TestCase):
    def test_no_votes(self):
        self.assertFalse(should_fire(0, math.inf, 0.35))

    def test_two_votes_need_separation(self):
        self.assertFalse(should_fire(2, 0.35, 0.35))
        self.assertTrue(should_fire(2, 0.36, 0.35))
        self.assertTrue(should_fire(3, 0.36, 0.35))

    def test_single_vote_needs_one_and_a_half_separation(self):
        self.assertFalse(should_fire(1, 0.5, 0.35))
        self.assertTrue(should_fire(1, 0.53, 0.35))

    def test_first_beat(self):
        self.assertTrue(should_fire(1, math.inf, 0.35))


class BeatDetectorTestCase(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch("beat_detector.log_event")
        patcher.start()
        self.addCleanup(patcher.stop)
        tempo_patcher = mock.patch("tempo_tracker.log_event")
        tempo_patcher.start()
        self.addCleanup(tempo_patcher.stop)


class TestUnlockedDetection(BeatDetectorTestCase):
    def test_silence_never_fires(self):
        detector = BeatDetector(build_config())
        events = run_frames(detector, ((i, SILENT) for i in range(300)))
        self.assertEqual(events, [])

    def test_pulse_fires_with_two_votes(self):
        detector = BeatDetector(build_config(bpm_sync_enabled=False))
        events = run_frames(detector, pulse_train(40, every=100))
        self.assertEqual(len(events), 1)
        self.assertAlmostEqual(events[0].timestamp, 0.5)
        self.assertGreaterEqual(events[0].votes, 2)
        self.assertAlmostEqual(events[0].intensity, 1.0)
        self.assertFalse(events[0].locked)

    def test_detected_beats_log_at_debug(self):
        detector = BeatDetector(build_config(bpm_sync_enabled=False))
        with mock.patch("beat_detector.log_event") as log_event_mock:
            events = run_frames(detector, pulse_train(40, every=100))
        self.assertEqual(len(events), 1)
        beat_logs = [c for c in log_event_mock.call_args_list if c.args[2] == "Beat detected"]
        self.assertEqual(len(beat_logs), 1)
        self.assertEqual(beat_logs[0].args[0], "DEBUG")

    def test_no_flux_vote_before_history_warms_up(self):
        cfg = build_config(use_energy_spikes=False, use_onset_detection=False, bpm_sync_enabled=False)
        detector = BeatDetector(cfg)
        # 30% of 50 = 15 samples required; the hit arrives on the 10th
        events = run_frames(detector, pulse_train(12, every=100, first=9))
        self.assertEqual(events, [])

    def test_intensity_relative_to_flux_history(self):
        detector = BeatDetector(build_config(bpm_sync_enabled=False))
        frames = [(i, SILENT) for i in range(90)]
        frames[30] = (30, LOUD)
        frames[60] = (60, np.full(BINS, 20.0 * math.log10(0.5)))
        events = run_frames(detector, frames)
        self.assertEqual(len(events), 2)
        self.assertAlmostEqual(events[0].intensity, 1.0)
        self.assertAlmostEqual(events[1].intensity, 0.5, places=6)

    def test_beats_respect_min_separation(self):
        cfg = build_config(bpm_sync_enabled=False)
        detector = BeatDetector(cfg)
        # hits every 1/6 s, faster than the 0.35 s floor
        events = run_frames(detector, pulse_train(600, every=10))
        self.assertGreater(len(events), 5)
        gaps = np.diff([e.timestamp for e in events])
        self.assertTrue(np.all(gaps > cfg.min_beat_separation))

    def test_single_vote_needs_wider_gap(self):
        cfg = build_config(use_energy_spikes=False, use_onset_detection=False, bpm_sync_enabled=False)
        detector = BeatDetector(cfg)
        events = run_frames(detector, pulse_train(600, every=10))
        self.assertGreater(len(events), 3)
        self.assertTrue(all(e.votes == 1 for e in events))
        gaps = np.diff([e.timestamp for e in events])
        self.assertTrue(np.all(gaps > 1.5 * cfg.min_beat_separation))

    def test_random_spectra_respect_separation(self):
        rng = np.random.default_rng(7)
        for mode in ('low', 'medium', 'high'):
            with self.subTest(mode=mode):
                cfg = build_config(sensitivity_mode=mode, bpm_sync_enabled=False)
                detector = BeatDetector(cfg)
                frames = ((i, rng.uniform(-90.0, 0.0, BINS)) for i in range(900))
                events = run_frames(detector, frames)
                gaps = np.diff([e.timestamp for e in events])
                self.assertTrue(np.all(gaps > cfg.min_beat_separation))

    def test_history_buffers_are_bounded(self):
        cfg = build_config(history_size=20)
        detector = BeatDetector(cfg)
        run_frames(detector, ((i, LOUD) for i in range(100)))
        self.assertEqual(len(detector.flux_history), 20)
        self.assertEqual(len(detector.energy_history), 20)
        self.assertEqual(len(detector.bass_energy_history), 20)


class TestTempoLock(BeatDetectorTestCase):
    def test_locks_once_after_beats_to_analyze(self):
        cfg = build_config(beats_to_analyze=8)
        detector = BeatDetector(cfg)
        # hits every 0.5 s starting at 0.5 s; 8th hit at 4.0 s
        events = run_frames(detector, pulse_train(241, every=30))

        self.assertEqual(len(events), 8)
        self.assertTrue(all(not e.locked for e in events))
        self.assertIsInstance(detector.tempo.state, Locked)
        self.assertAlmostEqual(detector.tempo.bpm, 120.0, places=6)
        self.assertAlmostEqual(detector.last_beat_time, 4.0)
        self.assertAlmostEqual(detector.tempo.state.next_scheduled_beat,
                               detector.last_beat_time + 60.0 / detector.tempo.bpm)

    def test_stays_unlocked_when_sync_disabled(self):
        detector = BeatDetector(build_config(bpm_sync_enabled=False))
        run_frames(detector, pulse_train(600, every=30))
        self.assertIsInstance(detector.tempo.state, Unlocked)
        self.assertGreaterEqual(detector.beats_detected, 10)

    def test_locked_schedule_ignores_spectrum(self):
        detector = BeatDetector(build_config(beats_to_analyze=8))
        run_frames(detector, pulse_train(241, every=30))
        self.assertTrue(detector.locked)
        t0 = detector.tempo.state.next_scheduled_beat

        rng = np.random.default_rng(3)
        frames = []
        for i in range(241, 241 + 300):
            spectrum = rng.uniform(-90.0, 0.0, BINS) if i % 2 else SILENT
            frames.append((i, spectrum))
        events = run_frames(detector, frames)

        expected = [t0 + n * 0.5 for n in range(len(events))]
        self.assertGreaterEqual(len(events), 9)
        for event, t in zip(events, expected):
            self.assertAlmostEqual(event.timestamp, t)
            self.assertTrue(event.locked)
            self.assertEqual(event.intensity, LOCKED_INTENSITY)
            self.assertAlmostEqual(event.bpm, 120.0, places=6)
        self.assertAlmostEqual(detector.last_beat_time, events[-1].timestamp)

    def test_locked_mode_keeps_updating_history(self):
        detector = BeatDetector(build_config(beats_to_analyze=8, history_size=50))
        run_frames(detector, pulse_train(241, every=30))
        before = detector.frames_processed
        run_frames(detector, ((i, LOUD) for i in range(241, 261)))
        self.assertEqual(detector.frames_processed, before + 20)
        self.assertEqual(detector.flux_history.recent(1), [0.0])
        self.assertGreater(detector.energy_history.recent(1)[0], 0.0)

    def test_locked_schedule_fires_one_beat_per_tick(self):
        detector = BeatDetector(build_config())
        detector.tempo.state = Locked(bpm=120.0, next_scheduled_beat=1.0)
        first = detector.process_frame(SILENT, 2.2)
        second = detector.process_frame(SILENT, 2.21)
        self.assertEqual(first.timestamp, 1.0)
        self.assertEqual(second.timestamp, 1.5)


if __name__ == "__main__":
    unittest.main()

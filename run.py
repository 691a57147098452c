#!/usr/bin/env python3
"""
beatlock - real-time beat detection with tempo lock

Plays an audio file and logs every beat the engine emits, first detected
from the spectrum and, once the tempo locks, on the predicted clock.
"""

import argparse
import cProfile
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from audio_engine import AudioEngine, PipelineSetupError
from config import BeatDetectorConfig, SensitivityMode
from config_persistence import load_config
from logging_utils import log_event, set_log_level


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run beatlock on an audio file")
    parser.add_argument("file", nargs="?", type=Path, help="Audio file to play (wav, flac, ogg, ...)")
    parser.add_argument("--config", type=Path, default=None,
                        help="JSON file of config overrides (default: ~/.beatlock/config.json)")
    parser.add_argument("--sensitivity", choices=[m.value for m in SensitivityMode], default=None,
                        help="Sensitivity preset (sets threshold and separation)")
    parser.add_argument("--min-separation", type=float, default=None,
                        help="Minimum seconds between detected beats")
    parser.add_argument("--threshold", type=float, default=None,
                        help="Adaptive threshold multiplier k")
    parser.add_argument("--beats-to-analyze", type=int, default=None,
                        help="Confirmed beats required before a tempo lock attempt")
    parser.add_argument("--no-bpm-sync", action="store_true",
                        help="Never lock tempo; keep detecting from the spectrum")
    parser.add_argument("--highpass", type=float, default=0.0,
                        help="High-pass cutoff (Hz) on the analysis path, 0 = off")
    parser.add_argument("--device", type=int, default=None, help="Output device index")
    parser.add_argument("--fps", type=float, default=60.0, help="Analysis ticks per second")
    parser.add_argument("--list-devices", action="store_true", help="List output devices and exit")
    parser.add_argument("--log-level", default="INFO", help="DEBUG/INFO/WARNING/ERROR")
    parser.add_argument(
        "--profile",
        action="store_true",
        help="Enable cProfile and save stats to --profile-out",
    )
    parser.add_argument(
        "--profile-out",
        default="profile.prof",
        help="Path to save cProfile stats (default: profile.prof)",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> BeatDetectorConfig:
    return load_config(
        args.config,
        sensitivity_mode=args.sensitivity,
        min_beat_separation=args.min_separation,
        energy_threshold=args.threshold,
        beats_to_analyze=args.beats_to_analyze,
        bpm_sync_enabled=False if args.no_bpm_sync else None,
    )


def on_beat(timestamp: float, intensity: float) -> None:
    log_event("INFO", "Beat", "Beat", t=f"{timestamp:.3f}", intensity=f"{intensity:.2f}")


def list_devices() -> int:
    from media_player import list_output_devices

    for d in list_output_devices():
        log_event("INFO", "Devices", "Output device", index=d['index'], name=d['name'],
                  outputs=d['outputs'], sample_rate=d['sample_rate'])
    return 0


def play_file(args: argparse.Namespace) -> int:
    # media_player loads PortAudio; import only when actually playing
    from media_player import FilePlayer

    config = config_from_args(args)
    player = FilePlayer(args.file, device=args.device, highpass_hz=args.highpass)
    engine = AudioEngine(config, on_beat)
    try:
        engine.start(player)
    except PipelineSetupError as e:
        log_event("ERROR", "Run", "Beat detection unavailable", error=e)
        player.close()
        return 1

    player.play()
    started = time.perf_counter()
    try:
        engine.run(fps=args.fps, stop_when=lambda: player.finished)
    except KeyboardInterrupt:
        log_event("INFO", "Run", "Interrupted")
    finally:
        engine.stop()
        player.close()

    log_event("INFO", "Run", "Done", seconds=f"{time.perf_counter() - started:.1f}",
              locked=engine.locked, bpm=f"{engine.bpm:.1f}")
    return 0


def run_app(args: argparse.Namespace) -> int:
    if args.list_devices:
        return list_devices()
    return play_file(args)


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    set_log_level(args.log_level)

    if not args.list_devices and args.file is None:
        parser.error("an audio file is required unless --list-devices is given")

    if args.profile:
        profiler = cProfile.Profile()
        profiler.enable()
        exit_code = run_app(args)
        profiler.disable()
        profiler.dump_stats(args.profile_out)
    else:
        exit_code = run_app(args)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()

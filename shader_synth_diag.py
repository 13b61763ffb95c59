#!/usr/bin/env python3
"""Offline diagnostic renderer for the shader synth.

Renders scenarios (voice-table configurations) to WAV files and analyzes
spectral/temporal characteristics of each voice for tuning purposes.

Usage:
    python3 shader_synth_diag.py                           # all scenarios
    python3 shader_synth_diag.py --scenarios reference one_shot
    python3 shader_synth_diag.py --config voices.json      # custom voice table
    python3 shader_synth_diag.py --no-wav                  # report only
    python3 shader_synth_diag.py --duration 4.0            # longer renders
    python3 shader_synth_diag.py --parallel                # thread-pool mix render
    python3 shader_synth_diag.py --play reference          # listen (needs PyAudio)
    python3 shader_synth_diag.py --play reference --volume 0.3
"""
from __future__ import annotations

import argparse
import json
import logging
import math
import sys
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from scipy.io import wavfile

from shader_synth import (
    DEFAULT_CONFIG,
    VOICE_TABLE,
    SynthConfig,
    SynthConfigError,
    SynthPlayer,
    VoiceSpec,
    render_layers,
    render_parallel,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

DEFAULT_DURATION: float = 2.0
DEFAULT_OUTPUT_DIR: str = "diag_output"
MIX_LAYER: str = "mix"
CLIP_LEVEL: float = 1.0

# Frequency band boundaries for spectral analysis (Hz)
BAND_LOW: tuple[float, float] = (20.0, 200.0)
BAND_MID: tuple[float, float] = (200.0, 1000.0)
BAND_HIGH: tuple[float, float] = (1000.0, 4000.0)
BAND_PRESENCE: tuple[float, float] = (4000.0, 10000.0)

BANDS: dict[str, tuple[float, float]] = {
    "low": BAND_LOW,
    "mid": BAND_MID,
    "high": BAND_HIGH,
    "presence": BAND_PRESENCE,
}


# ═══════════════════════════════════════════════════════════════════════
#  Scenario Definitions
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ScenarioDefinition:
    """A named synth configuration for diagnostic rendering."""
    name: str
    description: str
    config: SynthConfig


SCENARIOS: dict[str, ScenarioDefinition] = {
    "reference": ScenarioDefinition(
        name="reference",
        description="Reference stream: each voice retriggers once per duration",
        config=replace(DEFAULT_CONFIG, loop_notes=True),
    ),
    "one_shot": ScenarioDefinition(
        name="one_shot",
        description="Default voice table, every note sounds once from t=0",
        config=DEFAULT_CONFIG,
    ),
    "half_speed": ScenarioDefinition(
        name="half_speed",
        description="speed=2.0, every note twice as long",
        config=replace(DEFAULT_CONFIG, speed=2.0),
    ),
    "double_speed": ScenarioDefinition(
        name="double_speed",
        description="speed=0.5, every note half as long",
        config=replace(DEFAULT_CONFIG, speed=0.5),
    ),
    "degenerate": ScenarioDefinition(
        name="degenerate",
        description="Extra zero-duration voice (NaN at t=0), sanitized at the mixer",
        config=replace(
            DEFAULT_CONFIG,
            sanitize=True,
            voices=VOICE_TABLE + (VoiceSpec("A", 0.0, 0.5, 330.0),),
        ),
    ),
}


# ═══════════════════════════════════════════════════════════════════════
#  Offline Renderer
# ═══════════════════════════════════════════════════════════════════════

class OfflineRenderer:
    """Renders a configuration offline, without PyAudio."""

    def __init__(self, config: SynthConfig, parallel: bool = False,
                 workers: Optional[int] = None) -> None:
        self.config = config
        self.parallel = parallel
        self.workers = workers

    def render(self, duration_secs: float = DEFAULT_DURATION) -> dict[str, NDArray[np.float32]]:
        """Render per-voice layers plus the mix.

        Returns dict keyed by voice label, with the mix under "mix".
        """
        total_samples = max(0, int(duration_secs * self.config.sample_rate))
        layers = render_layers(total_samples, self.config)
        result: dict[str, NDArray[np.float32]] = dict(layers.voices)
        if self.parallel:
            result[MIX_LAYER] = render_parallel(total_samples, self.config, workers=self.workers)
        else:
            result[MIX_LAYER] = layers.mix
        return result


# ═══════════════════════════════════════════════════════════════════════
#  Audio Analysis
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LayerMetrics:
    """Analysis metrics for a single voice or the mix."""
    rms: float
    rms_db: float
    peak: float
    spectral_centroid_hz: float
    crest_factor: float
    onset_sharpness_ms: float  # -1.0 if not applicable
    band_energy: dict[str, float]  # band name → dB
    nonfinite_count: int = 0


@dataclass(frozen=True)
class ScenarioMetrics:
    """Full analysis for one scenario."""
    scenario_name: str
    layers: dict[str, LayerMetrics]
    clip_fraction: float
    loudest_voice: str


class AudioAnalyzer:
    """Compute diagnostic metrics from rendered audio arrays."""

    def __init__(self, sample_rate: int = DEFAULT_CONFIG.sample_rate) -> None:
        self.sample_rate = sample_rate

    def analyze_scenario(
        self,
        scenario_name: str,
        layers: dict[str, NDArray[np.float32]],
    ) -> ScenarioMetrics:
        """Analyze every layer of one scenario render."""
        layer_metrics: dict[str, LayerMetrics] = {}
        for name, signal in layers.items():
            layer_metrics[name] = self.analyze_layer(signal, measure_onset=(name == MIX_LAYER))

        mix = layers.get(MIX_LAYER)
        clip = 0.0
        if mix is not None and len(mix) > 0:
            clean = np.nan_to_num(mix.astype(np.float64), nan=0.0, posinf=0.0, neginf=0.0)
            clip = float(np.mean(np.abs(clean) > CLIP_LEVEL))

        voices = {k: v for k, v in layer_metrics.items() if k != MIX_LAYER}
        loudest = max(voices, key=lambda k: voices[k].rms) if voices else ""

        return ScenarioMetrics(
            scenario_name=scenario_name,
            layers=layer_metrics,
            clip_fraction=clip,
            loudest_voice=loudest,
        )

    def analyze_layer(
        self, signal: NDArray[np.float32], measure_onset: bool = False,
    ) -> LayerMetrics:
        """Compute all metrics for a single layer. Non-finite samples count as silence."""
        finite = np.isfinite(signal)
        nonfinite = int(len(signal) - np.count_nonzero(finite))
        clean = np.where(finite, signal, 0.0).astype(np.float32)

        rms = self._rms(clean)
        rms_db = 20.0 * math.log10(max(rms, 1e-10))
        peak = float(np.max(np.abs(clean))) if len(clean) else 0.0
        centroid = self._spectral_centroid(clean)
        crest = self._crest_factor(clean, rms)
        onset = self._onset_sharpness(clean) if measure_onset else -1.0
        bands = self._band_energy(clean)

        return LayerMetrics(
            rms=rms,
            rms_db=rms_db,
            peak=peak,
            spectral_centroid_hz=centroid,
            crest_factor=crest,
            onset_sharpness_ms=onset,
            band_energy=bands,
            nonfinite_count=nonfinite,
        )

    @staticmethod
    def _rms(signal: NDArray[np.float32]) -> float:
        """Root mean square of the signal."""
        if len(signal) == 0:
            return 0.0
        return float(np.sqrt(np.mean(signal.astype(np.float64) ** 2)))

    def _spectral_centroid(self, signal: NDArray[np.float32]) -> float:
        """Frequency-domain brightness: weighted mean of frequency bins."""
        if len(signal) < 2:
            return 0.0
        windowed = signal * np.hanning(len(signal)).astype(np.float32)
        fft_mag = np.abs(np.fft.rfft(windowed))
        freqs = np.fft.rfftfreq(len(signal), d=1.0 / self.sample_rate)
        total = float(np.sum(fft_mag))
        if total < 1e-10:
            return 0.0
        return float(np.sum(freqs * fft_mag) / total)

    @staticmethod
    def _crest_factor(signal: NDArray[np.float32], rms: float) -> float:
        """Peak / RMS: punchiness vs compression."""
        if len(signal) == 0 or rms < 1e-10:
            return 0.0
        peak = float(np.max(np.abs(signal)))
        return peak / rms

    def _onset_sharpness(self, signal: NDArray[np.float32]) -> float:
        """Median time from onset threshold to peak, in milliseconds.

        Returns -1.0 if no clear onsets are detected.
        """
        if len(signal) < 200:
            return -1.0

        window = min(100, len(signal) // 4)
        kernel = np.ones(window, dtype=np.float32) / window
        env = np.convolve(np.abs(signal), kernel, mode="same")

        peak_env = float(np.max(env))
        if peak_env < 1e-8:
            return -1.0

        threshold = 0.2 * peak_env
        above = env > threshold
        crossings = list(np.where(np.diff(above.astype(np.int8)) > 0)[0])
        # Notes start at t=0: a signal already above threshold there is an onset too
        if above[0]:
            crossings.insert(0, 0)

        onset_times: list[float] = []
        for cross_idx in crossings:
            search_end = min(cross_idx + int(0.1 * self.sample_rate), len(env))
            if search_end <= cross_idx + 1:
                continue
            segment = env[cross_idx:search_end]
            local_peak_offset = int(np.argmax(segment))
            if local_peak_offset > 0:
                onset_times.append((local_peak_offset / self.sample_rate) * 1000.0)

        if not onset_times:
            return -1.0
        return float(np.median(onset_times))

    def _band_energy(self, signal: NDArray[np.float32]) -> dict[str, float]:
        """Energy in frequency bands, reported in dB."""
        if len(signal) < 2:
            return {name: -100.0 for name in BANDS}

        fft_mag = np.abs(np.fft.rfft(signal.astype(np.float64)))
        freqs = np.fft.rfftfreq(len(signal), d=1.0 / self.sample_rate)

        result: dict[str, float] = {}
        for name, (lo, hi) in BANDS.items():
            mask = (freqs >= lo) & (freqs < hi)
            energy = float(np.sum(fft_mag[mask] ** 2))
            result[name] = 10.0 * math.log10(max(energy, 1e-10))
        return result


# ═══════════════════════════════════════════════════════════════════════
#  Report Formatting
# ═══════════════════════════════════════════════════════════════════════

def format_report(
    all_metrics: list[ScenarioMetrics],
    duration: float = DEFAULT_DURATION,
    sample_rate: int = DEFAULT_CONFIG.sample_rate,
    descriptions: Optional[dict[str, str]] = None,
) -> str:
    """Format analysis results into a structured text report."""
    descriptions = descriptions or {}
    lines: list[str] = []
    sep = "=" * 79

    lines.append(sep)
    lines.append("SHADER SYNTH DIAGNOSTIC REPORT")
    lines.append(f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}")
    lines.append(f"Duration per scenario: {duration}s @ {sample_rate} Hz")
    lines.append(sep)
    lines.append("")

    for sm in all_metrics:
        scenario_def = SCENARIOS.get(sm.scenario_name)
        desc = descriptions.get(sm.scenario_name) or (scenario_def.description if scenario_def else "")

        lines.append(f"SCENARIO: {sm.scenario_name}")
        if desc:
            lines.append(f"  {desc}")
        lines.append("")

        lines.append("  Layer               RMS (dB)    Peak  Centroid   Crest   Onset ms")
        lines.append("  " + "-" * 68)
        for layer_name, lm in sm.layers.items():
            onset_str = f"{lm.onset_sharpness_ms:7.1f}" if lm.onset_sharpness_ms >= 0 else "     --"
            lines.append(
                f"  {layer_name:<18s}  {lm.rms_db:8.1f}  {lm.peak:6.3f}  {lm.spectral_centroid_hz:6.0f} Hz"
                f"  {lm.crest_factor:5.1f}   {onset_str}"
            )
        lines.append("")

        clip_flag = " [!]" if sm.clip_fraction > 0.0 else ""
        lines.append(
            f"  Clipped: {sm.clip_fraction * 100:.2f}%{clip_flag}   "
            f"Loudest voice: {sm.loudest_voice or '--'}"
        )
        for layer_name, lm in sm.layers.items():
            if lm.nonfinite_count:
                lines.append(f"  Non-finite samples in {layer_name}: {lm.nonfinite_count} [!]")
        lines.append("")

        lines.append("  Band Energy (dB):")
        lines.append("  Layer                   Low      Mid     High  Presence")
        lines.append("  " + "-" * 56)
        for layer_name, lm in sm.layers.items():
            be = lm.band_energy
            lines.append(
                f"  {layer_name:<18s}  {be.get('low', -100):7.1f}  {be.get('mid', -100):7.1f}"
                f"  {be.get('high', -100):7.1f}  {be.get('presence', -100):8.1f}"
            )
        lines.append("")
        lines.append("")

    # Cross-scenario summary
    lines.append(sep)
    lines.append("CROSS-SCENARIO SUMMARY (mix)")
    lines.append(sep)
    lines.append("")
    lines.append(f"  {'Scenario':<16s}  {'RMS dB':>8s}  {'Peak':>7s}  {'Clip %':>7s}  {'Centroid':>9s}")
    lines.append("  " + "-" * 55)
    for sm in all_metrics:
        lm = sm.layers.get(MIX_LAYER)
        if lm is None:
            continue
        lines.append(
            f"  {sm.scenario_name:<16s}  {lm.rms_db:8.1f}  {lm.peak:7.3f}"
            f"  {sm.clip_fraction * 100:7.2f}  {lm.spectral_centroid_hz:6.0f} Hz"
        )

    lines.append("")
    lines.append(f"[!] = samples beyond ±{CLIP_LEVEL:g} (device will clip) or non-finite samples")
    lines.append("")
    lines.append(sep)

    return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════
#  Config files
# ═══════════════════════════════════════════════════════════════════════

def load_config(path: Path) -> SynthConfig:
    """Load a SynthConfig from a JSON object file."""
    try:
        data = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise SynthConfigError(f"cannot read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise SynthConfigError(f"config {path} must contain a JSON object")
    return SynthConfig.from_dict(data)


# ═══════════════════════════════════════════════════════════════════════
#  WAV Output
# ═══════════════════════════════════════════════════════════════════════

def _wav_name(scenario_name: str, layer_name: str) -> str:
    safe = "".join(c if c.isalnum() or c in "._-" else "_" for c in layer_name)
    return f"{scenario_name}_{safe}.wav"


def write_wavs(
    output_dir: Path,
    scenario_name: str,
    layers: dict[str, NDArray[np.float32]],
    sample_rate: int = DEFAULT_CONFIG.sample_rate,
) -> list[Path]:
    """Write per-voice and mix WAVs. Returns list of written paths."""
    output_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []

    for layer_name, audio in layers.items():
        path = output_dir / _wav_name(scenario_name, layer_name)

        clean = np.nan_to_num(audio.astype(np.float32), nan=0.0, posinf=0.0, neginf=0.0)
        # Normalize to prevent clipping
        peak = float(np.max(np.abs(clean))) if len(clean) else 0.0
        if peak > 1e-8:
            normalized = (clean / peak * 0.95).astype(np.float32)
        else:
            normalized = clean

        try:
            wavfile.write(str(path), sample_rate, normalized)
            written.append(path)
        except (OSError, ValueError) as e:
            logger.error("failed to write %s: %s", path, e)

    return written


# ═══════════════════════════════════════════════════════════════════════
#  Playback
# ═══════════════════════════════════════════════════════════════════════

def play_scenario(config: SynthConfig, duration: float, volume: float = 0.5) -> bool:
    """Play a configuration through the default output device. Blocks until done."""
    player = SynthPlayer(config, duration=duration, master_volume=volume)
    if not player.start():
        return False
    try:
        while player.is_running and not player.finished:
            print(f"\r  {player.status_string()}  ", end="", flush=True)
            time.sleep(0.05)
        print(f"\r  {player.status_string()}  ", flush=True)
        # let the device drain the last buffer
        time.sleep(0.2)
    finally:
        player.stop()
    return True


# ═══════════════════════════════════════════════════════════════════════
#  Main
# ═══════════════════════════════════════════════════════════════════════

def main(argv: Optional[list[str]] = None) -> None:
    """Run the full diagnostic pipeline."""
    parser = argparse.ArgumentParser(
        description="Shader synth diagnostic renderer and analyzer",
    )
    parser.add_argument(
        "--scenarios", nargs="*", default=None,
        help=f"Specific scenarios to run (default: all). Choices: {', '.join(SCENARIOS.keys())}",
    )
    parser.add_argument(
        "--config", type=Path, default=None, metavar="FILE",
        help="Render a voice table from a JSON config file as an extra scenario",
    )
    parser.add_argument(
        "--output-dir", type=Path, default=Path(DEFAULT_OUTPUT_DIR),
        help=f"Directory for WAV output (default: {DEFAULT_OUTPUT_DIR})",
    )
    parser.add_argument(
        "--no-wav", action="store_true",
        help="Skip WAV output, only print report",
    )
    parser.add_argument(
        "--duration", type=float, default=DEFAULT_DURATION,
        help=f"Seconds per scenario (default: {DEFAULT_DURATION})",
    )
    parser.add_argument(
        "--parallel", action="store_true",
        help="Render the mix on a thread pool",
    )
    parser.add_argument(
        "--play", default=None, metavar="SCENARIO",
        help="Play one rendered scenario through the default output device",
    )
    parser.add_argument(
        "--volume", type=float, default=0.5,
        help="Playback master volume, 0.0 to 1.0 (default: 0.5)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    # name -> (description, config)
    selected: dict[str, tuple[str, SynthConfig]] = {}

    if args.config is not None:
        if not args.config.exists():
            print(f"Error: file not found: {args.config}", file=sys.stderr)
            sys.exit(1)
        try:
            custom = load_config(args.config)
        except SynthConfigError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        selected[args.config.stem] = (f"Loaded from {args.config}", custom)

    # Run crafted scenarios unless the user only asked for a config file
    run_crafted = args.scenarios is not None or args.config is None
    if run_crafted:
        scenario_names: list[str] = args.scenarios if args.scenarios else list(SCENARIOS.keys())
        for name in scenario_names:
            if name not in SCENARIOS:
                print(f"Error: unknown scenario '{name}'. Choose from: {', '.join(SCENARIOS.keys())}",
                      file=sys.stderr)
                sys.exit(1)
            selected[name] = (SCENARIOS[name].description, SCENARIOS[name].config)

    if args.play is not None and args.play not in selected:
        print(f"Error: cannot play '{args.play}'. Choose from: {', '.join(selected)}",
              file=sys.stderr)
        sys.exit(1)

    if not 0.0 <= args.volume <= 1.0:
        print(f"Error: --volume must be between 0.0 and 1.0, got {args.volume}", file=sys.stderr)
        sys.exit(1)

    all_metrics: list[ScenarioMetrics] = []
    descriptions: dict[str, str] = {}

    for name, (desc, config) in selected.items():
        print(f"  Rendering: {name}...", end="", flush=True)
        renderer = OfflineRenderer(config, parallel=args.parallel)
        layers = renderer.render(duration_secs=args.duration)
        print(" analyzing...", end="", flush=True)

        analyzer = AudioAnalyzer(config.sample_rate)
        all_metrics.append(analyzer.analyze_scenario(name, layers))
        descriptions[name] = desc

        if not args.no_wav:
            written = write_wavs(args.output_dir, name, layers, config.sample_rate)
            print(f" wrote {len(written)} WAVs.", flush=True)
        else:
            print(" done.", flush=True)

    print()
    sample_rates = {config.sample_rate for _, config in selected.values()}
    report_rate = sample_rates.pop() if len(sample_rates) == 1 else DEFAULT_CONFIG.sample_rate
    report = format_report(all_metrics, duration=args.duration,
                           sample_rate=report_rate, descriptions=descriptions)
    print(report)

    if not args.no_wav:
        report_path = args.output_dir / "analysis_report.txt"
        try:
            report_path.write_text(report)
            print(f"\nReport saved to: {report_path}")
        except OSError as e:
            print(f"\nFailed to save report: {e}", file=sys.stderr)

    if args.play is not None:
        print(f"\nPlaying: {args.play}...", flush=True)
        if not play_scenario(selected[args.play][1], args.duration, args.volume):
            print("Playback unavailable (PyAudio missing or no output device)", file=sys.stderr)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Profiling harness for the shader synth.

Renders the voice table headlessly under cProfile, then prints a ranked
breakdown of where time is spent. Block timing mode measures each
callback-sized render against the real-time budget instead.

Usage:
  python3 shader_synth_bench.py                   # 10 s of audio, summary
  python3 shader_synth_bench.py -s 60             # 60 s of audio
  python3 shader_synth_bench.py --line-timing     # per-block timing vs real-time budget
  python3 shader_synth_bench.py --workers 8       # thread-pool width for the parallel pass
  python3 shader_synth_bench.py --dump prof.out   # dump cProfile binary for snakeviz etc.
"""

from __future__ import annotations

import argparse
import cProfile
import logging
import pstats
import sys
import time
from io import StringIO
from typing import Optional

import numpy as np

from shader_synth import (
    BUFFER_SIZE,
    DEFAULT_CONFIG,
    SynthConfig,
    SynthConfigError,
    render_parallel,
    render_samples,
)

logger = logging.getLogger(__name__)


def time_render_paths(
    n_samples: int,
    config: SynthConfig = DEFAULT_CONFIG,
    workers: Optional[int] = None,
) -> dict[str, float]:
    """
    Render the same index range sequentially and on the thread pool.

    Returns a dict of path → seconds.
    """
    timings: dict[str, float] = {}

    t0 = time.perf_counter()
    sequential = render_samples(n_samples, config)
    timings["render_samples"] = time.perf_counter() - t0

    t0 = time.perf_counter()
    parallel = render_parallel(n_samples, config, workers=workers)
    timings["render_parallel"] = time.perf_counter() - t0

    if not np.array_equal(sequential, parallel, equal_nan=True):
        logger.error("parallel render diverged from sequential render")

    return timings


def time_blocks(
    n_samples: int,
    config: SynthConfig = DEFAULT_CONFIG,
    block_size: int = BUFFER_SIZE,
) -> list[float]:
    """Render callback-sized blocks in order; seconds per block."""
    block_times: list[float] = []
    for start in range(0, n_samples, block_size):
        n = min(block_size, n_samples - start)
        t0 = time.perf_counter()
        render_samples(n, config, start_index=start)
        block_times.append(time.perf_counter() - t0)
    return block_times


def stats_line(name: str, data: list[float]) -> str:
    arr = np.array(data) * 1000  # to ms
    return (f"{name:<25} {arr.mean():8.3f} {np.median(arr):8.3f} "
            f"{np.percentile(arr, 95):8.3f} {np.percentile(arr, 99):8.3f} "
            f"{arr.max():8.3f}")


def run_benchmark(
    seconds: float,
    config: SynthConfig = DEFAULT_CONFIG,
    block_size: int = BUFFER_SIZE,
    line_timing: bool = False,
    workers: Optional[int] = None,
    dump_path: str | None = None,
) -> None:
    """Run the benchmark for `seconds` of audio and report results."""
    n_samples = max(1, int(seconds * config.sample_rate))

    print(f"Audio: {seconds:.1f}s @ {config.sample_rate} Hz  "
          f"Samples: {n_samples:,}  Voices: {len(config.voices)}")
    print(f"Block: {block_size} samples  Workers: {workers or 'auto'}")
    print()

    # ── Per-block timing ───────────────────────────────────────────
    if line_timing:
        block_times = time_blocks(n_samples, config, block_size)

        print("=== Per-Block Render Timing (ms) ===")
        print(f"{'Component':<25} {'Mean':>8} {'P50':>8} {'P95':>8} {'P99':>8} {'Max':>8}")
        print("-" * 73)
        print(stats_line("render_samples(block)", block_times))

        budget_ms = block_size / config.sample_rate * 1000.0
        block_arr = np.array(block_times) * 1000
        over_budget = int((block_arr > budget_ms).sum())
        print(f"\nReal-time budget: {budget_ms:.2f}ms/block")
        print(f"Blocks over budget: {over_budget}/{len(block_times)} "
              f"({100 * over_budget / len(block_times):.1f}%)")
        print(f"Headroom (mean): {budget_ms - block_arr.mean():.2f}ms")

        timings = time_render_paths(n_samples, config, workers)
        print()
        for name, dt in timings.items():
            print(f"{name:<25} {dt * 1000:10.1f}ms  "
                  f"({seconds / max(dt, 1e-9):.0f}x real-time)")
        return

    # ── cProfile run ───────────────────────────────────────────────
    def profiled_run() -> None:
        time_render_paths(n_samples, config, workers)

    profiler = cProfile.Profile()
    wall_t0 = time.perf_counter()
    profiler.runctx("profiled_run()", globals(), locals())
    wall_dt = time.perf_counter() - wall_t0

    print(f"Wall time: {wall_dt:.2f}s  (both render paths)")
    print(f"Throughput: {2 * n_samples / wall_dt:,.0f} samples/s")
    print()

    if dump_path:
        profiler.dump_stats(dump_path)
        print(f"Profile data saved to: {dump_path}")
        print(f"  View with: python3 -m pstats {dump_path}")
        print()

    buf = StringIO()
    ps = pstats.Stats(profiler, stream=buf)
    ps.sort_stats("cumulative")
    ps.print_stats(40)
    print(buf.getvalue())

    buf2 = StringIO()
    ps2 = pstats.Stats(profiler, stream=buf2)
    ps2.sort_stats("tottime")
    ps2.print_stats(30)
    print("\n=== By Self-Time (tottime) ===")
    print(buf2.getvalue())


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Profile the shader synth")
    parser.add_argument("-s", "--seconds", type=float, default=10.0,
                        help="Seconds of audio to render (default: 10)")
    parser.add_argument("--sample-rate", type=int, default=DEFAULT_CONFIG.sample_rate,
                        help=f"Sample rate in Hz (default: {DEFAULT_CONFIG.sample_rate})")
    parser.add_argument("--block-size", type=int, default=BUFFER_SIZE,
                        help=f"Samples per callback block (default: {BUFFER_SIZE})")
    parser.add_argument("--workers", type=int, default=None,
                        help="Thread-pool width for render_parallel (default: executor default)")
    parser.add_argument("--line-timing", action="store_true",
                        help="Per-block timing instead of cProfile")
    parser.add_argument("--dump", type=str, default=None,
                        help="Dump cProfile binary to this path")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = SynthConfig(sample_rate=args.sample_rate)
    except SynthConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    run_benchmark(
        seconds=args.seconds,
        config=config,
        block_size=args.block_size,
        line_timing=args.line_timing,
        workers=args.workers,
        dump_path=args.dump,
    )


if __name__ == "__main__":
    main()

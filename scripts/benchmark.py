"""
scripts/benchmark.py — Throughput and memory benchmark on a synthetic dataset.

Writes N random PNGs into a temporary directory, runs the full pipeline over
them, and reports throughput, memory growth and buffer-pool reuse. Exits
non-zero if the pool allocated more buffers than its bound allows or memory
grew beyond the budget.

Usage:
    python scripts/benchmark.py
    python scripts/benchmark.py --images 5000 --format binary --mode performance
"""

from __future__ import annotations

import argparse
import logging
import statistics
import sys
import tempfile
from pathlib import Path

import cv2
import numpy as np

logger = logging.getLogger(__name__)

MAX_MEMORY_GROWTH_MB: float = 64.0


def _setup_logging(level: str = "INFO") -> None:
    """Configure logging for the benchmark script."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )


def _make_dataset(directory: Path, count: int, size: int, seed: int = 0) -> None:
    """Write *count* random ``size × size`` colour PNGs named ``0.png`` … ``N-1.png``."""
    rng = np.random.default_rng(seed)
    for i in range(count):
        pixels = rng.integers(0, 256, size=(size, size, 3), dtype=np.uint8)
        cv2.imwrite(str(directory / f"{i}.png"), pixels)


def run_benchmark(images: int, output_format: str, mode: str, batch_size: int) -> bool:
    """
    Run the pipeline over a synthetic dataset and report results.

    Returns:
        True if the pool and memory constraints held, False otherwise.
    """
    from pixelbatch.core.config import PixelBatchConfig
    from pixelbatch.core.logger import configure_logger
    from pixelbatch.core.pipeline import ConversionPipeline, PipelineEvent

    rates: list[float] = []

    def _on_event(event: PipelineEvent) -> None:
        if event.kind == "progress":
            rates.append(event.payload.images_per_sec)

    with tempfile.TemporaryDirectory(prefix="pixelbatch-bench-") as tmp:
        root = Path(tmp)
        source = root / "images"
        source.mkdir()
        configure_logger(root / "logs")

        config = PixelBatchConfig().with_overrides(
            batch={"output_format": output_format, "output_dir": str(root / "out"),
                   "batch_size": batch_size},
            workload={"thermal_mode": mode},
        )

        print("\n═══ PixelBatch — Throughput Benchmark ═══════════════════")
        print(f"  Images:     {images}")
        print(f"  Geometry:   {config.image.width}x{config.image.height}x{config.image.channels}")
        print(f"  Format:     {output_format}")
        print(f"  Mode:       {mode}")
        print(f"  Batch size: {batch_size}")
        print("═════════════════════════════════════════════════════════\n")

        print("Generating synthetic dataset…", flush=True)
        _make_dataset(source, images, config.image.width)

        pipeline = ConversionPipeline(config, on_event=_on_event)
        summary = pipeline.process_dataset(source, expected_count=images)
        pool = pipeline.pool.stats()
        bytes_out = sum(p.stat().st_size for p in summary.output_files)

    print(f"\n{'─'*55}")
    print(f"  {'converted':<20} {summary.converted:>10d} / {summary.total_files}")
    print(f"  {'batches':<20} {summary.batches_written:>10d}")
    print(f"  {'elapsed':<20} {summary.elapsed_s:>10.2f} s")
    print(f"  {'throughput':<20} {summary.images_per_sec:>10.1f} img/s")
    if rates:
        print(f"  {'median rate':<20} {statistics.median(rates):>10.1f} img/s")
    print(f"  {'final intensity':<20} {summary.final_intensity:>10d}")
    print(f"  {'output size':<20} {bytes_out / 1024 ** 2:>10.2f} MB")
    print(f"  {'memory delta':<20} {summary.memory_delta_mb:>10.2f} MB")
    print(f"  {'pool allocated':<20} {pool['allocated']:>10d}  (cap {pool['capacity']})")
    print(f"  {'pool reused':<20} {pool['reused']:>10d}")
    print(f"{'─'*55}")

    # One full batch plus one in-flight buffer, refilled after each cleanup trim.
    cleanups = max(1, summary.cleanups + 1)
    pool_ok = pool["allocated"] <= (batch_size + 1) * cleanups
    memory_ok = summary.memory_delta_mb <= MAX_MEMORY_GROWTH_MB

    if pool_ok and memory_ok:
        print("\n✅ Pool and memory constraints satisfied!")
    else:
        if not pool_ok:
            print(f"\n❌ Pool allocated {pool['allocated']} buffers — reuse is not happening")
        if not memory_ok:
            print(f"\n❌ Memory grew {summary.memory_delta_mb:.1f} MB > {MAX_MEMORY_GROWTH_MB:.0f} MB")
    return pool_ok and memory_ok


def main() -> None:
    """
    Entry point for the benchmark script.

    Exits with code 0 if constraints pass or code 1 otherwise.
    """
    _setup_logging()

    parser = argparse.ArgumentParser(description="Benchmark PixelBatch throughput and memory")
    parser.add_argument("--images", type=int, default=3000, help="Synthetic images to generate")
    parser.add_argument("--format", choices=["text", "binary"], default="binary")
    parser.add_argument("--mode", choices=["conservative", "performance"], default="conservative")
    parser.add_argument("--batch-size", type=int, default=1000)
    args = parser.parse_args()

    passed = run_benchmark(args.images, args.format, args.mode, args.batch_size)
    sys.exit(0 if passed else 1)


if __name__ == "__main__":
    main()

"""
pixelbatch/cli.py — PixelBatch command-line entry point.

Parses CLI args, loads configuration, runs pre-flight checks, and dispatches
to the pipeline::

    pixelbatch process ./images --expected 60000
    pixelbatch sample ./images --count 10 --format binary
    pixelbatch convert-one ./images/17.png
    pixelbatch inspect output/batch_0000.bin
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import traceback
from pathlib import Path
from typing import Any, Optional

_BANNER = r"""
  ___ _         _ ___       _      _
 | _ (_)_ _____| | _ ) __ _| |_ __| |_
 |  _/ \ \ / -_) | _ \/ _` |  _/ _| ' \
 |_| |_/_\_\___|_|___/\__,_|\__\__|_||_|

     images → ML-ready batch files
"""

#: Exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BAD_INPUT = 2


# ──────────────────────────────────────────────────────────────
# Argument parsing
# ──────────────────────────────────────────────────────────────

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pixelbatch",
        description="Convert a directory of fixed-size images into ML-ready batch files",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--config", default=None, help="Path to pixelbatch.yaml (auto-discovered if omitted)")
    p.add_argument("--format", choices=["text", "binary"], default=None, help="Override batch.output_format")
    p.add_argument("--output-dir", default=None, help="Override batch.output_dir")
    p.add_argument("--batch-size", type=int, default=None, help="Override batch.batch_size")
    p.add_argument(
        "--thermal-mode", choices=["conservative", "performance"], default=None,
        help="Override workload.thermal_mode",
    )
    p.add_argument(
        "--workload", default=None,
        help="Override workload.max_workload_override: auto | disabled | N",
    )
    p.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARN"], default=None,
        help="Minimum log level for stderr output (default: logging.level from config)",
    )
    p.add_argument("--quiet", action="store_true", help="Suppress banner and progress lines")

    sub = p.add_subparsers(dest="command", required=True)

    proc = sub.add_parser("process", help="Convert a full dataset directory")
    proc.add_argument("source", help="Dataset directory")
    proc.add_argument("--expected", type=int, default=None, help="Expected number of images")

    sample = sub.add_parser("sample", help="Convert the first N images (diagnostic)")
    sample.add_argument("source", help="Dataset directory")
    sample.add_argument("--count", type=int, default=10, help="Number of images")

    one = sub.add_parser("convert-one", help="Convert one image and print its statistics")
    one.add_argument("image", help="Image file")

    insp = sub.add_parser("inspect", help="Print the contents summary of a batch file")
    insp.add_argument("batch_file", help="Batch file (.json or .bin)")
    return p


def _apply_overrides(config, args: argparse.Namespace):
    """Fold CLI flags into the loaded config."""
    batch: dict[str, Any] = {}
    workload: dict[str, Any] = {}
    if args.format:
        batch["output_format"] = args.format
    if args.output_dir:
        batch["output_dir"] = args.output_dir
    if args.batch_size is not None:
        batch["batch_size"] = args.batch_size
    if args.thermal_mode:
        workload["thermal_mode"] = args.thermal_mode
    if args.workload:
        workload["max_workload_override"] = args.workload
    sections = {name: values for name, values in (("batch", batch), ("workload", workload)) if values}
    return config.with_overrides(**sections) if sections else config


# ──────────────────────────────────────────────────────────────
# Commands
# ──────────────────────────────────────────────────────────────

def _print_progress(event) -> None:
    if event.kind == "progress":
        r = event.payload
        eta = f"{r.eta_s:6.1f}s" if r.eta_s is not None else "   n/a"
        print(
            f"  {r.processed:>8d}/{r.total:<8d} {r.images_per_sec:8.1f} img/s "
            f"intensity={r.intensity} cpu≈{r.cpu_usage_pct:5.1f}% eta={eta}",
            flush=True,
        )
    elif event.kind == "batch_written":
        print(f"  [OK] batch {event.payload['batch']:04d} → {event.payload['path']}")
    elif event.kind == "batch_failed":
        print(f"  [ERROR] {event.payload}", file=sys.stderr)


def _print_summary(summary) -> None:
    print(f"\n{'─' * 55}")
    for key, value in summary.to_dict().items():
        if key in ("output_files", "warnings"):
            continue
        print(f"  {key:<20} {value}")
    for warning in summary.warnings:
        print(f"  [WARN] {warning}")
    print(f"{'─' * 55}")


def _cmd_process(pipeline, args: argparse.Namespace) -> int:
    summary = pipeline.process_dataset(args.source, expected_count=args.expected)
    _print_summary(summary)
    return EXIT_OK


def _cmd_sample(pipeline, args: argparse.Namespace) -> int:
    summary = pipeline.process_sample(args.source, count=args.count)
    _print_summary(summary)
    return EXIT_OK


def _cmd_convert_one(pipeline, args: argparse.Namespace) -> int:
    record = pipeline.convert_single(args.image)
    data = record.data
    print(json.dumps({
        "id": record.image_id,
        "label": record.label,
        "length": int(data.size),
        "min": float(data.min()),
        "max": float(data.max()),
        "mean": round(float(data.mean()), 6),
        "conversion_time_ms": round(record.conversion_time_ms, 3),
    }, indent=2))
    return EXIT_OK


def _cmd_inspect(args: argparse.Namespace) -> int:
    from pixelbatch.output.reader import read_batch

    loaded = read_batch(args.batch_file)
    info: dict[str, Any] = {"path": str(loaded.path), "records": len(loaded.records)}
    if loaded.header is not None:
        h = loaded.header
        info["header"] = {
            "version": h.version, "image_count": h.image_count,
            "width": h.width, "height": h.height, "channels": h.channels,
        }
    info["first_ids"] = [r.image_id for r in loaded.records[:5]]
    labels: dict[str, int] = {}
    for r in loaded.records:
        labels[r.label] = labels.get(r.label, 0) + 1
    info["labels"] = labels
    print(json.dumps(info, indent=2))
    return EXIT_OK


# ──────────────────────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────────────────────

def main(argv: Optional[list[str]] = None) -> int:
    """Application entry point. Returns process exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    level_map = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING}
    logging.basicConfig(
        level=level_map.get(args.log_level or "INFO", logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
    )

    if args.command == "inspect":
        try:
            return _cmd_inspect(args)
        except (OSError, ValueError) as exc:
            print(f"[ERROR] {exc}", file=sys.stderr)
            return EXIT_BAD_INPUT

    if not args.quiet:
        print(_BANNER)

    from pixelbatch.core.config import load_config
    from pixelbatch.core.constants import C
    from pixelbatch.core.errors import DecodeFailedError, EmptyDatasetError, PathInvalidError
    from pixelbatch.core.logger import configure_logger
    from pixelbatch.core.pipeline import ConversionPipeline

    try:
        config = _apply_overrides(load_config(args.config), args)
    except (OSError, ValueError) as exc:
        print(f"[ERROR] Configuration: {exc}", file=sys.stderr)
        return EXIT_BAD_INPUT

    logging.getLogger().setLevel(level_map.get(args.log_level or config.logging.level, logging.INFO))
    log = configure_logger(Path(config.logging.log_dir), enabled=config.logging.jsonl)
    log.info("main", "args_parsed", {k: v for k, v in vars(args).items() if v is not None})
    C.validate()

    pipeline = ConversionPipeline(config, on_event=None if args.quiet else _print_progress)
    commands = {
        "process": _cmd_process,
        "sample": _cmd_sample,
        "convert-one": _cmd_convert_one,
    }

    def _handle_signal(signum: int, frame: object) -> None:
        print(f"\n[INFO] Received signal {signum} — finishing current chunk…", file=sys.stderr)
        pipeline.request_stop()

    previous = {sig: signal.signal(sig, _handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}

    exit_code = EXIT_OK
    try:
        exit_code = commands[args.command](pipeline, args)
    except (PathInvalidError, EmptyDatasetError, DecodeFailedError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        exit_code = EXIT_BAD_INPUT
    except Exception:  # noqa: BLE001
        tb = traceback.format_exc()
        print(tb, file=sys.stderr)
        log.error("main", "unhandled_exception", {"traceback": tb})
        exit_code = EXIT_ERROR
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        log.flush()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())

"""
pixelbatch/core/pipeline.py — Conversion pipeline orchestrator for PixelBatch.

Drives a run end to end::

    validate path ─► clean outputs ─► scan ─► [chunk ─► normalise ─► batch ─► flush]* ─► summary

Execution is single-threaded and cooperative: the loop yields after every
chunk (sized by the :class:`~pixelbatch.governor.workload.WorkloadGovernor`)
and checks a stop flag there. Per-image and per-batch failures are counted
and reported; only an invalid path or an empty listing aborts a run.
"""

from __future__ import annotations

import gc
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import psutil

from pixelbatch.convert.normalizer import ImageCodec, PixelNormalizer
from pixelbatch.convert.pool import BufferPool
from pixelbatch.core.config import PixelBatchConfig, load_config
from pixelbatch.core.errors import (
    BatchWriteError,
    DecodeFailedError,
    EmptyDatasetError,
    PathInvalidError,
    SizeMismatchError,
)
from pixelbatch.core.logger import get_logger
from pixelbatch.data.dataset import clean_stale_outputs, scan_images, validate_source_path
from pixelbatch.data.labels import LabelLookup, load_labels
from pixelbatch.data.records import Batch, ImageHandle, ImageRecord
from pixelbatch.governor.workload import WorkloadGovernor
from pixelbatch.output.writer import BatchWriter

logger = logging.getLogger(__name__)

#: File prefix used by :meth:`ConversionPipeline.process_sample`.
SAMPLE_PREFIX = "sample"


@dataclass
class PipelineEvent:
    """
    An event emitted by the pipeline for progress displays and diagnostics.

    Attributes:
        kind: One of 'scan', 'progress', 'image_failed', 'batch_written',
              'batch_failed', 'cleanup', 'intensity_changed', 'summary'.
        payload: Data associated with the event.
        timestamp: Monotonic time of event creation.
    """

    kind: str
    payload: object = None
    timestamp: float = field(default_factory=time.monotonic)


# Type alias for event callbacks
EventCallback = Callable[[PipelineEvent], None]


@dataclass(frozen=True)
class ProgressReport:
    """Snapshot published every ``progress_interval`` images."""

    processed: int
    total: int
    images_per_sec: float
    intensity: int
    cpu_usage_pct: float
    eta_s: Optional[float]
    batches_written: int


@dataclass
class RunSummary:
    """
    Totals for one run. Every non-fatal loss is counted here.

    Attributes:
        total_files: Images found by the scan (after any sample limit).
        processed: Images attempted.
        converted: Images converted and added to a batch.
        decode_failures: Images that could not be decoded or resized.
        size_mismatches: Converted vectors with the wrong length.
        duplicate_ids: Records replaced by a later file with the same id.
        io_failures: Batches that could not be written.
        records_lost: Records dropped with failed batches.
        batches_written: Batch files written successfully.
        elapsed_s: Wall time of the run.
        images_per_sec: ``converted / elapsed_s``.
        memory_delta_mb: Process RSS change across the run.
        final_intensity: Governor intensity at the end of the run.
        unlabelled: Images with no entry in the labels document.
        labels_available: False when the labels document could not be used.
        stopped: True when a stop request ended the run early.
        cleanups: Forced cleanup cycles.
        warnings: Human-readable warnings raised during the run.
        output_files: Paths of the written batch files.
    """

    total_files: int = 0
    processed: int = 0
    converted: int = 0
    decode_failures: int = 0
    size_mismatches: int = 0
    duplicate_ids: int = 0
    io_failures: int = 0
    records_lost: int = 0
    batches_written: int = 0
    elapsed_s: float = 0.0
    images_per_sec: float = 0.0
    memory_delta_mb: float = 0.0
    final_intensity: int = 1
    unlabelled: int = 0
    labels_available: bool = True
    stopped: bool = False
    cleanups: int = 0
    warnings: list[str] = field(default_factory=list)
    output_files: list[Path] = field(default_factory=list)

    @property
    def failures(self) -> int:
        """All per-image failures."""
        return self.decode_failures + self.size_mismatches

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe dict for logs and the CLI."""
        data = asdict(self)
        data["output_files"] = [str(p) for p in self.output_files]
        data["elapsed_s"] = round(self.elapsed_s, 3)
        data["images_per_sec"] = round(self.images_per_sec, 2)
        data["memory_delta_mb"] = round(self.memory_delta_mb, 2)
        return data


def process_rss_mb() -> float:
    """Resident set size of this process in MiB."""
    return psutil.Process().memory_info().rss / (1024 ** 2)


class ConversionPipeline:
    """
    Orchestrates buffer pool, normaliser, governor and writer for a run.

    Args:
        config: Validated :class:`PixelBatchConfig` instance.
        on_event: Optional callback invoked on each :class:`PipelineEvent`.
        codec: Image decoder passed to the normaliser (OpenCV when ``None``).
        stop_event: Flag checked between chunks; set it from any thread to
            end the run after the current chunk. A caller-supplied event is
            never cleared here; clear it before starting another run. The
            internal default is cleared at the start of every run.
        cores: Logical core count for the governor; detected when ``None``.
        clock: Monotonic time source shared with the governor.
        memory_probe: Returns process memory in MiB.
    """

    def __init__(
        self,
        config: PixelBatchConfig,
        on_event: Optional[EventCallback] = None,
        codec: Optional[ImageCodec] = None,
        stop_event: Optional[threading.Event] = None,
        cores: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        memory_probe: Callable[[], float] = process_rss_mb,
    ) -> None:
        self._config = config
        self._on_event = on_event
        self._owns_stop = stop_event is None
        self._stop = stop_event if stop_event is not None else threading.Event()
        self._cores = cores
        self._clock = clock
        self._memory_probe = memory_probe
        self._log = get_logger()

        _t = time.perf_counter()
        self._pool = BufferPool(config.image.vector_length, config.pool_cap)
        self._normalizer = PixelNormalizer(config.image, self._pool, codec=codec)
        self._governor = WorkloadGovernor(config.workload, cores=cores, clock=clock)
        self._log.perf("pipeline", "init", (time.perf_counter() - _t) * 1000.0, {
            "vector_length": config.image.vector_length,
            "pool_cap": config.pool_cap,
            "batch_size": config.batch.batch_size,
            "output_format": config.batch.output_format,
        })

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    @classmethod
    def from_config_file(
        cls,
        config_path: str | None = None,
        on_event: Optional[EventCallback] = None,
    ) -> "ConversionPipeline":
        """Load config from file and build a pipeline."""
        return cls(config=load_config(config_path), on_event=on_event)

    @property
    def config(self) -> PixelBatchConfig:
        return self._config

    @property
    def pool(self) -> BufferPool:
        return self._pool

    @property
    def governor(self) -> WorkloadGovernor:
        return self._governor

    @property
    def normalizer(self) -> PixelNormalizer:
        return self._normalizer

    def request_stop(self) -> None:
        """
        Ask the running loop to stop at the next chunk boundary.

        With the internal flag, a request made between runs is discarded when
        the next run starts.
        """
        self._stop.set()

    def process_dataset(
        self, source_path: str | Path, expected_count: Optional[int] = None
    ) -> RunSummary:
        """
        Convert every image in *source_path* into numbered batch files.

        Args:
            source_path: Dataset directory.
            expected_count: Number of images the caller expects; used for ETA
                and reported as a warning when the scan disagrees.

        Returns:
            The :class:`RunSummary` for the run.

        Raises:
            PathInvalidError: Bad, unsafe or missing source path.
            EmptyDatasetError: No images with the configured extension.
        """
        source = self._validate(source_path)
        return self._run(source, expected_count, prefix=self._config.batch.file_prefix)

    def process_sample(self, source_path: str | Path, count: int = 10) -> RunSummary:
        """
        Diagnostic run over the first *count* images, written as ``sample_*`` files.
        """
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")
        source = self._validate(source_path)
        return self._run(source, None, prefix=SAMPLE_PREFIX, limit=count)

    def convert_single(self, image_path: str | Path) -> ImageRecord:
        """
        Diagnostic conversion of one file. Nothing is written to disk.

        The returned record owns a private copy of its data.

        Raises:
            DecodeFailedError: The file could not be decoded.
        """
        handle = ImageHandle.from_path(image_path)
        labels = load_labels(self._labels_path(handle.path.parent), self._config.labels.unknown_label)
        record = self._normalizer.convert_record(handle, labels.get(handle.image_id))
        pooled = record.data
        record.data = pooled.copy()
        self._pool.release(pooled)
        self._log.perf("pipeline", "convert_single", record.conversion_time_ms, {
            "path": str(handle.path),
            "label": record.label,
        })
        return record

    # ──────────────────────────────────────────
    # Run loop
    # ──────────────────────────────────────────

    def _validate(self, source_path: str | Path) -> Path:
        try:
            return validate_source_path(source_path)
        except PathInvalidError as exc:
            self._log.error("scan", "path_invalid", {"path": exc.path, "reason": exc.reason})
            raise

    def _run(
        self,
        source: Path,
        expected_count: Optional[int],
        prefix: str,
        limit: Optional[int] = None,
    ) -> RunSummary:
        cfg = self._config
        t_start = self._clock()
        rss_start = self._memory_probe()
        summary = RunSummary()

        if self._owns_stop:
            self._stop.clear()
        elif self._stop.is_set():
            summary.stopped = True
            self._warn(summary, "pipeline", "stop_before_start",
                       "stop requested before the run started, nothing was written", {})
            self._emit(PipelineEvent("summary", payload=summary))
            return summary

        writer = BatchWriter(cfg.batch, cfg.image, prefix=prefix)
        if cfg.batch.clean_stale_output:
            clean_stale_outputs(
                writer.output_dir, prefix, (cfg.batch.text_extension, cfg.batch.binary_extension)
            )
        else:
            writer.output_dir.mkdir(parents=True, exist_ok=True)

        handles = scan_images(source, cfg.image.extension)
        if limit is not None:
            handles = handles[:limit]
        if not handles:
            self._log.error("scan", "empty_dataset", {"path": str(source)})
            raise EmptyDatasetError(source, cfg.image.extension)
        summary.total_files = total = len(handles)
        if expected_count is not None and expected_count != total:
            self._warn(summary, "scan", "count_mismatch",
                       f"expected {expected_count} images, found {total}",
                       {"expected": expected_count, "found": total})
        self._emit(PipelineEvent("scan", payload={"path": str(source), "count": len(handles)}))
        self._log.info("scan", "files_listed", {"path": str(source), "count": len(handles)})

        labels = load_labels(self._labels_path(source), cfg.labels.unknown_label)
        summary.labels_available = labels.available
        if not labels.available:
            self._warn(summary, "labels", "labels_unavailable",
                       f"labels unavailable, all images labelled "
                       f"{cfg.labels.unknown_label!r}: {labels.warning}",
                       {"reason": labels.warning})

        self._governor = WorkloadGovernor(cfg.workload, cores=self._cores, clock=self._clock)
        self._governor.start()

        batch = Batch(number=0, capacity=cfg.batch.batch_size)
        index = 0
        try:
            while index < len(handles):
                if self._stop.is_set():
                    summary.stopped = True
                    self._log.warn("pipeline", "stop_requested", {"processed": summary.processed})
                    break
                chunk = handles[index:index + self._governor.chunk_size(cfg.workload.yield_frequency)]
                for handle in chunk:
                    self._process_one(handle, batch, labels, summary)
                    summary.processed += 1
                    if batch.is_full:
                        self._flush(batch, writer, summary)
                        batch = Batch(number=batch.number + 1, capacity=cfg.batch.batch_size)
                    if summary.processed % cfg.progress.progress_interval == 0:
                        self._report_progress(summary, total, t_start, expected_count)
                    if summary.processed % cfg.memory.memory_check_interval == 0:
                        self._check_memory(summary)
                index += len(chunk)
                before = self._governor.current_intensity()
                if self._governor.tick(summary.processed):
                    self._emit(PipelineEvent("intensity_changed", payload={
                        "from": before,
                        "to": self._governor.current_intensity(),
                        "usage_pct": self._governor.state.last_usage_pct,
                    }))
                self._yield()

            if len(batch):
                self._flush(batch, writer, summary)
        finally:
            self._governor.stop()

        summary.elapsed_s = max(0.0, self._clock() - t_start)
        summary.images_per_sec = summary.converted / summary.elapsed_s if summary.elapsed_s > 0 else 0.0
        summary.memory_delta_mb = self._memory_probe() - rss_start
        summary.final_intensity = self._governor.current_intensity()
        summary.unlabelled = labels.misses

        self._log.info("pipeline", "summary", summary.to_dict())
        self._log.flush()
        logger.info(
            "Run complete: %d/%d converted, %d batches, %d failures, %.1f img/s",
            summary.converted, summary.total_files, summary.batches_written,
            summary.failures + summary.io_failures, summary.images_per_sec,
        )
        self._emit(PipelineEvent("summary", payload=summary))
        return summary

    def _process_one(
        self,
        handle: ImageHandle,
        batch: Batch,
        labels: LabelLookup,
        summary: RunSummary,
    ) -> None:
        """Convert one image and add it to *batch*, counting any failure."""
        try:
            record = self._normalizer.convert_record(handle, labels.get(handle.image_id))
        except DecodeFailedError as exc:
            summary.decode_failures += 1
            self._log.warn("convert", "decode_failed", {"path": str(handle.path), "reason": exc.reason})
            self._emit(PipelineEvent("image_failed", payload=exc))
            return

        expected = self._normalizer.vector_length
        if record.data.size != expected:
            err = SizeMismatchError(record.image_id, expected, int(record.data.size))
            summary.size_mismatches += 1
            self._pool.release(record.data)
            self._log.warn("convert", "size_mismatch", {
                "id": record.image_id, "expected": expected, "actual": err.actual,
            })
            self._emit(PipelineEvent("image_failed", payload=err))
            return

        replaced = batch.add(record)
        if replaced is not None:
            summary.duplicate_ids += 1
            self._pool.release(replaced.data)
            self._log.warn("convert", "duplicate_id", {"id": record.image_id, "path": str(handle.path)})
        else:
            summary.converted += 1

    def _flush(self, batch: Batch, writer: BatchWriter, summary: RunSummary) -> None:
        """Write *batch*, release its buffers, and run the batch-cadence cleanup."""
        try:
            path = writer.write_batch(batch)
        except BatchWriteError as exc:
            summary.io_failures += 1
            summary.records_lost += len(batch)
            self._log.error("writer", "batch_failed", {
                "batch": batch.number, "records": len(batch), "error": str(exc.cause),
            })
            self._emit(PipelineEvent("batch_failed", payload=exc))
        else:
            summary.batches_written += 1
            summary.output_files.append(path)
            self._emit(PipelineEvent("batch_written", payload={
                "batch": batch.number, "records": len(batch), "path": str(path),
            }))
        finally:
            for record in batch.clear():
                self._pool.release(record.data)

        flushed = summary.batches_written + summary.io_failures
        if flushed % self._config.memory.cleanup_every_batches == 0:
            self._cleanup("batch_cadence", summary)

    # ──────────────────────────────────────────
    # Housekeeping
    # ──────────────────────────────────────────

    def _report_progress(
        self, summary: RunSummary, total: int, t_start: float, expected: Optional[int] = None
    ) -> None:
        elapsed = self._clock() - t_start
        rate = summary.processed / elapsed if elapsed > 0 else 0.0
        remaining = max(0, (expected or total) - summary.processed)
        report = ProgressReport(
            processed=summary.processed,
            total=total,
            images_per_sec=rate,
            intensity=self._governor.current_intensity(),
            cpu_usage_pct=self._governor.usage_snapshot(rate),
            eta_s=remaining / rate if rate > 0 else None,
            batches_written=summary.batches_written,
        )
        self._log.info("pipeline", "progress", asdict(report))
        self._emit(PipelineEvent("progress", payload=report))

    def _check_memory(self, summary: RunSummary) -> None:
        ceiling = self._config.memory.memory_ceiling_mb
        if ceiling <= 0:
            return
        rss_mb = self._memory_probe()
        if rss_mb > ceiling:
            self._log.warn("pipeline", "memory_pressure", {
                "rss_mb": round(rss_mb, 1), "ceiling_mb": ceiling,
            })
            self._cleanup("memory_pressure", summary)

    def _cleanup(self, reason: str, summary: RunSummary) -> None:
        """Drop idle pool buffers, collect garbage, and yield."""
        freed = self._pool.trim()
        collected = gc.collect()
        summary.cleanups += 1
        self._log.info("pipeline", "cleanup", {
            "reason": reason, "buffers_freed": freed, "gc_collected": collected,
        })
        self._emit(PipelineEvent("cleanup", payload={"reason": reason, "buffers_freed": freed}))
        self._yield()

    def _yield(self) -> None:
        time.sleep(self._config.progress.yield_delay_ms / 1000.0)

    def _labels_path(self, source: Path) -> Optional[Path]:
        configured = self._config.labels.path
        if not configured:
            return None
        path = Path(configured).expanduser()
        return path if path.is_absolute() else source / path

    def _warn(
        self, summary: RunSummary, phase: str, event: str, message: str, data: dict
    ) -> None:
        summary.warnings.append(message)
        self._log.warn(phase, event, data)

    def _emit(self, event: PipelineEvent) -> None:
        """Invoke the event callback, logging rather than raising its errors."""
        if self._on_event is not None:
            try:
                self._on_event(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Event callback raised: %s", exc)

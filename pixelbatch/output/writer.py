"""
pixelbatch/output/writer.py — Batch serialisation to JSON text or fixed binary.

One file per batch, ``<prefix>_<NNNN>.<ext>``. Both containers are written
record by record so the whole batch never exists as a single serialised
string in memory.

Binary layout (all integers u32 little-endian)::

    header   version | image_count | width | height | channels      (20 bytes)
    record   id_len | id utf-8 | label_len | label utf-8 | n_floats | n × float32 LE
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import BinaryIO, TextIO

import numpy as np

from pixelbatch.core.config import BatchConfig, ImageConfig
from pixelbatch.core.constants import C, OutputFormat
from pixelbatch.core.errors import BatchWriteError
from pixelbatch.core.logger import get_logger
from pixelbatch.data.records import Batch, ImageRecord

logger = logging.getLogger(__name__)


def batch_filename(prefix: str, number: int, extension: str) -> str:
    """``<prefix>_<4-digit zero padded number>.<extension>``."""
    return f"{prefix}_{number:04d}.{extension}"


class BatchWriter:
    """
    Writes :class:`~pixelbatch.data.records.Batch` objects to *output_dir*.

    Args:
        batch_config: Container selection, naming and output directory.
        image_config: Geometry written into binary headers and format tags.
        output_dir: Overrides ``batch_config.output_dir`` when given.
        prefix: Overrides ``batch_config.file_prefix`` when given.
    """

    def __init__(
        self,
        batch_config: BatchConfig,
        image_config: ImageConfig,
        output_dir: Path | str | None = None,
        prefix: str | None = None,
    ) -> None:
        self._format = batch_config.format
        self._extension = batch_config.extension
        self._output_dir = Path(output_dir if output_dir is not None else batch_config.output_dir)
        self._prefix = prefix or batch_config.file_prefix
        self._image = image_config
        self._format_tag = f"float32_{image_config.channels}ch"
        self._log = get_logger()

    @property
    def output_format(self) -> OutputFormat:
        return self._format

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def path_for(self, number: int) -> Path:
        """Destination path of batch *number*."""
        return self._output_dir / batch_filename(self._prefix, number, self._extension)

    def write_batch(self, batch: Batch) -> Path:
        """
        Serialise *batch* to its numbered file.

        Delivery is at-most-once: on failure the partial file is removed and
        the batch is not retried.

        Returns:
            Path of the written file.

        Raises:
            BatchWriteError: If the file cannot be created or written.
        """
        path = self.path_for(batch.number)
        t0 = time.perf_counter()
        try:
            if self._format is OutputFormat.BINARY:
                with path.open("wb") as fh:
                    self._write_binary(fh, batch)
            else:
                with path.open("w", encoding="utf-8", newline="\n") as fh:
                    self._write_text(fh, batch)
        except OSError as exc:
            self._discard_partial(path)
            raise BatchWriteError(path, batch.number, exc) from exc

        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        self._log.perf("writer", "batch_written", elapsed_ms, {
            "batch": batch.number,
            "records": len(batch),
            "path": str(path),
            "format": self._format.value,
        })
        logger.debug("Wrote batch %d (%d records) to %s", batch.number, len(batch), path)
        return path

    # ──────────────────────────────────────────
    # Text container
    # ──────────────────────────────────────────

    def _write_text(self, fh: TextIO, batch: Batch) -> None:
        fh.write("{\n")
        first = True
        for record in batch:
            if not first:
                fh.write(",\n")
            first = False
            fh.write(json.dumps(record.image_id, ensure_ascii=False))
            fh.write(": ")
            self._write_text_record(fh, record)
        fh.write("\n}\n")

    def _write_text_record(self, fh: TextIO, record: ImageRecord) -> None:
        """One record object, fields serialised one at a time."""
        fh.write('{"id": ')
        fh.write(json.dumps(record.image_id, ensure_ascii=False))
        fh.write(', "data": ')
        fh.write(json.dumps(record.data.tolist(), separators=(",", ":")))
        fh.write(', "label": ')
        fh.write(json.dumps(record.label, ensure_ascii=False))
        fh.write(', "conversion_time_ms": ')
        fh.write(json.dumps(round(float(record.conversion_time_ms), 3)))
        fh.write(', "format": ')
        fh.write(json.dumps(self._format_tag))
        fh.write("}")

    # ──────────────────────────────────────────
    # Binary container
    # ──────────────────────────────────────────

    def _write_binary(self, fh: BinaryIO, batch: Batch) -> None:
        fh.write(C.HEADER_STRUCT.pack(
            C.BINARY_VERSION,
            len(batch),
            self._image.width,
            self._image.height,
            self._image.channels,
        ))
        for record in batch:
            _write_string(fh, record.image_id)
            _write_string(fh, record.label)
            floats = np.ascontiguousarray(record.data, dtype=C.FLOAT_DTYPE)
            fh.write(C.U32.pack(floats.size))
            fh.write(floats.tobytes())

    def _discard_partial(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove partial batch file %s: %s", path, exc)


def _write_string(fh: BinaryIO, value: str) -> None:
    encoded = value.encode("utf-8")
    fh.write(C.U32.pack(len(encoded)))
    fh.write(encoded)

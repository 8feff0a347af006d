"""
pixelbatch/output/reader.py — Companion loader for batch files.

Parses both containers back into :class:`ImageRecord` lists or stacked numpy
arrays so training loops can consume the output directory directly::

    for images, labels in iter_batches("output"):
        model.train_on_batch(images.reshape(-1, 32, 32, 3), labels)
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import numpy as np

from pixelbatch.core.constants import C
from pixelbatch.core.errors import BatchFormatError
from pixelbatch.data.records import ImageRecord

logger = logging.getLogger(__name__)

_BATCH_NAME = re.compile(r"^(?P<prefix>.+)_(?P<number>\d{4,})\.(?P<ext>[A-Za-z0-9]+)$")


@dataclass(frozen=True)
class BinaryBatchHeader:
    """Fixed 20-byte prefix of every binary batch file."""

    version: int
    image_count: int
    width: int
    height: int
    channels: int

    @property
    def vector_length(self) -> int:
        return self.width * self.height * self.channels


@dataclass
class LoadedBatch:
    """
    A parsed batch file.

    Attributes:
        path: File the batch was read from.
        records: Records in file order.
        header: Binary header, ``None`` for text batches.
    """

    path: Path
    records: list[ImageRecord]
    header: BinaryBatchHeader | None = None

    def arrays(self) -> tuple[np.ndarray, list[str]]:
        """``(N, vector_length)`` float32 matrix and the matching labels."""
        if not self.records:
            return np.zeros((0, 0), dtype=np.float32), []
        images = np.stack([r.data for r in self.records]).astype(np.float32, copy=False)
        return images, [r.label for r in self.records]


def read_batch(path: Path | str) -> LoadedBatch:
    """Read a text or binary batch, chosen by sniffing the first byte."""
    p = Path(path)
    with p.open("rb") as fh:
        first = fh.read(1)
    if first == b"{":
        return read_text_batch(p)
    return read_binary_batch(p)


def read_text_batch(path: Path | str) -> LoadedBatch:
    """
    Parse a JSON text batch.

    Raises:
        BatchFormatError: If the document is not a JSON object of records.
    """
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as fh:
            doc = json.load(fh)
    except json.JSONDecodeError as exc:
        raise BatchFormatError(f"{p}: invalid JSON: {exc}") from exc
    if not isinstance(doc, dict):
        raise BatchFormatError(f"{p}: top level must be an object")

    records = []
    for key, entry in doc.items():
        try:
            records.append(ImageRecord(
                image_id=str(entry.get("id", key)),
                data=np.asarray(entry["data"], dtype=np.float32),
                label=str(entry["label"]),
                conversion_time_ms=float(entry.get("conversion_time_ms", 0.0)),
            ))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise BatchFormatError(f"{p}: malformed record {key!r}: {exc}") from exc
    return LoadedBatch(path=p, records=records)


def read_binary_batch(path: Path | str) -> LoadedBatch:
    """
    Parse a binary batch.

    Float vectors are copied out of the file buffer bit-for-bit.

    Raises:
        BatchFormatError: On truncation, an unknown version, or trailing bytes.
    """
    p = Path(path)
    buf = memoryview(p.read_bytes())
    if len(buf) < C.HEADER_STRUCT.size:
        raise BatchFormatError(f"{p}: file shorter than the {C.HEADER_STRUCT.size}-byte header")
    header = BinaryBatchHeader(*C.HEADER_STRUCT.unpack_from(buf, 0))
    if header.version != C.BINARY_VERSION:
        raise BatchFormatError(f"{p}: unsupported batch version {header.version}")

    offset = C.HEADER_STRUCT.size
    records = []
    for _ in range(header.image_count):
        image_id, offset = _read_string(buf, offset, p)
        label, offset = _read_string(buf, offset, p)
        count, offset = _read_u32(buf, offset, p)
        end = offset + count * 4
        if end > len(buf):
            raise BatchFormatError(f"{p}: truncated float data for {image_id!r}")
        data = np.frombuffer(buf[offset:end], dtype=C.FLOAT_DTYPE).astype(np.float32)
        offset = end
        records.append(ImageRecord(image_id=image_id, data=data, label=label))

    if offset != len(buf):
        raise BatchFormatError(f"{p}: {len(buf) - offset} unexpected trailing bytes")
    return LoadedBatch(path=p, records=records, header=header)


def list_batches(directory: Path | str, prefix: str = "batch") -> list[Path]:
    """Batch files under *directory* for *prefix*, ordered by batch number."""
    found = []
    for entry in Path(directory).iterdir():
        match = _BATCH_NAME.match(entry.name)
        if entry.is_file() and match and match.group("prefix") == prefix:
            found.append((int(match.group("number")), entry))
    return [path for _, path in sorted(found)]


def iter_batches(
    directory: Path | str, prefix: str = "batch"
) -> Iterator[tuple[np.ndarray, list[str]]]:
    """Yield ``(images, labels)`` per batch file in batch-number order."""
    for path in list_batches(directory, prefix):
        logger.debug("Loading %s", path)
        yield read_batch(path).arrays()


def _read_u32(buf: memoryview, offset: int, path: Path) -> tuple[int, int]:
    if offset + C.U32.size > len(buf):
        raise BatchFormatError(f"{path}: truncated at byte {offset}")
    return C.U32.unpack_from(buf, offset)[0], offset + C.U32.size


def _read_string(buf: memoryview, offset: int, path: Path) -> tuple[str, int]:
    length, offset = _read_u32(buf, offset, path)
    end = offset + length
    if end > len(buf):
        raise BatchFormatError(f"{path}: truncated string at byte {offset}")
    try:
        return bytes(buf[offset:end]).decode("utf-8"), end
    except UnicodeDecodeError as exc:
        raise BatchFormatError(f"{path}: invalid UTF-8 at byte {offset}") from exc

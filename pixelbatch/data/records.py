"""
pixelbatch/data/records.py — Value types that flow through the pipeline.

ImageHandle (scan output) → ImageRecord (normaliser + label lookup) →
Batch (bounded in-memory group flushed to one file).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import numpy as np


@dataclass(frozen=True)
class ImageHandle:
    """
    A source image on disk.

    Attributes:
        path: File-system location of the image.
        image_id: The file's base name without extension.
    """

    path: Path
    image_id: str

    @classmethod
    def from_path(cls, path: Path | str) -> "ImageHandle":
        """Build a handle whose id is the file stem."""
        p = Path(path)
        return cls(path=p, image_id=p.stem)


@dataclass
class ImageRecord:
    """
    One converted image ready for serialisation.

    Attributes:
        image_id: Identifier derived from the source file name.
        data: Flat float32 vector, row-major, channel-interleaved, in [0, 1].
        label: Class label from the labels document or the unknown sentinel.
        conversion_time_ms: Wall time spent decoding and normalising.
    """

    image_id: str
    data: np.ndarray
    label: str
    conversion_time_ms: float = 0.0


class Batch:
    """
    Bounded ``image_id → ImageRecord`` mapping flushed to exactly one file.

    Args:
        number: Sequence number used in the output file name.
        capacity: Maximum number of records (``batch_size``).
    """

    def __init__(self, number: int, capacity: int) -> None:
        self.number = number
        self.capacity = capacity
        self._records: dict[str, ImageRecord] = {}

    def add(self, record: ImageRecord) -> Optional[ImageRecord]:
        """
        Insert *record*. Returns the record it replaced (duplicate id), if any.

        Raises:
            OverflowError: If the batch is already full and *record* is new.
        """
        previous = self._records.get(record.image_id)
        if previous is None and len(self._records) >= self.capacity:
            raise OverflowError(f"Batch {self.number} is full ({self.capacity} records)")
        self._records[record.image_id] = record
        return previous

    @property
    def is_full(self) -> bool:
        """True once ``capacity`` records have been added."""
        return len(self._records) >= self.capacity

    def records(self) -> list[ImageRecord]:
        """Snapshot of the current records."""
        return list(self._records.values())

    def clear(self) -> list[ImageRecord]:
        """Remove and return every record."""
        drained = list(self._records.values())
        self._records.clear()
        return drained

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ImageRecord]:
        return iter(self._records.values())

    def __contains__(self, image_id: object) -> bool:
        return image_id in self._records

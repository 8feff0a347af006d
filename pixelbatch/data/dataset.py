"""
pixelbatch/data/dataset.py — Dataset directory validation and scanning.

Turns a user-supplied path into an ordered list of :class:`ImageHandle`
sorted by the numeric value of each file's base name, so ``2.png`` comes
before ``10.png``.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePath
from typing import Iterable

from pixelbatch.core.errors import PathInvalidError
from pixelbatch.data.records import ImageHandle

logger = logging.getLogger(__name__)


def validate_source_path(raw: str | Path) -> Path:
    """
    Check that *raw* names an existing, traversal-free directory.

    Raises:
        PathInvalidError: Empty path, ``..`` segment, missing path, or not a
            directory.
    """
    text = str(raw).strip() if raw is not None else ""
    if not text:
        raise PathInvalidError(text, "path is empty")
    if ".." in PurePath(text.replace("\\", "/")).parts:
        raise PathInvalidError(text, "path traversal sequences are not allowed")
    path = Path(text).expanduser()
    if not path.exists():
        raise PathInvalidError(text, "path does not exist")
    if not path.is_dir():
        raise PathInvalidError(text, "path is not a directory")
    return path


def numeric_sort_key(handle: ImageHandle) -> tuple[int, int, str]:
    """
    Sort numeric ids by value, then non-numeric ids lexically after them.

    Only ASCII digit stems count as numeric; ``²`` or ``٣`` sort as text.
    """
    stem = handle.image_id
    if stem.isascii() and stem.isdigit():
        return (0, int(stem), stem)
    return (1, 0, stem)


def scan_images(directory: Path, extension: str) -> list[ImageHandle]:
    """
    List files in *directory* with *extension* (case-insensitive), numerically ordered.

    Sub-directories are not descended into.
    """
    ext = extension.lower()
    handles = [
        ImageHandle.from_path(entry)
        for entry in directory.iterdir()
        if entry.is_file() and entry.suffix.lower() == ext
    ]
    handles.sort(key=numeric_sort_key)
    logger.info("Found %d '%s' files in %s", len(handles), ext, directory)
    return handles


def clean_stale_outputs(output_dir: Path, prefix: str, extensions: Iterable[str]) -> int:
    """
    Remove ``<prefix>_*.<ext>`` files left in *output_dir* by a previous run.

    Creates *output_dir* when missing. Returns the number of files removed.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    removed = 0
    for ext in extensions:
        for stale in output_dir.glob(f"{prefix}_*.{ext}"):
            if stale.is_file():
                stale.unlink()
                removed += 1
    if removed:
        logger.info("Removed %d stale batch files from %s", removed, output_dir)
    return removed

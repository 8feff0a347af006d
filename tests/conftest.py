"""
tests/conftest.py — Shared fixtures for the PixelBatch test suite.

Every test gets its own JSONL log directory so runs never write into the
working tree, plus helpers for building small on-disk datasets.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import cv2
import numpy as np
import pytest

from pixelbatch.core import logger as run_logger


class ByteValueCodec:
    """
    Test codec: every image is a solid grid whose value is the file's first byte.

    Keeps pipeline tests independent of real image decoding. A file whose
    first byte is ``0xFF`` is treated as corrupt.
    """

    def __init__(self, width: int, height: int, channels: int) -> None:
        self.shape = (height, width, channels) if channels > 1 else (height, width)
        self.decoded = 0

    def decode(self, data: bytes, channels: int) -> np.ndarray:
        if not data or data[0] == 0xFF:
            raise ValueError("corrupt test image")
        self.decoded += 1
        return np.full(self.shape, data[0], dtype=np.uint8)

    def resize(self, grid: np.ndarray, width: int, height: int) -> np.ndarray:
        return cv2.resize(grid, (width, height), interpolation=cv2.INTER_AREA)


# ──────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def isolated_run_log(tmp_path_factory: pytest.TempPathFactory):
    """Point the run logger singleton at a throwaway directory."""
    log = run_logger.configure_logger(tmp_path_factory.mktemp("logs"))
    yield log
    log.close()


@pytest.fixture()
def write_png() -> Callable[..., Path]:
    """
    Return ``write_png(path, rgb, size=(32, 32), channels=3)``.

    *rgb* is given in RGB order; the helper handles OpenCV's BGR layout.
    """

    def _write(
        path: Path,
        rgb: tuple[int, ...] = (0, 0, 0),
        size: tuple[int, int] = (32, 32),
        channels: int = 3,
    ) -> Path:
        width, height = size
        if channels == 1:
            grid = np.full((height, width), rgb[0], dtype=np.uint8)
        elif channels == 4:
            r, g, b, a = rgb
            grid = np.full((height, width, 4), (b, g, r, a), dtype=np.uint8)
        else:
            r, g, b = rgb[:3]
            grid = np.full((height, width, 3), (b, g, r), dtype=np.uint8)
        path.parent.mkdir(parents=True, exist_ok=True)
        assert cv2.imwrite(str(path), grid)
        return path

    return _write


@pytest.fixture()
def byte_dataset(tmp_path: Path) -> Callable[..., Path]:
    """
    Return ``byte_dataset(count, start=0, name="images")``.

    Writes ``<i>.png`` files holding one byte (``i % 250``) for use with
    :class:`ByteValueCodec`.
    """

    def _make(count: int, start: int = 0, name: str = "images") -> Path:
        directory = tmp_path / name
        directory.mkdir(exist_ok=True)
        for i in range(start, start + count):
            (directory / f"{i}.png").write_bytes(bytes([i % 250]))
        return directory

    return _make


@pytest.fixture()
def byte_codec() -> Callable[..., ByteValueCodec]:
    """Factory for :class:`ByteValueCodec` instances."""
    return ByteValueCodec

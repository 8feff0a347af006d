"""
pixelbatch/convert/normalizer.py — Image file → flat normalised float32 vector.

Decoding and resampling go through an :class:`ImageCodec` collaborator
(OpenCV by default). Normalisation runs a vectorised four-pixel block path
when the decoded byte buffer has the expected length and falls back to
per-pixel reads when it does not. Both paths write into a buffer checked out
from the :class:`~pixelbatch.convert.pool.BufferPool`.
"""

from __future__ import annotations

import logging
import time
from typing import Protocol, Sequence

import cv2
import numpy as np

from pixelbatch.convert.pool import BufferPool
from pixelbatch.core.config import ImageConfig
from pixelbatch.core.errors import DecodeFailedError
from pixelbatch.data.records import ImageHandle, ImageRecord

logger = logging.getLogger(__name__)

#: Pixels normalised per vectorised step.
PIXELS_PER_BLOCK = 4


class ImageCodec(Protocol):
    """Decoder/resampler the normaliser depends on."""

    def decode(self, data: bytes, channels: int) -> np.ndarray:
        """Decode encoded image bytes into an ``(h, w[, c])`` uint8 grid."""
        ...

    def resize(self, grid: np.ndarray, width: int, height: int) -> np.ndarray:
        """Resample *grid* to ``width × height``."""
        ...


class OpenCVCodec:
    """
    :class:`ImageCodec` backed by ``cv2.imdecode`` / ``cv2.resize``.

    Output grids are in RGB / RGBA channel order (OpenCV decodes BGR) or
    2-D luminance when one channel is requested.

    Args:
        interpolation: OpenCV interpolation flag used for resizing.
    """

    _READ_FLAGS = {1: cv2.IMREAD_GRAYSCALE, 3: cv2.IMREAD_COLOR, 4: cv2.IMREAD_UNCHANGED}

    def __init__(self, interpolation: int = cv2.INTER_AREA) -> None:
        self._interpolation = interpolation

    def decode(self, data: bytes, channels: int) -> np.ndarray:
        if not data:
            raise ValueError("empty file")
        grid = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), self._READ_FLAGS[channels])
        if grid is None:
            raise ValueError("unsupported or corrupt image data")
        if grid.dtype == np.uint16:
            grid = (grid >> 8).astype(np.uint8)
        return self._to_rgb(grid, channels)

    def resize(self, grid: np.ndarray, width: int, height: int) -> np.ndarray:
        return cv2.resize(grid, (width, height), interpolation=self._interpolation)

    @staticmethod
    def _to_rgb(grid: np.ndarray, channels: int) -> np.ndarray:
        if channels == 1:
            return grid
        if channels == 3:
            return cv2.cvtColor(grid, cv2.COLOR_BGR2RGB)
        # IMREAD_UNCHANGED: grey, BGR or BGRA depending on the file
        if grid.ndim == 2:
            return cv2.cvtColor(grid, cv2.COLOR_GRAY2RGBA)
        if grid.shape[2] == 3:
            return cv2.cvtColor(grid, cv2.COLOR_BGR2RGBA)
        return cv2.cvtColor(grid, cv2.COLOR_BGRA2RGBA)


class PixelNormalizer:
    """
    Converts one image file into a pooled NormalizedImage.

    Args:
        config: Target geometry.
        pool: Buffer pool whose size class is ``config.vector_length``.
        codec: Image decoder; defaults to :class:`OpenCVCodec`.
    """

    def __init__(
        self,
        config: ImageConfig,
        pool: BufferPool,
        codec: ImageCodec | None = None,
    ) -> None:
        if pool.size != config.vector_length:
            raise ValueError(
                f"Pool size class {pool.size} does not match image vector length "
                f"{config.vector_length}"
            )
        self._width = config.width
        self._height = config.height
        self._channels = config.channels
        self._length = config.vector_length
        self._pool = pool
        self._codec: ImageCodec = codec if codec is not None else OpenCVCodec()

        self.fast_path_count: int = 0
        self.fallback_count: int = 0

    @property
    def vector_length(self) -> int:
        return self._length

    def convert(self, handle: ImageHandle) -> np.ndarray:
        """
        Decode *handle* and return its normalised pixels.

        The returned array is checked out from the pool; the caller must
        release it once the record is written or discarded.

        Raises:
            DecodeFailedError: The file is missing, unreadable, corrupt, or
                could not be resized.
        """
        grid = self._decode(handle)
        pixels = self._force_channels(grid)
        raw = pixels.reshape(-1)
        if raw.size == self._length:
            self.fast_path_count += 1
            return self._normalize_blocks(raw)
        logger.debug(
            "Unexpected byte length %d for %s (want %d) — per-pixel fallback",
            raw.size, handle.path.name, self._length,
        )
        self.fallback_count += 1
        return self._normalize_per_pixel(grid)

    def convert_record(self, handle: ImageHandle, label: str) -> ImageRecord:
        """Convert *handle* and wrap it with its label and timing."""
        t0 = time.perf_counter()
        data = self.convert(handle)
        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        return ImageRecord(
            image_id=handle.image_id,
            data=data,
            label=label,
            conversion_time_ms=elapsed_ms,
        )

    # ──────────────────────────────────────────
    # Steps
    # ──────────────────────────────────────────

    def _decode(self, handle: ImageHandle) -> np.ndarray:
        try:
            data = handle.path.read_bytes()
        except OSError as exc:
            raise DecodeFailedError(handle.path, f"cannot read file: {exc}") from exc

        try:
            grid = self._codec.decode(data, self._channels)
        except (ValueError, cv2.error) as exc:
            raise DecodeFailedError(handle.path, str(exc)) from exc

        if grid.shape[0] != self._height or grid.shape[1] != self._width:
            try:
                grid = self._codec.resize(grid, self._width, self._height)
            except (ValueError, cv2.error) as exc:
                raise DecodeFailedError(handle.path, f"resize failed: {exc}") from exc
        return grid

    def _force_channels(self, grid: np.ndarray) -> np.ndarray:
        """Contiguous uint8 view with at most ``channels`` components per pixel."""
        if grid.ndim == 3 and grid.shape[2] > self._channels:
            grid = grid[:, :, : self._channels]
        if self._channels == 1 and grid.ndim == 3 and grid.shape[2] == 1:
            grid = grid[:, :, 0]
        return np.ascontiguousarray(grid, dtype=np.uint8)

    def _normalize_blocks(self, raw: np.ndarray) -> np.ndarray:
        """Fast path: byte / 255 over four-pixel blocks, scalar tail for the rest."""
        buf = self._pool.acquire()
        block = PIXELS_PER_BLOCK * self._channels
        head = (raw.size // block) * block
        if head:
            np.divide(
                raw[:head].reshape(-1, block),
                255.0,
                out=buf[:head].reshape(-1, block),
            )
        for i in range(head, raw.size):
            buf[i] = raw[i] / 255.0
        return buf

    def _normalize_per_pixel(self, grid: np.ndarray) -> np.ndarray:
        """Fallback path: read every pixel through :meth:`_pixel_at`."""
        buf = self._pool.acquire()
        c = self._channels
        for y in range(self._height):
            for x in range(self._width):
                components = self._pixel_at(grid, x, y)
                base = (y * self._width + x) * c
                for ch in range(c):
                    buf[base + ch] = _component(components, ch) / 255.0
        return buf

    @staticmethod
    def _pixel_at(grid: np.ndarray, x: int, y: int) -> Sequence[int]:
        """Components of the pixel at ``(x, y)``, coordinates clamped to the grid."""
        y = min(y, grid.shape[0] - 1)
        x = min(x, grid.shape[1] - 1)
        value = grid[y, x]
        if np.ndim(value) == 0:
            return (int(value),)
        return [int(v) for v in value]


def _component(components: Sequence[int], channel: int) -> int:
    """
    Component *channel* of a pixel that may carry fewer channels than asked.

    Grey pixels replicate their single value, a missing alpha is opaque, and
    any other missing channel repeats the last one present.
    """
    if channel < len(components):
        return components[channel]
    if len(components) == 1:
        return components[0]
    if channel == 3:
        return 255
    return components[-1]

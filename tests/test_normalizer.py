"""
tests/test_normalizer.py — pytest unit tests for pixelbatch.convert.normalizer.

Real PNGs are written with OpenCV for the decode tests; the fallback and
tail paths use small in-memory codecs.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from pixelbatch.convert.normalizer import OpenCVCodec, PixelNormalizer, _component
from pixelbatch.convert.pool import BufferPool
from pixelbatch.core.config import ImageConfig
from pixelbatch.core.errors import DecodeFailedError
from pixelbatch.data.records import ImageHandle


class GridCodec:
    """Returns a fixed grid regardless of the file contents."""

    def __init__(self, grid: np.ndarray) -> None:
        self.grid = grid

    def decode(self, data: bytes, channels: int) -> np.ndarray:
        return self.grid

    def resize(self, grid: np.ndarray, width: int, height: int) -> np.ndarray:
        raise AssertionError("resize should not be needed")


def _normalizer(channels: int = 3, width: int = 32, height: int = 32, codec=None) -> PixelNormalizer:
    cfg = ImageConfig(width=width, height=height, channels=channels)
    return PixelNormalizer(cfg, BufferPool(cfg.vector_length, 4), codec=codec)


def _stub_file(tmp_path: Path, name: str = "0.png") -> ImageHandle:
    path = tmp_path / name
    path.write_bytes(b"\x00")
    return ImageHandle.from_path(path)


# ──────────────────────────────────────────────────────────────
# Fast path with OpenCV
# ──────────────────────────────────────────────────────────────

def test_solid_colour_rgb_order(tmp_path: Path, write_png) -> None:
    handle = ImageHandle.from_path(write_png(tmp_path / "7.png", rgb=(10, 128, 250)))
    norm = _normalizer()
    data = norm.convert(handle)

    assert data.shape == (32 * 32 * 3,)
    assert data.dtype == np.float32
    pixels = data.reshape(-1, 3)
    np.testing.assert_allclose(pixels[0], [10 / 255, 128 / 255, 250 / 255], atol=1e-6)
    np.testing.assert_allclose(pixels[-1], pixels[0])
    assert norm.fast_path_count == 1
    assert norm.fallback_count == 0


def test_values_stay_in_unit_range(tmp_path: Path, write_png) -> None:
    handle = ImageHandle.from_path(write_png(tmp_path / "1.png", rgb=(255, 0, 255)))
    data = _normalizer().convert(handle)
    assert float(data.min()) == 0.0
    assert float(data.max()) == 1.0


def test_larger_image_is_resized(tmp_path: Path, write_png) -> None:
    handle = ImageHandle.from_path(write_png(tmp_path / "2.png", rgb=(40, 80, 120), size=(64, 64)))
    data = _normalizer().convert(handle)
    assert data.size == 32 * 32 * 3
    np.testing.assert_allclose(data.reshape(-1, 3)[100], [40 / 255, 80 / 255, 120 / 255], atol=1e-6)


def test_grey_target_reads_luminance(tmp_path: Path, write_png) -> None:
    handle = ImageHandle.from_path(write_png(tmp_path / "3.png", rgb=(90, 90, 90)))
    data = _normalizer(channels=1).convert(handle)
    assert data.size == 32 * 32
    np.testing.assert_allclose(data, 90 / 255, atol=1e-6)


def test_rgba_target_adds_opaque_alpha(tmp_path: Path, write_png) -> None:
    handle = ImageHandle.from_path(write_png(tmp_path / "4.png", rgb=(1, 2, 3)))
    data = _normalizer(channels=4).convert(handle)
    first = data.reshape(-1, 4)[0]
    np.testing.assert_allclose(first, [1 / 255, 2 / 255, 3 / 255, 1.0], atol=1e-6)


def test_rgba_source_keeps_alpha(tmp_path: Path, write_png) -> None:
    path = write_png(tmp_path / "5.png", rgb=(10, 20, 30, 40), channels=4)
    data = _normalizer(channels=4).convert(ImageHandle.from_path(path))
    np.testing.assert_allclose(data.reshape(-1, 4)[0], [10 / 255, 20 / 255, 30 / 255, 40 / 255], atol=1e-6)


def test_tail_pixels_outside_full_blocks(tmp_path: Path) -> None:
    grid = np.arange(27, dtype=np.uint8).reshape(3, 3, 3)
    norm = _normalizer(width=3, height=3, codec=GridCodec(grid))
    data = norm.convert(_stub_file(tmp_path))
    np.testing.assert_allclose(data, np.arange(27) / 255.0, atol=1e-7)
    assert norm.fast_path_count == 1


# ──────────────────────────────────────────────────────────────
# Per-pixel fallback
# ──────────────────────────────────────────────────────────────

def test_fallback_replicates_grey_pixels(tmp_path: Path) -> None:
    grid = np.full((32, 32), 51, dtype=np.uint8)
    norm = _normalizer(codec=GridCodec(grid))
    data = norm.convert(_stub_file(tmp_path))

    assert norm.fallback_count == 1
    assert data.size == 32 * 32 * 3
    np.testing.assert_allclose(data, 51 / 255, atol=1e-6)


def test_fallback_matches_fast_path_for_same_pixels(tmp_path: Path) -> None:
    rng = np.random.default_rng(3)
    rgb = rng.integers(0, 256, size=(4, 4, 3), dtype=np.uint8)
    fast = _normalizer(width=4, height=4, codec=GridCodec(rgb)).convert(_stub_file(tmp_path))

    # Two components per pixel forces the fallback; blue repeats green.
    two = rgb[:, :, :2].copy()
    slow = _normalizer(width=4, height=4, codec=GridCodec(two)).convert(_stub_file(tmp_path))
    np.testing.assert_allclose(slow.reshape(-1, 3)[:, :2], fast.reshape(-1, 3)[:, :2])
    np.testing.assert_allclose(slow.reshape(-1, 3)[:, 2], fast.reshape(-1, 3)[:, 1])


def test_component_rules() -> None:
    assert _component([7], 2) == 7
    assert _component([1, 2, 3], 3) == 255
    assert _component([1, 2], 2) == 2
    assert _component([1, 2, 3, 4], 3) == 4


# ──────────────────────────────────────────────────────────────
# Failures
# ──────────────────────────────────────────────────────────────

def test_missing_file_raises_decode_failed(tmp_path: Path) -> None:
    with pytest.raises(DecodeFailedError):
        _normalizer().convert(ImageHandle.from_path(tmp_path / "missing.png"))


def test_corrupt_file_raises_decode_failed(tmp_path: Path) -> None:
    path = tmp_path / "9.png"
    path.write_bytes(b"this is not a png")
    with pytest.raises(DecodeFailedError) as exc_info:
        _normalizer().convert(ImageHandle.from_path(path))
    assert exc_info.value.path == path


def test_empty_file_raises_decode_failed(tmp_path: Path) -> None:
    path = tmp_path / "8.png"
    path.write_bytes(b"")
    with pytest.raises(DecodeFailedError):
        _normalizer().convert(ImageHandle.from_path(path))


def test_pool_size_must_match_geometry() -> None:
    with pytest.raises(ValueError):
        PixelNormalizer(ImageConfig(), BufferPool(10, 4))


def test_convert_record_carries_label_and_timing(tmp_path: Path, write_png) -> None:
    handle = ImageHandle.from_path(write_png(tmp_path / "42.png"))
    record = _normalizer().convert_record(handle, "cat")
    assert record.image_id == "42"
    assert record.label == "cat"
    assert record.conversion_time_ms >= 0.0


def test_opencv_codec_rejects_empty_bytes() -> None:
    with pytest.raises(ValueError):
        OpenCVCodec().decode(b"", 3)

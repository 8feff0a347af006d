"""
pixelbatch/core/constants.py — System constants for PixelBatch.

Enums for the two configuration switches that select behaviour
(:class:`ThermalMode`, :class:`OutputFormat`), the binary container layout,
and pipeline cadence defaults. Call ``PixelBatchConstants.validate()`` on
startup to log a RAM availability check.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

import psutil

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────────────────────

class ThermalMode(Enum):
    """Workload governor profile."""

    CONSERVATIVE = "conservative"
    PERFORMANCE = "performance"


class OutputFormat(Enum):
    """Batch container selected by ``batch.output_format``."""

    TEXT = "text"
    BINARY = "binary"


class CpuSource(Enum):
    """Where the governor reads its CPU usage figure from."""

    PROXY = "proxy"
    PSUTIL = "psutil"


# ──────────────────────────────────────────────────────────────
# Frozen constants dataclass
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PixelBatchConstants:
    """
    Frozen dataclass holding PixelBatch system constants.

    Use the class attributes directly — do not instantiate.

    Example::

        from pixelbatch.core.constants import C

        print(C.BINARY_VERSION)   # 1
        C.validate()
    """

    # ── Binary container ──────────────────────────────────────
    BINARY_VERSION: ClassVar[int] = 1
    """Version field written into every binary batch header."""

    HEADER_STRUCT: ClassVar[struct.Struct] = struct.Struct("<5I")
    """version, image_count, width, height, channels — 20 bytes, little-endian."""

    U32: ClassVar[struct.Struct] = struct.Struct("<I")
    """Length prefix / float count field."""

    FLOAT_DTYPE: ClassVar[str] = "<f4"
    """On-disk float layout: IEEE-754 float32 little-endian."""

    # ── Governor ──────────────────────────────────────────────
    THROTTLE_MARGIN_PCT: ClassVar[float] = 10.0
    """Performance mode throttles above ``target_cpu_pct`` + this."""

    CONSERVATIVE_MARGIN_PCT: ClassVar[float] = 5.0
    """Conservative mode throttles above ``max_sustained_cpu_pct`` + this."""

    SCALE_UP_GAP_PCT: ClassVar[float] = 10.0
    """Scale up only when usage is this far below target."""

    # ── Labels ────────────────────────────────────────────────
    UNKNOWN_LABEL: ClassVar[str] = "unknown"
    """Sentinel label for ids missing from the labels document."""

    # ── Hardware ──────────────────────────────────────────────
    MIN_FREE_RAM_GB: ClassVar[float] = 1.0
    """Startup warns if less than this much RAM is available."""

    @classmethod
    def validate(cls) -> None:
        """
        Check available RAM and log a warning when it is low.

        Low memory only warns; a small ``batch_size`` still runs.
        """
        vm = psutil.virtual_memory()
        available_gb = vm.available / (1024 ** 3)
        total_gb = vm.total / (1024 ** 3)
        if available_gb < cls.MIN_FREE_RAM_GB:
            logger.warning(
                "RAM warning: %.1f GB available / %.1f GB total, "
                "consider a smaller batch.batch_size.",
                available_gb, total_gb,
            )
        else:
            logger.info("RAM OK: %.1f GB available / %.1f GB total", available_gb, total_gb)


#: Convenience alias — ``from pixelbatch.core.constants import C``
C = PixelBatchConstants

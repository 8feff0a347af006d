"""
pixelbatch/governor/workload.py — Adaptive workload governor.

Decides how many images the pipeline handles per chunk from the detected
core count and a CPU-usage figure, stepping intensity by at most one per
evaluation tick.

The default CPU figure is a *proxy*: it compares observed throughput with an
expected baseline rate (``usage = (1 − observed / expected) × 100``). It is an
approximation of load, not an OS counter, and should be treated as such.
Set ``workload.cpu_source: psutil`` to sample real CPU usage instead.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

import psutil

from pixelbatch.core.config import OVERRIDE_AUTO, OVERRIDE_DISABLED, WorkloadConfig
from pixelbatch.core.constants import C, CpuSource, ThermalMode

logger = logging.getLogger(__name__)


@dataclass
class WorkloadState:
    """
    Mutable governor state, written only by :class:`WorkloadGovernor`.

    Attributes:
        intensity: Current throughput dial, always ``1 ≤ intensity ≤ optimal_intensity``.
        mode: Thermal profile.
        target_cpu_pct: Desired CPU usage.
        throttle_pct: Usage above which intensity is stepped down.
        optimal_intensity: Upper bound detected from hardware (or the fixed override).
        auto_scale: Whether periodic evaluation is enabled.
        last_usage_pct: Most recent CPU usage figure.
    """

    intensity: int
    mode: ThermalMode
    target_cpu_pct: float
    throttle_pct: float
    optimal_intensity: int
    auto_scale: bool
    last_usage_pct: float = 0.0


def detect_cpu_count() -> int:
    """Logical core count from psutil, then ``os.cpu_count()``, then 1."""
    count = psutil.cpu_count(logical=True) or os.cpu_count() or 1
    return max(1, int(count))


def detect_optimal_workload(mode: ThermalMode, cores: Optional[int] = None) -> int:
    """
    Initial intensity for *mode* on a host with *cores* logical cores.

    Conservative (laptop): 1 for ≤4 cores, capped at 2 above that.
    Performance (desktop): cores − 1 up to 8 cores, cores − 2 beyond, never
    below 1.
    """
    n = detect_cpu_count() if cores is None else max(1, int(cores))
    if mode is ThermalMode.CONSERVATIVE:
        return 1 if n <= 4 else 2
    if n <= 2:
        return 1
    if n <= 8:
        return n - 1
    return n - 2


def proxy_cpu_usage(observed_rate: float, expected_rate: float) -> float:
    """
    Estimated CPU usage from throughput.

    ``clamp(0, 100, (1 − observed / expected) × 100)``. Falling behind the
    expected rate reads as high load. Approximate by construction.
    """
    if expected_rate <= 0:
        return 0.0
    usage = (1.0 - observed_rate / expected_rate) * 100.0
    return max(0.0, min(100.0, usage))


class WorkloadGovernor:
    """
    Owns :class:`WorkloadState` and re-evaluates it on a fixed period.

    The pipeline loop calls :meth:`tick` at every chunk boundary; an
    evaluation runs when ``evaluation_period_s`` has elapsed since the last
    one. There is no background thread.

    Args:
        config: Workload configuration.
        cores: Logical core count; detected when ``None``.
        clock: Monotonic time source (injectable for tests).
        cpu_sampler: Returns CPU percent when ``cpu_source`` is ``psutil``.
    """

    def __init__(
        self,
        config: WorkloadConfig,
        cores: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        cpu_sampler: Optional[Callable[[], float]] = None,
    ) -> None:
        self._config = config
        self._clock = clock
        self._cpu_sampler = cpu_sampler or (lambda: psutil.cpu_percent(interval=None))
        self._cores = detect_cpu_count() if cores is None else max(1, int(cores))

        mode = config.mode
        throttle_pct = (
            config.max_sustained_cpu_pct + C.CONSERVATIVE_MARGIN_PCT
            if mode is ThermalMode.CONSERVATIVE
            else config.target_cpu_pct + C.THROTTLE_MARGIN_PCT
        )

        override = config.max_workload_override
        self._single_file = override == OVERRIDE_DISABLED
        if self._single_file:
            optimal, auto_scale = 1, False
        elif override == OVERRIDE_AUTO:
            optimal, auto_scale = detect_optimal_workload(mode, self._cores), True
        else:
            optimal, auto_scale = int(override), False

        self._state = WorkloadState(
            intensity=optimal,
            mode=mode,
            target_cpu_pct=config.target_cpu_pct,
            throttle_pct=throttle_pct,
            optimal_intensity=optimal,
            auto_scale=auto_scale,
        )
        self._running = False
        self._last_eval_at = 0.0
        self._last_eval_processed = 0
        self.evaluations: int = 0

        logger.info(
            "Governor: mode=%s cores=%d intensity=%d auto_scale=%s throttle>%.0f%%",
            mode.value, self._cores, optimal, auto_scale, throttle_pct,
        )

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    @property
    def state(self) -> WorkloadState:
        """Current state (read-only by convention)."""
        return self._state

    @property
    def cores(self) -> int:
        return self._cores

    @property
    def running(self) -> bool:
        """True between :meth:`start` and :meth:`stop` when auto-scaling."""
        return self._running

    def current_intensity(self) -> int:
        """Positive integer used to size processing chunks."""
        return self._state.intensity

    def chunk_size(self, yield_frequency: int) -> int:
        """
        Images per chunk: ``max(1, yield_frequency // intensity)``.

        With the override set to ``disabled`` every image is its own chunk.
        """
        if self._single_file:
            return 1
        return max(1, yield_frequency // self._state.intensity)

    def start(self, processed: int = 0) -> None:
        """Arm the periodic evaluation. No-op when scaling is disabled."""
        self._last_eval_at = self._clock()
        self._last_eval_processed = processed
        self._running = self._state.auto_scale
        if self._config.source is CpuSource.PSUTIL:
            self._cpu_sampler()  # first psutil.cpu_percent() call primes the counter

    def stop(self) -> None:
        """Tear down the periodic evaluation."""
        self._running = False

    def tick(self, processed: int) -> bool:
        """
        Evaluate if a period has elapsed since the last evaluation.

        Args:
            processed: Total images processed so far in this run.

        Returns:
            True if intensity changed.
        """
        if not self._running:
            return False
        now = self._clock()
        elapsed = now - self._last_eval_at
        if elapsed < self._config.evaluation_period_s:
            return False
        observed_rate = (processed - self._last_eval_processed) / elapsed if elapsed > 0 else 0.0
        self._last_eval_at = now
        self._last_eval_processed = processed
        return self.evaluate(self.measure_usage(observed_rate))

    def measure_usage(self, observed_rate: float) -> float:
        """CPU usage for the configured source given *observed_rate* images/s."""
        if self._config.source is CpuSource.PSUTIL:
            return float(self._cpu_sampler())
        return proxy_cpu_usage(observed_rate, self._config.baseline_images_per_sec)

    def usage_snapshot(self, observed_rate: float) -> float:
        """
        CPU usage for display, without sampling psutil.

        ``psutil.cpu_percent(interval=None)`` measures since its previous call,
        so only :meth:`tick` samples it; this returns the last evaluated value.
        """
        if self._config.source is CpuSource.PSUTIL:
            return self._state.last_usage_pct
        return proxy_cpu_usage(observed_rate, self._config.baseline_images_per_sec)

    def evaluate(self, usage_pct: float) -> bool:
        """
        Apply one throttle / scale-up decision for *usage_pct*.

        Intensity moves by at most one and stays within
        ``[1, optimal_intensity]``.

        Returns:
            True if intensity changed.
        """
        state = self._state
        state.last_usage_pct = usage_pct
        self.evaluations += 1
        before = state.intensity

        if self._config.thermal_throttle and usage_pct > state.throttle_pct and state.intensity > 1:
            state.intensity -= 1
        elif (
            usage_pct < state.target_cpu_pct - C.SCALE_UP_GAP_PCT
            and state.intensity < state.optimal_intensity
        ):
            state.intensity += 1

        if state.intensity != before:
            logger.info(
                "Governor: usage=%.1f%% intensity %d → %d", usage_pct, before, state.intensity
            )
            return True
        return False

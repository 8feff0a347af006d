"""
pixelbatch/core/config.py — Typed configuration loader for PixelBatch.

Loads config/pixelbatch.yaml and validates all values into typed dataclasses.
All downstream modules import from this module; never read YAML directly.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Union

import yaml

from pixelbatch.core.constants import CpuSource, OutputFormat, ThermalMode
from pixelbatch.core.errors import ConfigError

logger = logging.getLogger(__name__)

#: ``max_workload_override`` values other than a positive integer.
OVERRIDE_AUTO = "auto"
OVERRIDE_DISABLED = "disabled"


# ──────────────────────────────────────────────
# Dataclass hierarchy — mirrors pixelbatch.yaml
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class ImageConfig:
    """Target raster geometry and the source file extension."""

    width: int = 32
    height: int = 32
    channels: int = 3
    extension: str = ".png"

    @property
    def vector_length(self) -> int:
        """Number of floats in one normalised image."""
        return self.width * self.height * self.channels


@dataclass(frozen=True)
class BatchConfig:
    """Batch sizing and output container configuration."""

    batch_size: int = 1000
    output_format: str = "text"
    output_dir: str = "output"
    file_prefix: str = "batch"
    text_extension: str = "json"
    binary_extension: str = "bin"
    clean_stale_output: bool = True

    @property
    def format(self) -> OutputFormat:
        """Return ``output_format`` as an :class:`OutputFormat`."""
        return OutputFormat(self.output_format)

    @property
    def extension(self) -> str:
        """File extension for the selected container."""
        return self.binary_extension if self.format is OutputFormat.BINARY else self.text_extension


@dataclass(frozen=True)
class WorkloadConfig:
    """Workload governor tuning parameters."""

    thermal_mode: str = "conservative"
    target_cpu_pct: float = 60.0
    max_sustained_cpu_pct: float = 70.0
    max_workload_override: Union[str, int] = OVERRIDE_AUTO
    thermal_throttle: bool = True
    evaluation_period_s: float = 2.0
    baseline_images_per_sec: float = 400.0
    yield_frequency: int = 50
    cpu_source: str = "proxy"

    @property
    def mode(self) -> ThermalMode:
        """Return ``thermal_mode`` as a :class:`ThermalMode`."""
        return ThermalMode(self.thermal_mode)

    @property
    def source(self) -> CpuSource:
        """Return ``cpu_source`` as a :class:`CpuSource`."""
        return CpuSource(self.cpu_source)


@dataclass(frozen=True)
class MemoryConfig:
    """Memory ceiling and cleanup cadence."""

    memory_ceiling_mb: int = 0
    pool_slack: int = 16
    memory_check_interval: int = 500
    cleanup_every_batches: int = 5


@dataclass(frozen=True)
class ProgressConfig:
    """Progress reporting and cooperative yield cadence."""

    progress_interval: int = 100
    yield_delay_ms: float = 0.0


@dataclass(frozen=True)
class LabelsConfig:
    """Labels document location and the default label."""

    path: str = "labels.json"
    unknown_label: str = "unknown"


@dataclass(frozen=True)
class LoggingConfig:
    """Structured run log configuration."""

    level: str = "INFO"
    log_dir: str = "logs"
    jsonl: bool = True


@dataclass(frozen=True)
class PixelBatchConfig:
    """Root configuration object — single source of truth for all settings."""

    image: ImageConfig = field(default_factory=ImageConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    workload: WorkloadConfig = field(default_factory=WorkloadConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    labels: LabelsConfig = field(default_factory=LabelsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def pool_cap(self) -> int:
        """Free-list bound for the buffer pool."""
        return self.batch.batch_size + self.memory.pool_slack

    def with_overrides(self, **sections: dict[str, Any]) -> "PixelBatchConfig":
        """
        Return a copy with selected fields replaced, re-validated.

        Example::

            cfg.with_overrides(batch={"batch_size": 10, "output_format": "binary"})

        Args:
            sections: Section name → dict of field overrides.

        Returns:
            A new validated :class:`PixelBatchConfig`.
        """
        changes: dict[str, Any] = {}
        for name, values in sections.items():
            current = getattr(self, name, None)
            if current is None:
                raise ConfigError(f"Unknown config section: {name!r}")
            try:
                changes[name] = replace(current, **_coerce_section(name, values))
            except TypeError as exc:
                raise ConfigError(f"Invalid config value: {exc}") from exc
        updated = replace(self, **changes)
        _validate_config(updated)
        return updated


# ──────────────────────────────────────────────
# Loader
# ──────────────────────────────────────────────


def _coerce_section(name: str, raw: Any) -> dict:
    """
    Normalise a raw YAML section before it reaches a dataclass constructor.

    Args:
        name: Section name.
        raw: Value loaded from YAML.

    Returns:
        A dict safe to splat into the section dataclass.

    Raises:
        ConfigError: If the section is not a mapping.
    """
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config section {name!r} must be a mapping, got {type(raw).__name__}")
    values = dict(raw)
    if name == "workload" and "max_workload_override" in values:
        values["max_workload_override"] = parse_override(values["max_workload_override"])
    if name == "image" and "extension" in values:
        ext = str(values["extension"]).lower()
        values["extension"] = ext if ext.startswith(".") else f".{ext}"
    return values


def parse_override(value: Any) -> Union[str, int]:
    """
    Parse a ``max_workload_override`` value.

    Args:
        value: ``"auto"``, ``"disabled"``, an int, or a digit string.

    Returns:
        ``"auto"``, ``"disabled"`` or a positive int.

    Raises:
        ConfigError: For anything else.
    """
    if isinstance(value, bool):
        raise ConfigError(f"max_workload_override must not be a boolean, got {value}")
    if isinstance(value, int):
        return value
    text = str(value).strip().lower()
    if text in (OVERRIDE_AUTO, OVERRIDE_DISABLED):
        return text
    if text.isdigit():
        return int(text)
    raise ConfigError(
        f"max_workload_override must be 'auto', 'disabled' or a positive int, got {value!r}"
    )


def load_config(config_path: Path | str | None = None) -> PixelBatchConfig:
    """
    Load, validate, and return a PixelBatchConfig from a YAML file.

    The search order for the config file is:
    1. *config_path* argument (if provided)
    2. PIXELBATCH_CONFIG environment variable
    3. ``config/pixelbatch.yaml`` relative to the project root
    4. Built-in defaults (no file required)

    Args:
        config_path: Optional path to a ``pixelbatch.yaml`` file.

    Returns:
        A fully populated and frozen :class:`PixelBatchConfig` instance.

    Raises:
        ConfigError: If a YAML field has an invalid type or value.
        FileNotFoundError: If *config_path* is explicitly given but does not exist.
    """
    resolved_path: Path | None = None

    if config_path is not None:
        resolved_path = Path(config_path)
        if not resolved_path.exists():
            raise FileNotFoundError(f"Config file not found: {resolved_path}")
    elif "PIXELBATCH_CONFIG" in os.environ:
        resolved_path = Path(os.environ["PIXELBATCH_CONFIG"])
        if not resolved_path.exists():
            raise FileNotFoundError(
                f"PIXELBATCH_CONFIG points to missing file: {resolved_path}"
            )
    else:
        here = Path(__file__).resolve()
        for parent in [here.parent.parent.parent, Path.cwd()]:
            candidate = parent / "config" / "pixelbatch.yaml"
            if candidate.exists():
                resolved_path = candidate
                break

    raw: dict = {}
    if resolved_path is not None:
        logger.info("Loading config from: %s", resolved_path)
        with resolved_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file must be a YAML mapping, got: {type(loaded)}")
        raw = loaded
    else:
        logger.info("No config file found — using built-in defaults")

    unknown = set(raw) - set(PixelBatchConfig.__dataclass_fields__)
    if unknown:
        raise ConfigError(f"Unknown config sections: {sorted(unknown)}")

    try:
        config = PixelBatchConfig(
            image=ImageConfig(**_coerce_section("image", raw.get("image"))),
            batch=BatchConfig(**_coerce_section("batch", raw.get("batch"))),
            workload=WorkloadConfig(**_coerce_section("workload", raw.get("workload"))),
            memory=MemoryConfig(**_coerce_section("memory", raw.get("memory"))),
            progress=ProgressConfig(**_coerce_section("progress", raw.get("progress"))),
            labels=LabelsConfig(**_coerce_section("labels", raw.get("labels"))),
            logging=LoggingConfig(**_coerce_section("logging", raw.get("logging"))),
        )
    except TypeError as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc

    _validate_config(config)
    logger.debug("Config loaded: %s", config)
    return config


def _validate_config(config: PixelBatchConfig) -> None:
    """
    Validate cross-field constraints on the loaded configuration.

    Raises:
        ConfigError: If any configured value violates a hard constraint.
    """
    image, batch, workload = config.image, config.batch, config.workload
    memory, progress = config.memory, config.progress

    if image.width <= 0 or image.height <= 0:
        raise ConfigError(f"image dimensions must be positive, got {image.width}x{image.height}")
    if image.channels not in (1, 3, 4):
        raise ConfigError(f"image.channels must be 1, 3 or 4, got {image.channels}")
    if batch.batch_size <= 0:
        raise ConfigError(f"batch.batch_size must be positive, got {batch.batch_size}")
    if batch.output_format not in {f.value for f in OutputFormat}:
        raise ConfigError(
            f"batch.output_format must be 'text' or 'binary', got '{batch.output_format}'"
        )
    if not batch.file_prefix or any(sep in batch.file_prefix for sep in ("/", "\\")):
        raise ConfigError(f"batch.file_prefix must be a plain name, got {batch.file_prefix!r}")
    if workload.thermal_mode not in {m.value for m in ThermalMode}:
        raise ConfigError(
            f"workload.thermal_mode must be 'conservative' or 'performance', "
            f"got '{workload.thermal_mode}'"
        )
    if workload.cpu_source not in {s.value for s in CpuSource}:
        raise ConfigError(
            f"workload.cpu_source must be 'proxy' or 'psutil', got '{workload.cpu_source}'"
        )
    for name in ("target_cpu_pct", "max_sustained_cpu_pct"):
        value = getattr(workload, name)
        if not (0.0 < value <= 100.0):
            raise ConfigError(f"workload.{name} must be in (0, 100], got {value}")
    override = workload.max_workload_override
    if isinstance(override, int) and override < 1:
        raise ConfigError(f"workload.max_workload_override must be >= 1, got {override}")
    if isinstance(override, str) and override not in (OVERRIDE_AUTO, OVERRIDE_DISABLED):
        raise ConfigError(f"workload.max_workload_override invalid: {override!r}")
    if workload.evaluation_period_s <= 0:
        raise ConfigError(
            f"workload.evaluation_period_s must be positive, got {workload.evaluation_period_s}"
        )
    if workload.baseline_images_per_sec <= 0:
        raise ConfigError(
            "workload.baseline_images_per_sec must be positive, "
            f"got {workload.baseline_images_per_sec}"
        )
    if workload.yield_frequency < 1:
        raise ConfigError(f"workload.yield_frequency must be >= 1, got {workload.yield_frequency}")
    if memory.memory_ceiling_mb < 0:
        raise ConfigError(f"memory.memory_ceiling_mb must be >= 0, got {memory.memory_ceiling_mb}")
    if memory.pool_slack < 0:
        raise ConfigError(f"memory.pool_slack must be >= 0, got {memory.pool_slack}")
    if memory.memory_check_interval < 1 or memory.cleanup_every_batches < 1:
        raise ConfigError("memory check/cleanup intervals must be >= 1")
    if progress.progress_interval < 1:
        raise ConfigError(f"progress.progress_interval must be >= 1, got {progress.progress_interval}")
    if progress.yield_delay_ms < 0:
        raise ConfigError(f"progress.yield_delay_ms must be >= 0, got {progress.yield_delay_ms}")
    if config.logging.level not in ("DEBUG", "INFO", "WARN"):
        raise ConfigError(f"logging.level must be DEBUG, INFO or WARN, got {config.logging.level!r}")

"""
tests/test_config.py — Tests for the YAML config loader, overrides and run logger.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from pixelbatch.core.config import (
    OVERRIDE_AUTO,
    OVERRIDE_DISABLED,
    PixelBatchConfig,
    load_config,
    parse_override,
)
from pixelbatch.core.constants import C, OutputFormat, ThermalMode
from pixelbatch.core.errors import ConfigError
from pixelbatch.core.logger import RunLogger, configure_logger, get_logger


@pytest.fixture(autouse=True)
def _no_env_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PIXELBATCH_CONFIG", raising=False)


def _write_yaml(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "pixelbatch.yaml"
    path.write_text(text, encoding="utf-8")
    return path


# ──────────────────────────────────────────────────────────────
# Loading
# ──────────────────────────────────────────────────────────────

def test_bundled_config_matches_defaults() -> None:
    assert load_config() == PixelBatchConfig()


def test_defaults() -> None:
    cfg = PixelBatchConfig()
    assert cfg.image.vector_length == 32 * 32 * 3
    assert cfg.batch.batch_size == 1000
    assert cfg.batch.format is OutputFormat.TEXT
    assert cfg.batch.extension == "json"
    assert cfg.workload.mode is ThermalMode.CONSERVATIVE
    assert cfg.workload.max_workload_override == OVERRIDE_AUTO
    assert cfg.pool_cap == 1000 + 16


def test_partial_yaml_overrides_only_named_keys(tmp_path: Path) -> None:
    path = _write_yaml(tmp_path, """
batch:
  batch_size: 250
  output_format: binary
image:
  extension: PNG
workload:
  max_workload_override: "4"
""")
    cfg = load_config(path)
    assert cfg.batch.batch_size == 250
    assert cfg.batch.extension == "bin"
    assert cfg.image.extension == ".png"
    assert cfg.workload.max_workload_override == 4
    assert cfg.image.width == 32


def test_env_variable_is_honoured(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write_yaml(tmp_path, "batch:\n  batch_size: 7\n")
    monkeypatch.setenv("PIXELBATCH_CONFIG", str(path))
    assert load_config().batch.batch_size == 7


def test_missing_explicit_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yaml")


@pytest.mark.parametrize(
    "text",
    [
        "bogus:\n  a: 1\n",
        "batch:\n  not_a_key: 1\n",
        "batch:\n  output_format: xml\n",
        "batch:\n  batch_size: 0\n",
        "image:\n  channels: 2\n",
        "workload:\n  thermal_mode: turbo\n",
        "workload:\n  max_workload_override: sometimes\n",
        "workload:\n  max_workload_override: 0\n",
        "workload:\n  target_cpu_pct: 150\n",
        "batch: [1, 2]\n",
        "- just\n- a list\n",
    ],
)
def test_invalid_values_raise_config_error(tmp_path: Path, text: str) -> None:
    with pytest.raises(ConfigError):
        load_config(_write_yaml(tmp_path, text))


@pytest.mark.parametrize(
    "raw, expected",
    [("auto", OVERRIDE_AUTO), ("DISABLED", OVERRIDE_DISABLED), (3, 3), ("12", 12)],
)
def test_parse_override(raw, expected) -> None:
    assert parse_override(raw) == expected


def test_parse_override_rejects_booleans() -> None:
    with pytest.raises(ConfigError):
        parse_override(True)


def test_with_overrides_revalidates() -> None:
    cfg = PixelBatchConfig().with_overrides(batch={"batch_size": 10}, workload={"max_workload_override": "2"})
    assert cfg.batch.batch_size == 10
    assert cfg.workload.max_workload_override == 2
    with pytest.raises(ConfigError):
        cfg.with_overrides(batch={"batch_size": -1})
    with pytest.raises(ConfigError):
        cfg.with_overrides(nothing={"a": 1})
    with pytest.raises(ConfigError):
        cfg.with_overrides(batch={"unknown_field": 1})


# ──────────────────────────────────────────────────────────────
# Run logger
# ──────────────────────────────────────────────────────────────

def _entries(log: RunLogger) -> list[dict]:
    log.flush()
    assert log.current_path is not None
    return [json.loads(line) for line in log.current_path.read_text(encoding="utf-8").splitlines()]


def test_logger_writes_jsonl_entries(tmp_path: Path) -> None:
    log = configure_logger(tmp_path / "logs")
    assert get_logger() is log
    log.info("scan", "files_listed", {"count": 3})
    log.perf("writer", "batch_written", 12.34567, {"batch": 0})

    entries = _entries(log)
    assert entries[0]["event"] == "startup"
    assert entries[1]["phase"] == "scan"
    assert entries[1]["data"] == {"count": 3}
    assert "latency_ms" not in entries[1]
    assert entries[2]["level"] == "PERF"
    assert entries[2]["latency_ms"] == 12.346


def test_logger_counts_warnings(tmp_path: Path) -> None:
    log = configure_logger(tmp_path / "logs")
    log.warn("convert", "decode_failed", {"path": "x.png"})
    log.error("writer", "batch_failed")
    assert log.warnings == 1
    assert [e["level"] for e in _entries(log)][-2:] == ["WARN", "ERROR"]


def test_disabled_logger_writes_nothing(tmp_path: Path) -> None:
    log = configure_logger(tmp_path / "logs", enabled=False)
    log.info("scan", "files_listed")
    assert log.current_path is None
    assert not (tmp_path / "logs").exists()


def test_ram_check_warns_when_memory_is_low(caplog: pytest.LogCaptureFixture) -> None:
    low = SimpleNamespace(available=256 * 1024 ** 2, total=2 * 1024 ** 3)
    with patch("pixelbatch.core.constants.psutil.virtual_memory", return_value=low):
        with caplog.at_level(logging.WARNING, logger="pixelbatch.core.constants"):
            C.validate()
    assert any("RAM warning" in r.getMessage() for r in caplog.records)


def test_ram_check_propagates_psutil_errors() -> None:
    with patch("pixelbatch.core.constants.psutil.virtual_memory", side_effect=OSError("no /proc")):
        with pytest.raises(OSError):
            C.validate()

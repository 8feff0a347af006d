"""
pixelbatch/core/logger.py — JSONL structured run logger for PixelBatch.

RunLogger writes one JSON object per line to logs/pixelbatch_{date}.jsonl,
rotating automatically each day. WARN/ERROR are also mirrored to Python
stdlib logging (stderr). Thread-safe via threading.Lock.

Usage::

    from pixelbatch.core.logger import get_logger
    log = get_logger()
    log.info("scan", "files_listed", {"count": 2500})
    log.perf("writer", "batch_flushed", latency_ms=41.7, data={"batch": 3})
"""

from __future__ import annotations

import json
import logging
import platform
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

# ── stdlib mirror logger (stderr for WARN+) ──────────────────
_stdlib = logging.getLogger("pixelbatch.run")
if not _stdlib.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s — %(message)s"))
    _stdlib.addHandler(_handler)
_stdlib.setLevel(logging.DEBUG)
_stdlib.propagate = False

# ── Log directory (relative to the working directory) ────────
_LOG_DIR = Path("logs")
_JSONL_ENABLED = True

# ── Singleton storage ─────────────────────────────────────────
_instance: Optional["RunLogger"] = None
_instance_lock = threading.Lock()


class RunLogger:
    """
    Singleton JSONL structured logger for conversion runs.

    Each call to a log method appends a single JSON line to
    ``<log_dir>/pixelbatch_{YYYY-MM-DD}.jsonl``. A new file is opened
    automatically when the calendar date changes.

    Fields written per entry:

    .. code-block:: json

        {
          "timestamp_iso": "2026-10-16T09:12:03.512+00:00",
          "level": "INFO",
          "phase": "pipeline",
          "event": "progress",
          "data": {"processed": 500, "images_per_sec": 812.4},
          "latency_ms": 41.7
        }

    ``latency_ms`` is omitted when ``None``.

    Do not instantiate directly — use :func:`get_logger`.

    Args:
        log_dir: Directory that receives the JSONL files.
        enabled: When ``False`` nothing is written to disk; WARN+ entries are
            still mirrored to stderr.
    """

    def __init__(self, log_dir: Path, enabled: bool = True) -> None:
        self._lock = threading.Lock()
        self._file: Optional[Any] = None
        self._current_date: str = ""
        self._log_dir = Path(log_dir)
        self._enabled = enabled
        self.warnings: int = 0
        if self._enabled:
            self._open_file()
            self._write_startup()

    @property
    def log_dir(self) -> Path:
        """Directory receiving the JSONL files."""
        return self._log_dir

    @property
    def current_path(self) -> Optional[Path]:
        """Path of the file currently being written, if any."""
        if not self._enabled or not self._current_date:
            return None
        return self._log_dir / f"pixelbatch_{self._current_date}.jsonl"

    # ──────────────────────────────────────────
    # Public logging methods
    # ──────────────────────────────────────────

    def debug(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a DEBUG-level entry (file only)."""
        self._write("DEBUG", phase, event, data)

    def info(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """
        Write an INFO-level structured log entry.

        Args:
            phase: Subsystem (e.g. ``'scan'``, ``'writer'``, ``'governor'``).
            event: Short event identifier (e.g. ``'batch_flushed'``).
            data: Optional dict of additional key-value context.
        """
        self._write("INFO", phase, event, data)

    def warn(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a WARN-level entry and mirror to stderr via stdlib logging."""
        self.warnings += 1
        self._write("WARN", phase, event, data)
        _stdlib.warning("[%s] %s | %s", phase, event, data or {})

    def error(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write an ERROR-level entry and mirror to stderr via stdlib logging."""
        self._write("ERROR", phase, event, data)
        _stdlib.error("[%s] %s | %s", phase, event, data or {})

    def perf(
        self,
        phase: str,
        event: str,
        latency_ms: float,
        data: Optional[dict] = None,
    ) -> None:
        """
        Write a PERF-level entry for latency tracking.

        Args:
            phase: Subsystem the measurement belongs to.
            event: What was measured.
            latency_ms: Measured latency in milliseconds.
            data: Optional additional context dict.
        """
        self._write("PERF", phase, event, data, latency_ms=latency_ms)

    def flush(self) -> None:
        """Flush the underlying file buffer immediately."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.flush()

    def close(self) -> None:
        """Close the current file. Later writes reopen it."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.close()
            self._file = None
            self._current_date = ""

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _write(
        self,
        level: str,
        phase: str,
        event: str,
        data: Optional[dict],
        latency_ms: Optional[float] = None,
    ) -> None:
        """
        Serialise and append one JSON line to the log file.

        Performs the daily rotation check on every write.
        """
        if not self._enabled:
            return
        now = datetime.now(tz=timezone.utc)
        record: dict[str, Any] = {
            "timestamp_iso": now.isoformat(),
            "level": level,
            "phase": phase,
            "event": event,
            "data": data or {},
        }
        if latency_ms is not None:
            record["latency_ms"] = round(latency_ms, 3)

        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)

        with self._lock:
            self._rotate_if_needed(now)
            if self._file and not self._file.closed:
                self._file.write(line + "\n")

    def _rotate_if_needed(self, now: datetime) -> None:
        """
        Open a new log file if the calendar date has changed.

        Called inside ``self._lock`` — do not call from outside.
        """
        today = now.strftime("%Y-%m-%d")
        if today != self._current_date or self._file is None:
            if self._file and not self._file.closed:
                self._file.close()
            self._current_date = today
            self._log_dir.mkdir(parents=True, exist_ok=True)
            log_path = self._log_dir / f"pixelbatch_{today}.jsonl"
            self._file = open(log_path, "a", encoding="utf-8", buffering=1)  # noqa: SIM115

    def _open_file(self) -> None:
        """Open the log file for today's date (called once on init)."""
        now = datetime.now(tz=timezone.utc)
        with self._lock:
            self._rotate_if_needed(now)

    def _write_startup(self) -> None:
        """Write a startup entry with Python version and platform."""
        self.info(
            phase="system",
            event="startup",
            data={
                "python_version": sys.version,
                "platform": platform.platform(),
                "hostname": platform.node(),
                "timestamp_local": datetime.now().isoformat(),
            },
        )


# ──────────────────────────────────────────────────────────────
# Singleton accessor
# ──────────────────────────────────────────────────────────────

def configure_logger(log_dir: Path | str, enabled: bool = True) -> RunLogger:
    """
    Point the singleton at *log_dir* and return a fresh instance.

    Any previously open file is closed. Call once at startup, before the
    first :func:`get_logger`.
    """
    global _instance, _LOG_DIR, _JSONL_ENABLED
    with _instance_lock:
        if _instance is not None:
            _instance.close()
        _LOG_DIR = Path(log_dir)
        _JSONL_ENABLED = enabled
        _instance = RunLogger(_LOG_DIR, enabled=_JSONL_ENABLED)
        return _instance


def get_logger() -> RunLogger:
    """
    Return the singleton :class:`RunLogger` instance.

    Thread-safe: the first call creates the instance; subsequent calls
    return the same object without acquiring the creation lock.
    """
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                _instance = RunLogger(_LOG_DIR, enabled=_JSONL_ENABLED)
    return _instance

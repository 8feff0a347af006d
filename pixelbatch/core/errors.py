"""
pixelbatch/core/errors.py — Exception taxonomy for the conversion pipeline.

Only :class:`PathInvalidError` and :class:`EmptyDatasetError` abort a run.
Everything else is caught at the pipeline seam, counted, and reported in the
run summary so data loss is never silent.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class PixelBatchError(Exception):
    """Base class for all pixelbatch errors."""


class ConfigError(PixelBatchError, ValueError):
    """A configuration value is missing, mistyped or out of range."""


class PathInvalidError(PixelBatchError):
    """The dataset path is empty, unsafe, missing or not a directory."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Invalid dataset path {path!r}: {reason}")
        self.path = path
        self.reason = reason


class EmptyDatasetError(PixelBatchError):
    """The dataset directory contains no files with the configured extension."""

    def __init__(self, path: Path, extension: str) -> None:
        super().__init__(f"No '{extension}' images found in {path}")
        self.path = path
        self.extension = extension


class DecodeFailedError(PixelBatchError):
    """An image could not be read, decoded or resized."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Failed to decode {path}: {reason}")
        self.path = path
        self.reason = reason


class SizeMismatchError(PixelBatchError):
    """A converted vector does not have ``width * height * channels`` values."""

    def __init__(self, image_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Image {image_id!r} produced {actual} values, expected {expected}"
        )
        self.image_id = image_id
        self.expected = expected
        self.actual = actual


class BatchWriteError(PixelBatchError):
    """A batch file could not be created or written. The batch is lost."""

    def __init__(self, path: Path, batch_number: int, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Failed to write batch {batch_number} to {path}: {cause}")
        self.path = path
        self.batch_number = batch_number
        self.cause = cause


class LabelsUnavailable(PixelBatchError):
    """The labels document is missing or unparseable. Never raised past the loader."""


class BatchFormatError(PixelBatchError, ValueError):
    """A batch file on disk is truncated or does not match its declared layout."""

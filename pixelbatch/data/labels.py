"""
pixelbatch/data/labels.py — Best-effort labels document loader.

The document is ``{"labels": {"<id>": "<label>", ...}}``. A missing or
unparseable document never fails a run: every lookup degrades to the unknown
label and a warning is recorded.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ValidationError, field_validator

from pixelbatch.core.constants import C
from pixelbatch.core.errors import LabelsUnavailable

logger = logging.getLogger(__name__)


class LabelsDocument(BaseModel):
    """
    Pydantic view of the labels document.

    Non-string label values are coerced with ``str()``; ids are kept as the
    JSON object keys.
    """

    labels: dict[str, str]

    @field_validator("labels", mode="before")
    @classmethod
    def coerce_values(cls, v: Any) -> Any:
        """
        Accept numeric or boolean labels by stringifying them.

        Args:
            v: Raw ``labels`` value.

        Returns:
            A ``dict[str, str]`` when *v* is a mapping, else *v* unchanged
            so the type check reports it.
        """
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items() if val is not None}
        return v


class LabelLookup:
    """
    ``image_id → label`` mapping with an unknown fallback.

    Args:
        labels: Known labels.
        unknown_label: Returned for ids not in *labels*.
        available: False when the source document could not be loaded.
        warning: Why the document was unavailable, if it was.
    """

    def __init__(
        self,
        labels: Optional[dict[str, str]] = None,
        unknown_label: str = C.UNKNOWN_LABEL,
        available: bool = True,
        warning: Optional[str] = None,
    ) -> None:
        self._labels = dict(labels or {})
        self._unknown = unknown_label
        self.available = available
        self.warning = warning
        self.misses: int = 0

    def get(self, image_id: str) -> str:
        """Label for *image_id*, or the unknown label."""
        label = self._labels.get(image_id)
        if label is None:
            self.misses += 1
            return self._unknown
        return label

    def __len__(self) -> int:
        return len(self._labels)

    def __contains__(self, image_id: object) -> bool:
        return image_id in self._labels


def parse_labels(path: Path) -> dict[str, str]:
    """
    Strictly parse the labels document at *path*.

    Raises:
        LabelsUnavailable: File missing, unreadable, not JSON, or wrong shape.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise LabelsUnavailable(f"cannot read {path}: {exc}") from exc
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LabelsUnavailable(f"{path} is not valid JSON: {exc}") from exc
    try:
        return LabelsDocument.model_validate(raw).labels
    except ValidationError as exc:
        raise LabelsUnavailable(f"{path} has no usable 'labels' mapping: {exc}") from exc


def load_labels(path: Optional[Path], unknown_label: str = C.UNKNOWN_LABEL) -> LabelLookup:
    """
    Load a :class:`LabelLookup`, degrading to all-unknown on any failure.

    Args:
        path: Labels document, or ``None`` for no labels.
        unknown_label: Default label.
    """
    if path is None:
        return LabelLookup(unknown_label=unknown_label, available=False, warning="no labels path")
    try:
        labels = parse_labels(path)
    except LabelsUnavailable as exc:
        logger.warning("Labels unavailable, using %r for every image: %s", unknown_label, exc)
        return LabelLookup(unknown_label=unknown_label, available=False, warning=str(exc))
    logger.info("Loaded %d labels from %s", len(labels), path)
    return LabelLookup(labels, unknown_label=unknown_label)

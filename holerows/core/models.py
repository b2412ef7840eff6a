"""Data model shared by the row-detection engine and its callers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Hashable

import numpy as np


class PatternType(str, Enum):
    """Overall geometry class of a point set."""

    STRAIGHT = "straight"
    CURVED = "curved"
    MULTI_PATTERN = "multi_pattern"


class RowShape(str, Enum):
    """Shape flag of one detected row."""

    STRAIGHT = "straight"
    CURVED = "curved"


class DirectionType(str, Enum):
    """Position numbering direction across adjacent rows."""

    FORWARD = "forward"
    SERPENTINE = "serpentine"


class SubPatternRole(str, Enum):
    """Role tag of a sub-pattern relative to the main pattern."""

    MAIN = "main"
    SECONDARY = "secondary"
    BATTER = "batter"
    BUFFER = "buffer"


class LayoutStyle(str, Enum):
    """Offset layout of adjacent rows."""

    SQUARE = "square"
    STAGGERED = "staggered"
    IRREGULAR = "irregular"
    UNDETERMINED = "undetermined"


@dataclass(frozen=True)
class HolePoint:
    """Caller-owned hole position.

    Parameters
    ----------
    hole_id : Hashable
        Unique hole identifier.
    x, y : float
        Planar coordinates in metres.
    z : float, optional
        Collar elevation, carried through but unused by the 2D analysis.
    sequence_token : str | None, optional
        Operator ordering hint such as ``"17"`` or ``"B07"``.
    """

    hole_id: Hashable
    x: float
    y: float
    z: float = 0.0
    sequence_token: str | None = None


@dataclass(frozen=True)
class DetectedRow:
    """One ordered row of point indices.

    ``indices`` is ordered by position, so ``indices[0]`` holds position 1.
    Bearings are compass degrees (0 = north, 90 = east).
    """

    row_index: int
    indices: tuple[int, ...]
    shape: RowShape = RowShape.STRAIGHT
    direction_deg: float = 0.0
    start_bearing_deg: float = 0.0
    end_bearing_deg: float = 0.0
    sub_pattern: int = 0
    method: str = ""

    def __len__(self) -> int:
        return len(self.indices)

    def reversed(self) -> DetectedRow:
        """Return the same row traversed from the other end."""
        return replace(
            self,
            indices=tuple(reversed(self.indices)),
            direction_deg=(self.direction_deg + 180.0) % 360.0,
            start_bearing_deg=(self.end_bearing_deg + 180.0) % 360.0,
            end_bearing_deg=(self.start_bearing_deg + 180.0) % 360.0,
        )


@dataclass(frozen=True)
class SubPattern:
    """Spatially connected, orientation-homogeneous group of points."""

    indices: tuple[int, ...]
    role: SubPatternRole = SubPatternRole.MAIN
    orientation_deg: float = 0.0
    pattern_type: PatternType = PatternType.STRAIGHT
    depth: int = 0


@dataclass(frozen=True)
class BurdenSpacingMetrics:
    """Spacing, burden and layout statistics of a row set."""

    mean_spacing: float = 0.0
    spacing_std: float = 0.0
    spacing_cv: float = 0.0
    mean_burden: float = 0.0
    burden_std: float = 0.0
    burden_cv: float = 0.0
    offset_ratio: float = 0.0
    layout: LayoutStyle = LayoutStyle.UNDETERMINED
    row_count: int = 0
    min_row_size: int = 0
    max_row_size: int = 0
    mean_row_size: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert metrics into a plain serializable dict."""
        return {
            "mean_spacing": float(self.mean_spacing),
            "spacing_std": float(self.spacing_std),
            "spacing_cv": float(self.spacing_cv),
            "mean_burden": float(self.mean_burden),
            "burden_std": float(self.burden_std),
            "burden_cv": float(self.burden_cv),
            "offset_ratio": float(self.offset_ratio),
            "layout": self.layout.value,
            "row_count": int(self.row_count),
            "min_row_size": int(self.min_row_size),
            "max_row_size": int(self.max_row_size),
            "mean_row_size": float(self.mean_row_size),
        }


@dataclass(frozen=True)
class PatternResult:
    """Labelled outcome of one detection run.

    Every input index appears in exactly one row or in ``orphan_indices``.

    Examples
    --------
    >>> result.labels()[hole_id]
    (1, 3)
    """

    hole_ids: tuple[Hashable, ...]
    rows: tuple[DetectedRow, ...]
    pattern_type: PatternType
    sub_patterns: tuple[SubPattern, ...] = ()
    direction: DirectionType = DirectionType.FORWARD
    direction_confidence: float = 0.0
    confidence: float = 0.0
    metrics: BurdenSpacingMetrics = field(default_factory=BurdenSpacingMetrics)
    warnings: tuple[str, ...] = ()
    orphan_indices: tuple[int, ...] = ()
    methods: tuple[str, ...] = ()

    @property
    def serpentine(self) -> bool:
        """Whether position numbering alternates between rows."""
        return self.direction is DirectionType.SERPENTINE

    @property
    def sub_pattern_count(self) -> int:
        return len(self.sub_patterns)

    @property
    def orphan_point_ids(self) -> list[Hashable]:
        return [self.hole_ids[index] for index in self.orphan_indices]

    def labels(self) -> dict[Hashable, tuple[int, int]]:
        """Map each assigned hole id to ``(row_index, position_index)``.

        Returns
        -------
        dict[Hashable, tuple[int, int]]
            One-based row and position per assigned hole. Orphans are absent.
        """
        label_map: dict[Hashable, tuple[int, int]] = {}
        for row in self.rows:
            for position, point_index in enumerate(row.indices, start=1):
                label_map[self.hole_ids[point_index]] = (row.row_index, position)
        return label_map

    def row_assignments(self) -> tuple[np.ndarray, np.ndarray]:
        """Return per-index ``(row_id, position_id)`` arrays, ``-1`` for orphans."""
        row_id = np.full(len(self.hole_ids), -1, dtype=np.int64)
        position_id = np.full(len(self.hole_ids), -1, dtype=np.int64)
        for row in self.rows:
            for position, point_index in enumerate(row.indices, start=1):
                row_id[point_index] = row.row_index
                position_id[point_index] = position
        return row_id, position_id

    def row_by_index(self, row_index: int) -> DetectedRow:
        """Look up one row by its row index."""
        for row in self.rows:
            if row.row_index == row_index:
                return row
        raise ValueError(f"unknown row index: {row_index}")

    def row_of(self, point_index: int) -> DetectedRow | None:
        """Row holding ``point_index``, or ``None`` for an orphan."""
        for row in self.rows:
            if point_index in row.indices:
                return row
        return None

    def to_report(self) -> dict[str, Any]:
        """Build the plain report payload consumed by hosts."""
        return {
            "pattern_type": self.pattern_type.value,
            "sub_pattern_count": self.sub_pattern_count,
            "serpentine": self.serpentine,
            "direction_confidence": float(self.direction_confidence),
            "confidence": float(self.confidence),
            "burden_spacing_metrics": self.metrics.to_dict(),
            "warnings": list(self.warnings),
            "orphan_point_ids": self.orphan_point_ids,
            "row_count": len(self.rows),
            "methods": list(self.methods),
        }

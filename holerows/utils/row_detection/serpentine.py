"""Serpentine (boustrophedon) direction analysis.

Row shape and position direction are independent: this module only looks at
where consecutive rows start and end, never at how they bend.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from holerows.core.config import DetectionConfig
from holerows.core.models import DirectionType
from holerows.utils.row_detection.row_geometry import _validate_points, path_bearings


@dataclass(frozen=True)
class DirectionAnalysis:
    """Outcome of comparing row ends across adjacent row pairs."""

    direction: DirectionType
    confidence: float
    linked: tuple[bool, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ReversalCue:
    """Bearing reversals observed along a token-ordered path."""

    reversal_positions: tuple[int, ...]
    interval_cv: float
    is_serpentine: bool


def analyze_direction(
    points_xy: np.ndarray,
    rows: Sequence[Sequence[int]],
    row_groups: Sequence[int] | None = None,
) -> DirectionAnalysis:
    """Decide whether position numbering runs forward or serpentine.

    A pair of adjacent rows is serpentine-linked when the end of the first
    row is closer to the start of the second than the two starts are to
    each other.

    Parameters
    ----------
    points_xy : numpy.ndarray
        All point coordinates with shape ``(N, 2)``.
    rows : Sequence[Sequence[int]]
        Ordered rows in numbering order.
    row_groups : Sequence[int] | None, optional
        Sub-pattern id per row; only rows of the same group are compared.

    Returns
    -------
    DirectionAnalysis
        Majority direction and the share of pairs agreeing with it.

    Examples
    --------
    >>> xy = np.asarray([[0, 0], [3, 0], [3, 3], [0, 3]], dtype=float)
    >>> analyze_direction(xy, [[0, 1], [2, 3]]).direction.value
    'serpentine'
    """
    points_array = _validate_points(points_xy)
    linked: list[bool] = []
    for row_pos in range(len(rows) - 1):
        if row_groups is not None and row_groups[row_pos] != row_groups[row_pos + 1]:
            continue
        current = rows[row_pos]
        following = rows[row_pos + 1]
        if len(current) == 0 or len(following) == 0:
            continue
        linked.append(_is_linked(points_array, current, following))
    if not linked:
        return DirectionAnalysis(DirectionType.FORWARD, 0.0, ())
    linked_count = sum(linked)
    if linked_count * 2 > len(linked):
        direction = DirectionType.SERPENTINE
        agreeing = linked_count
    else:
        direction = DirectionType.FORWARD
        agreeing = len(linked) - linked_count
    return DirectionAnalysis(direction, agreeing / len(linked), tuple(linked))


def apply_direction(
    rows: Sequence[Sequence[int]],
    direction: DirectionType,
) -> list[list[int]]:
    """Re-orient rows for a numbering direction.

    ``FORWARD`` aligns every row with the first one; ``SERPENTINE`` reverses
    every second row relative to the first.
    """
    oriented: list[list[int]] = []
    for row_pos, row in enumerate(rows):
        ordered = list(row)
        if direction is DirectionType.SERPENTINE and row_pos % 2 == 1:
            ordered.reverse()
        oriented.append(ordered)
    return oriented


def align_rows_forward(
    points_xy: np.ndarray,
    rows: Sequence[Sequence[int]],
) -> list[list[int]]:
    """Orient all rows to travel the same way as the first multi-point row."""
    points_array = _validate_points(points_xy)
    reference: np.ndarray | None = None
    aligned: list[list[int]] = []
    for row in rows:
        ordered = list(row)
        if len(ordered) >= 2:
            travel = points_array[ordered[-1]] - points_array[ordered[0]]
            if reference is None:
                reference = travel
            elif float(np.dot(travel, reference)) < 0.0:
                ordered.reverse()
        aligned.append(ordered)
    return aligned


def detect_sequence_reversals(
    points_xy: np.ndarray,
    order: np.ndarray,
    config: DetectionConfig,
) -> ReversalCue:
    """Look for regular bearing reversals along a token-ordered path.

    Parameters
    ----------
    points_xy : numpy.ndarray
        Subset coordinates with shape ``(N, 2)``.
    order : numpy.ndarray
        Token order of the subset.
    config : DetectionConfig
        Supplies ``reversal_deg``.

    Returns
    -------
    ReversalCue
        Reversal positions and whether they suggest serpentine numbering.
    """
    points_array = _validate_points(points_xy)
    order_array = np.asarray(order, dtype=np.int64)
    if order_array.size < 4:
        return ReversalCue((), 0.0, False)
    bearings = path_bearings(points_array[order_array])
    positions: list[int] = []
    for step in range(1, bearings.size):
        if positions and positions[-1] == step - 1:
            continue
        lookback = bearings[max(0, step - 2) : step]
        change = np.abs(bearings[step] - lookback) % 360.0
        change = np.where(change > 180.0, 360.0 - change, change)
        if float(change.max()) > config.reversal_deg:
            positions.append(step)
    if len(positions) < 2:
        return ReversalCue(tuple(positions), 0.0, False)
    intervals = np.diff(np.asarray([0] + positions, dtype=np.float64))
    mean = float(intervals.mean())
    cv = float(intervals.std() / mean) if mean > 0 else 0.0
    return ReversalCue(tuple(positions), cv, cv < 0.5)


def _is_linked(
    points_array: np.ndarray,
    current: Sequence[int],
    following: Sequence[int],
) -> bool:
    """Whether ``following`` starts where ``current`` ended."""
    start_i = points_array[current[0]]
    end_i = points_array[current[-1]]
    start_next = points_array[following[0]]
    end_to_start = float(np.linalg.norm(end_i - start_next))
    start_to_start = float(np.linalg.norm(start_i - start_next))
    return end_to_start < start_to_start

"""Winding-sequence strategy for continuously numbered S-curve layouts."""

from __future__ import annotations

import math

import numpy as np
from loguru import logger

from holerows.core.errors import AlgorithmFailure
from holerows.utils.row_detection.point_set import NUMERIC_KIND
from holerows.utils.row_detection.row_geometry import (
    bearing_difference_deg,
    path_bearings,
)
from holerows.utils.row_detection.strategies import (
    DetectionContext,
    RowStrategy,
    StrategyKind,
    StrategyResult,
)

_MIN_POINTS = 6


class WindingSequenceStrategy(RowStrategy):
    """Cut one continuous token path into rows at direction reversals.

    The path must be fully and numerically tokened, free of large token gaps
    and free of spatial jumps. A break is placed where the next step turns
    away by more than ``snake_angle_deg`` from either the recent bearing
    window or the bearing the current row was entered with.
    """

    kind = StrategyKind.WINDING_SEQUENCE

    def detect(self, context: DetectionContext) -> StrategyResult:
        order = self._checked_order(context)
        config = context.config
        ordered_xy = context.points_xy[order]
        bearings = path_bearings(ordered_xy)
        breaks = find_winding_breaks(
            bearings,
            window=config.winding_window,
            angle_deg=config.snake_angle_deg,
            min_gap=config.winding_min_row,
        )
        if not breaks:
            raise AlgorithmFailure("no direction reversal along the token path")
        bounds = [0] + breaks + [order.size]
        rows = [order[start:stop] for start, stop in zip(bounds[:-1], bounds[1:])]
        small = sum(1 for row in rows if row.size < config.winding_min_row)
        small_fraction = small / len(rows)
        if small_fraction > 0.5:
            raise AlgorithmFailure("most winding rows are too short")
        steps = [
            np.linalg.norm(np.diff(context.points_xy[row], axis=0), axis=1)
            for row in rows
            if row.size >= 2
        ]
        step_cv = 0.0
        if steps:
            step_array = np.concatenate(steps)
            mean_step = float(step_array.mean())
            step_cv = float(step_array.std() / mean_step) if mean_step > 0 else 0.0
        confidence = 1.0 - 0.5 * small_fraction - 0.5 * min(1.0, step_cv)
        logger.debug(
            f"{self.name}: breaks at {breaks}, confidence {confidence:.2f}"
        )
        return self._result(context, rows, confidence, token_ordered=True)

    def _checked_order(self, context: DetectionContext) -> np.ndarray:
        sequence = context.sequence
        config = context.config
        if sequence.kind != NUMERIC_KIND or not sequence.complete:
            raise AlgorithmFailure("winding needs complete numeric tokens")
        if not sequence.reliable:
            raise AlgorithmFailure("sequence tokens are not reliable")
        order = sequence.order
        if order.size < _MIN_POINTS:
            raise AlgorithmFailure(f"winding needs at least {_MIN_POINTS} points")
        token_gaps = np.diff(sequence.numbers[order])
        if token_gaps.size and int(token_gaps.max()) > config.winding_max_token_gap:
            raise AlgorithmFailure("token sequence has large gaps")
        steps = np.linalg.norm(np.diff(context.points_xy[order], axis=0), axis=1)
        median_step = float(np.median(steps))
        if median_step <= 0 or float(steps.max()) > config.winding_jump_factor * median_step:
            raise AlgorithmFailure("token path jumps between distant points")
        return order


def find_winding_breaks(
    bearings: np.ndarray,
    window: int = 4,
    angle_deg: float = 90.0,
    min_gap: int = 3,
) -> list[int]:
    """Locate row starts along a bearing sequence.

    Parameters
    ----------
    bearings : numpy.ndarray
        Step bearings of the ordered path; step ``m`` leaves point ``m``.
    window : int, optional
        Number of preceding steps averaged into the reference bearing.
    angle_deg : float, optional
        Turn strictly above which a break is placed.
    min_gap : int, optional
        Minimum number of points between two breaks.

    Returns
    -------
    list[int]
        Point positions that start a new row.

    Examples
    --------
    >>> find_winding_breaks(np.asarray([90, 90, 90, 0, 270, 270, 270.0]))
    [4]
    """
    bearing_array = np.asarray(bearings, dtype=np.float64)
    breaks: list[int] = []
    last_break = 0
    entry = float(bearing_array[0]) if bearing_array.size else 0.0
    for position in range(1, bearing_array.size):
        if position - last_break < min_gap:
            continue
        step = float(bearing_array[position])
        recent = bearing_array[max(last_break, position - window) : position]
        window_change = bearing_difference_deg(step, _circular_mean_deg(recent))
        entry_change = bearing_difference_deg(step, entry)
        if window_change > angle_deg or entry_change > angle_deg:
            breaks.append(position)
            last_break = position
            entry = step
    return breaks


def _circular_mean_deg(bearings: np.ndarray) -> float:
    """Circular mean of compass bearings."""
    radians = np.radians(np.asarray(bearings, dtype=np.float64))
    return float(
        math.degrees(math.atan2(float(np.sin(radians).sum()), float(np.cos(radians).sum())))
        % 360.0
    )

"""Tests for serpentine direction analysis and winding sequences."""

from __future__ import annotations

import numpy as np
import pytest

from holerows.core.config import DetectionConfig
from holerows.core.models import DirectionType
from holerows.utils.row_detection.row_geometry import path_bearings
from holerows.utils.row_detection.serpentine import (
    align_rows_forward,
    analyze_direction,
    apply_direction,
    detect_sequence_reversals,
)
from holerows.utils.row_detection.winding import (
    WindingSequenceStrategy,
    find_winding_breaks,
)

SNAKE_ROWS = [[0, 1, 2, 3, 4], [9, 8, 7, 6, 5], [10, 11, 12, 13, 14], [19, 18, 17, 16, 15]]
FORWARD_ROWS = [[0, 1, 2, 3, 4], [5, 6, 7, 8, 9], [10, 11, 12, 13, 14], [15, 16, 17, 18, 19]]


def _snake_order(snake_holes) -> np.ndarray:
    tokens = np.asarray([int(hole.sequence_token) for hole in snake_holes])
    return np.argsort(tokens)


def test_analyze_direction_square_example() -> None:
    """Two short rows joined end to start read as serpentine."""
    xy = np.asarray([[0, 0], [3, 0], [3, 3], [0, 3]], dtype=float)
    analysis = analyze_direction(xy, [[0, 1], [2, 3]])
    assert analysis.direction is DirectionType.SERPENTINE
    assert analysis.confidence == pytest.approx(1.0)
    assert analysis.linked == (True,)


def test_analyze_direction_on_grid(grid_points: np.ndarray) -> None:
    """Snaked rows are serpentine; parallel rows are forward."""
    snake = analyze_direction(grid_points, SNAKE_ROWS)
    assert snake.direction is DirectionType.SERPENTINE
    assert snake.linked == (True, True, True)
    forward = analyze_direction(grid_points, FORWARD_ROWS)
    assert forward.direction is DirectionType.FORWARD
    assert forward.confidence == pytest.approx(1.0)


def test_analyze_direction_skips_pairs_across_groups(grid_points: np.ndarray) -> None:
    """Rows of different sub-patterns are never compared."""
    analysis = analyze_direction(grid_points, SNAKE_ROWS, row_groups=[0, 0, 1, 1])
    assert len(analysis.linked) == 2


def test_analyze_direction_without_pairs_defaults_to_forward(grid_points: np.ndarray) -> None:
    """A single row gives no evidence either way."""
    analysis = analyze_direction(grid_points, [[0, 1, 2]])
    assert analysis.direction is DirectionType.FORWARD
    assert analysis.confidence == 0.0


def test_apply_direction_reverses_every_second_row() -> None:
    """Serpentine flips odd rows; forward keeps them."""
    rows = [[0, 1, 2], [3, 4, 5], [6, 7]]
    assert apply_direction(rows, DirectionType.SERPENTINE) == [[0, 1, 2], [5, 4, 3], [6, 7]]
    assert apply_direction(rows, DirectionType.FORWARD) == rows


def test_align_rows_forward_matches_first_row(grid_points: np.ndarray) -> None:
    """Every row should travel the same way as the first."""
    assert align_rows_forward(grid_points, SNAKE_ROWS) == FORWARD_ROWS


def test_detect_sequence_reversals_on_snake(snake_holes) -> None:
    """Regularly spaced turn-backs are a serpentine cue."""
    points = np.asarray([[hole.x, hole.y] for hole in snake_holes])
    cue = detect_sequence_reversals(points, _snake_order(snake_holes), DetectionConfig())
    assert cue.reversal_positions == (5, 10, 15)
    assert cue.interval_cv == pytest.approx(0.0)
    assert cue.is_serpentine


def test_detect_sequence_reversals_on_straight_path() -> None:
    """A straight path never reverses."""
    points = np.asarray([[3.0 * index, 0.0] for index in range(6)])
    cue = detect_sequence_reversals(points, np.arange(6), DetectionConfig())
    assert cue.reversal_positions == ()
    assert not cue.is_serpentine


def test_find_winding_breaks_example() -> None:
    """A U-turn breaks after the perpendicular connector step."""
    bearings = np.asarray([90, 90, 90, 0, 270, 270, 270.0])
    assert find_winding_breaks(bearings) == [4]


def test_find_winding_breaks_on_snake(snake_holes) -> None:
    """Each row of the snake starts a new run."""
    points = np.asarray([[hole.x, hole.y] for hole in snake_holes])
    bearings = path_bearings(points[_snake_order(snake_holes)])
    assert find_winding_breaks(bearings) == [5, 10, 15]


def test_find_winding_breaks_honours_min_gap() -> None:
    """Breaks closer than the minimum gap are ignored."""
    bearings = np.asarray([90.0, 270.0, 90.0, 270.0])
    assert find_winding_breaks(bearings, min_gap=5) == []


def test_winding_strategy_cuts_snake(snake_holes, context_factory) -> None:
    """The winding strategy should return the four snaked rows in token order."""
    points = np.asarray([[hole.x, hole.y] for hole in snake_holes])
    tokens = [hole.sequence_token for hole in snake_holes]
    result = WindingSequenceStrategy().detect(context_factory(points, tokens))
    assert [row.tolist() for row in result.rows] == SNAKE_ROWS
    assert result.token_ordered
    assert result.confidence == pytest.approx(1.0)

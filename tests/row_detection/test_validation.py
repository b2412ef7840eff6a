"""Tests for row validation, warnings and burden/spacing metrics."""

from __future__ import annotations

import numpy as np
import pytest

from holerows.core.config import DetectionConfig
from holerows.core.errors import UnresolvedPointError
from holerows.core.models import LayoutStyle
from holerows.utils.row_detection.validation import (
    adjacent_pairs,
    check_partition,
    point_spacing_and_burden,
    validate_rows,
)

FORWARD_ROWS = [[0, 1, 2, 3, 4], [5, 6, 7, 8, 9], [10, 11, 12, 13, 14], [15, 16, 17, 18, 19]]


def test_check_partition_accepts_complete_labelling() -> None:
    """Rows plus orphans covering every index once are valid."""
    check_partition([[0, 1], [3]], [2], 4)


@pytest.mark.parametrize(
    ("rows", "orphans"),
    [
        ([[0, 1]], []),
        ([[0, 1], [1, 2]], []),
        ([[0, 1, 2]], [5]),
    ],
)
def test_check_partition_rejects_broken_labelling(rows, orphans) -> None:
    """Missing, duplicated and out-of-range indices all raise."""
    with pytest.raises(UnresolvedPointError):
        check_partition(rows, orphans, 3)


def test_validate_grid_rows(grid_points: np.ndarray) -> None:
    """A clean grid has spacing 3, burden 4 and a square layout."""
    report = validate_rows(grid_points, FORWARD_ROWS, [], 20, 1.0, DetectionConfig())
    metrics = report.metrics
    assert metrics.mean_spacing == pytest.approx(3.0)
    assert metrics.spacing_cv == pytest.approx(0.0)
    assert metrics.mean_burden == pytest.approx(4.0)
    assert metrics.burden_cv == pytest.approx(0.0)
    assert metrics.layout is LayoutStyle.SQUARE
    assert metrics.row_count == 4
    assert metrics.min_row_size == metrics.max_row_size == 5
    assert report.warnings == ()
    assert report.confidence == pytest.approx(1.0)


def test_validate_staggered_rows(grid_points: np.ndarray) -> None:
    """Every second row shifted by half a spacing reads as staggered."""
    points = grid_points.copy()
    points[5:10, 0] += 1.5
    points[15:20, 0] += 1.5
    report = validate_rows(points, FORWARD_ROWS, [], 20, 1.0, DetectionConfig())
    assert report.metrics.offset_ratio == pytest.approx(0.5)
    assert report.metrics.layout is LayoutStyle.STAGGERED


def test_validate_reports_row_gap() -> None:
    """A step far above the median spacing is flagged with its positions."""
    points = np.asarray([[0.0, 0.0], [3.0, 0.0], [6.0, 0.0], [15.0, 0.0], [18.0, 0.0]])
    report = validate_rows(points, [[0, 1, 2, 3, 4]], [], 5, 1.0, DetectionConfig())
    assert "row 1: gap of 9.00 between positions 3 and 4" in report.warnings
    assert report.confidence < 1.0


def test_validate_reports_orphans(grid_points: np.ndarray) -> None:
    """Unassigned points add a warning and lower confidence."""
    rows = FORWARD_ROWS[:3] + [[15, 16, 17, 18]]
    report = validate_rows(grid_points, rows, [19], 20, 1.0, DetectionConfig())
    assert report.warnings == ("1 point(s) could not be assigned to a row",)
    assert report.confidence == pytest.approx(0.95)


def test_validate_uses_custom_row_labels() -> None:
    """Warning texts carry the supplied row numbers."""
    points = np.asarray([[0.0, 0.0], [3.0, 0.0], [6.0, 0.0], [15.0, 0.0], [18.0, 0.0]])
    report = validate_rows(
        points, [[0, 1, 2, 3, 4]], [], 5, 1.0, DetectionConfig(), row_labels=[7]
    )
    assert any(warning.startswith("row 7: gap") for warning in report.warnings)


def test_point_spacing_and_burden_on_grid(grid_points: np.ndarray) -> None:
    """Every grid hole has spacing 3 and burden 4."""
    spacing, burden = point_spacing_and_burden(grid_points, FORWARD_ROWS, [0, 0, 1, 1])
    assert np.allclose(spacing, 3.0)
    assert np.allclose(burden, 4.0)


def test_point_spacing_and_burden_leaves_gaps_as_nan(grid_points: np.ndarray) -> None:
    """Unlabelled points get neither value and a single-point row no spacing."""
    spacing, burden = point_spacing_and_burden(grid_points, [[0, 1, 2], [3]])
    assert np.allclose(spacing[[0, 1, 2]], 3.0)
    assert np.isnan(spacing[3])
    assert np.isnan(spacing[10])
    assert not np.isnan(burden[0])
    assert np.isnan(burden[10])


def test_adjacent_pairs_respect_groups() -> None:
    """Only neighbouring rows of one group are paired."""
    assert adjacent_pairs(3) == [(0, 1), (1, 2)]
    assert adjacent_pairs(4, [0, 0, 1, 1]) == [(0, 1), (2, 3)]


def test_fragmented_rows_lower_confidence(grid_points: np.ndarray) -> None:
    """Rows broken into two-point stubs cost confidence."""
    rows = [[0, 1], [2, 3, 4], [5, 6], [7, 8, 9], [10, 11, 12, 13, 14], [15, 16, 17, 18, 19]]
    report = validate_rows(grid_points, rows, [], 20, 1.0, DetectionConfig())
    intact = validate_rows(grid_points, FORWARD_ROWS, [], 20, 1.0, DetectionConfig())
    assert report.confidence < intact.confidence

"""End-to-end tests for the row detection pipeline."""

from __future__ import annotations

from dataclasses import replace

import numpy as np
import pytest

from holerows.core.config import DetectionConfig
from holerows.core.errors import InputError
from holerows.core.models import (
    DirectionType,
    HolePoint,
    PatternType,
    RowShape,
    SubPatternRole,
)
from holerows.core.row_detector import RowDetector, coerce_points, detect_rows

SNAKE_ROWS = [[0, 1, 2, 3, 4], [9, 8, 7, 6, 5], [10, 11, 12, 13, 14], [19, 18, 17, 16, 15]]
FORWARD_ROWS = [[0, 1, 2, 3, 4], [5, 6, 7, 8, 9], [10, 11, 12, 13, 14], [15, 16, 17, 18, 19]]


def _row_lists(result) -> list[list[int]]:
    return [list(row.indices) for row in result.rows]


def test_untokened_grid_gives_forward_rows(grid_points: np.ndarray) -> None:
    """Rows should run west to east and be numbered south to north."""
    result = RowDetector().detect(grid_points)
    assert result.pattern_type is PatternType.STRAIGHT
    assert _row_lists(result) == FORWARD_ROWS
    assert [row.row_index for row in result.rows] == [1, 2, 3, 4]
    assert result.direction is DirectionType.FORWARD
    assert not result.serpentine
    assert result.labels()[7] == (2, 3)
    assert all(row.shape is RowShape.STRAIGHT for row in result.rows)
    assert result.rows[0].direction_deg == pytest.approx(90.0)
    assert result.metrics.mean_spacing == pytest.approx(3.0)
    assert result.metrics.mean_burden == pytest.approx(4.0)
    assert result.warnings == ()
    assert result.orphan_indices == ()
    assert result.confidence == pytest.approx(1.0)
    assert result.methods == ("pca_loess",)


def test_snake_tokens_give_serpentine_rows(snake_holes) -> None:
    """Boustrophedon tokens are cut into rows that alternate direction."""
    result = RowDetector().detect(snake_holes)
    assert _row_lists(result) == SNAKE_ROWS
    assert result.direction is DirectionType.SERPENTINE
    assert result.direction_confidence == pytest.approx(1.0)
    assert result.labels()["H09"] == (2, 1)
    assert result.labels()["H05"] == (2, 5)
    assert result.methods == ("winding_sequence",)


def test_row_major_tokens_fall_through_to_line_fit(row_major_holes) -> None:
    """Flyback jumps rule out winding; token line fitting takes over."""
    result = RowDetector().detect(row_major_holes)
    assert _row_lists(result) == FORWARD_ROWS
    assert result.direction is DirectionType.FORWARD
    assert result.methods == ("sequence_line_fit",)


def test_forced_serpentine_direction(grid_points: np.ndarray) -> None:
    """A forced direction overrides the row-end analysis."""
    config = DetectionConfig(force_direction=DirectionType.SERPENTINE)
    result = RowDetector(config).detect(grid_points)
    assert _row_lists(result) == SNAKE_ROWS
    assert result.direction is DirectionType.SERPENTINE
    assert result.direction_confidence == 1.0


def test_forced_forward_direction_realigns_snake(snake_holes) -> None:
    """Forcing forward flips every second snaked row."""
    config = DetectionConfig(force_direction="forward")
    result = RowDetector(config).detect(snake_holes)
    assert _row_lists(result) == FORWARD_ROWS
    assert result.direction is DirectionType.FORWARD


def test_perpendicular_lines_are_separate_sub_patterns(two_line_points: np.ndarray) -> None:
    """Each orientation family is detected on its own."""
    result = RowDetector().detect(two_line_points)
    assert result.pattern_type is PatternType.MULTI_PATTERN
    assert result.sub_pattern_count == 2
    assert [sub.role for sub in result.sub_patterns] == [
        SubPatternRole.MAIN,
        SubPatternRole.BATTER,
    ]
    assert sorted(sorted(row) for row in _row_lists(result)) == [
        list(range(10)),
        list(range(10, 16)),
    ]
    assert sorted(row.sub_pattern for row in result.rows) == [0, 1]
    assert result.direction is DirectionType.FORWARD
    assert result.metrics.mean_burden == 0.0


def test_arc_is_one_curved_row(arc_points: np.ndarray) -> None:
    """A single arc is one row flagged as curved."""
    result = RowDetector().detect(arc_points)
    assert result.pattern_type is PatternType.CURVED
    assert len(result.rows) == 1
    assert sorted(result.rows[0].indices) == list(range(20))
    assert result.rows[0].shape is RowShape.CURVED


def test_prior_labels_are_kept_as_fixed_rows(grid_points: np.ndarray) -> None:
    """Prior rows keep their numbers; detected rows follow them."""
    prior = {index: (1, index + 1) for index in range(5)}
    result = RowDetector().detect(grid_points, prior_labels=prior)
    assert _row_lists(result) == FORWARD_ROWS
    assert [row.row_index for row in result.rows] == [1, 2, 3, 4]
    assert result.rows[0].method == "prior"
    assert result.rows[0].sub_pattern == -1
    assert result.labels()[5] == (2, 1)
    assert result.labels()[19] == (4, 5)


def test_unknown_prior_label_id_is_rejected(grid_points: np.ndarray) -> None:
    """Prior labels must refer to input hole ids."""
    with pytest.raises(InputError, match="unknown hole id"):
        RowDetector().detect(grid_points, prior_labels={"missing": (1, 1)})


def test_duplicate_prior_slot_is_rejected(grid_points: np.ndarray) -> None:
    """Two prior holes cannot share a row position."""
    with pytest.raises(InputError, match="duplicate prior label"):
        RowDetector().detect(grid_points, prior_labels={0: (1, 1), 1: (1, 1)})


def test_progress_reports_each_stage_once(grid_points: np.ndarray) -> None:
    """Progress should climb through every stage and end at 100."""
    reports: list[tuple[int, str]] = []
    RowDetector().detect(grid_points, progress=lambda percent, stage: reports.append((percent, stage)))
    assert [stage for _, stage in reports] == [
        "analyze",
        "classify",
        "detect",
        "direction",
        "validate",
        "done",
    ]
    assert [percent for percent, _ in reports] == [5, 15, 30, 80, 90, 100]


@pytest.mark.parametrize(
    "points",
    [
        np.asarray([[0.0, 0.0]]),
        np.asarray([[2.0, 2.0], [2.0, 2.0], [2.0, 2.0]]),
        np.zeros((4, 4)),
    ],
)
def test_degenerate_inputs_raise_input_error(points: np.ndarray) -> None:
    """Too few, coincident or badly shaped points are rejected."""
    with pytest.raises(InputError):
        RowDetector().detect(points)


def test_duplicate_hole_ids_are_rejected() -> None:
    """Hole ids must be unique."""
    holes = [HolePoint("A", 0.0, 0.0), HolePoint("A", 3.0, 0.0), HolePoint("B", 6.0, 0.0)]
    with pytest.raises(InputError, match="unique"):
        RowDetector().detect(holes)


def test_coerce_points_accepts_mappings() -> None:
    """Mappings provide ids and tokens next to the coordinates."""
    hole_ids, points_xy, tokens = coerce_points(
        {"x": [0, 3, 6], "y": [0, 0, 0], "id": ["a", "b", "c"], "sequence_token": [1, None, " "]}
    )
    assert hole_ids == ("a", "b", "c")
    assert points_xy.shape == (3, 2)
    assert tokens == ["1", None, None]


def test_coerce_points_requires_x_and_y() -> None:
    """A mapping without coordinates is not usable."""
    with pytest.raises(InputError, match="'x' and 'y'"):
        coerce_points({"x": [0.0, 1.0]})


def test_three_column_arrays_drop_elevation(grid_points: np.ndarray) -> None:
    """An ``(N, 3)`` array is read as x, y, z."""
    xyz = np.column_stack((grid_points, np.full(20, 100.0)))
    result = detect_rows(xyz)
    assert _row_lists(result) == FORWARD_ROWS


def test_row_assignments_and_report(grid_points: np.ndarray) -> None:
    """Per-index arrays and the report payload mirror the rows."""
    result = detect_rows(grid_points)
    row_id, position_id = result.row_assignments()
    assert row_id[7] == 2
    assert position_id[7] == 3
    report = result.to_report()
    assert report["pattern_type"] == "straight"
    assert report["row_count"] == 4
    assert report["serpentine"] is False
    assert report["burden_spacing_metrics"]["layout"] == "square"
    assert report["orphan_point_ids"] == []
    assert set(report) >= {"confidence", "warnings", "methods", "sub_pattern_count"}


def _lattice(burden: float, rotation_deg: float = 0.0) -> np.ndarray:
    base = np.asarray([[3.0 * column, burden * row] for row in range(4) for column in range(5)])
    theta = np.radians(rotation_deg)
    rotation = np.asarray([[np.cos(theta), -np.sin(theta)], [np.sin(theta), np.cos(theta)]])
    return base @ rotation.T


@pytest.mark.parametrize(
    ("burden", "rotation"),
    [(2.8, 0.0), (3.0, 0.0), (3.3, 0.0), (3.0, 10.0), (3.0, 30.0), (3.0, 90.0)],
)
def test_square_and_rotated_lattices_give_four_rows(burden: float, rotation: float) -> None:
    """Near-square spacing and burden still split into the four lattice rows."""
    result = RowDetector().detect(_lattice(burden, rotation))
    assert result.pattern_type is PatternType.STRAIGHT
    assert sorted(sorted(row) for row in _row_lists(result)) == FORWARD_ROWS
    assert all(row.shape is RowShape.STRAIGHT for row in result.rows)


def test_tokened_square_lattice_uses_line_fit() -> None:
    """Row-major tokens on a square lattice are read with straight line fitting."""
    points = _lattice(3.0)
    holes = [
        HolePoint(f"H{index:02d}", float(x), float(y), sequence_token=str(index + 1))
        for index, (x, y) in enumerate(points)
    ]
    result = RowDetector().detect(holes)
    assert result.pattern_type is PatternType.STRAIGHT
    assert result.methods == ("sequence_line_fit",)
    assert _row_lists(result) == FORWARD_ROWS


def test_repeated_detection_gives_identical_labels() -> None:
    """The pipeline is deterministic for a fixed input."""
    rng = np.random.default_rng(11)
    points = _lattice(4.0) + rng.normal(0.0, 0.2, size=(20, 2))
    first = RowDetector().detect(points)
    second = RowDetector().detect(points)
    assert first.labels() == second.labels()
    assert first.methods == second.methods
    assert first.confidence == second.confidence


@pytest.mark.parametrize("seed", [0, 1, 2, 3])
def test_random_points_are_partitioned(seed: int) -> None:
    """Every point of an arbitrary scatter lands in exactly one row or the orphans."""
    rng = np.random.default_rng(seed)
    points = rng.uniform(0.0, 50.0, size=(30, 2))
    result = RowDetector().detect(points)
    assigned = [index for row in result.rows for index in row.indices]
    assigned.extend(result.orphan_indices)
    assert sorted(assigned) == list(range(30))
    assert 0.0 <= result.confidence <= 1.0
    assert [row.row_index for row in result.rows] == list(range(1, len(result.rows) + 1))


def test_two_blobs_fall_back_to_density_clustering() -> None:
    """Two separated point clouds become two rows rather than one chain."""
    rng = np.random.default_rng(5)
    blob_a = rng.normal((0.0, 0.0), 1.5, size=(40, 2))
    blob_b = rng.normal((20.0, 0.0), 1.5, size=(40, 2))
    config = DetectionConfig(dbscan_eps=3.0, dbscan_min_samples=3)
    result = RowDetector(config).detect(np.vstack((blob_a, blob_b)))
    assert result.methods == ("density_clustering",)
    assert sorted(sorted(row) for row in _row_lists(result)) == [
        list(range(40)),
        list(range(40, 80)),
    ]


def test_row_of_finds_owning_row(grid_points: np.ndarray) -> None:
    """``row_of`` returns the row holding a point and ``None`` for orphans."""
    result = detect_rows(grid_points)
    assert result.row_of(7).row_index == 2
    assert result.row_of(19).row_index == 4
    last = result.row_by_index(4)
    truncated = replace(
        result,
        rows=result.rows[:3] + (replace(last, indices=last.indices[:-1]),),
        orphan_indices=(19,),
    )
    assert truncated.row_of(19) is None

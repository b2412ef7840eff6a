"""Tests for shared row geometry helpers."""

from __future__ import annotations

import numpy as np
import pytest

from holerows.utils.row_detection.row_geometry import (
    axial_difference_deg,
    bearing_deg,
    bearing_difference_deg,
    canonical_direction,
    describe_path,
    estimate_row_axis,
    estimate_spacing,
    fit_circle_curvature,
    loess_smooth,
    max_line_deviation,
    nearest_neighbor_chain,
    project_onto_polyline,
    simplify_polyline_indices,
    variance_ratio,
)


def test_bearing_uses_compass_convention() -> None:
    """North should be 0 degrees and east 90 degrees."""
    origin = np.asarray([0.0, 0.0])
    assert bearing_deg(origin, np.asarray([0.0, 5.0])) == pytest.approx(0.0)
    assert bearing_deg(origin, np.asarray([5.0, 0.0])) == pytest.approx(90.0)
    assert bearing_deg(origin, np.asarray([-5.0, 0.0])) == pytest.approx(270.0)


def test_angle_differences_wrap_around() -> None:
    """Bearing and axial differences should take the short way round."""
    assert bearing_difference_deg(350.0, 10.0) == pytest.approx(20.0)
    assert bearing_difference_deg(0.0, 180.0) == pytest.approx(180.0)
    assert axial_difference_deg(170.0, 10.0) == pytest.approx(20.0)
    assert axial_difference_deg(0.0, 90.0) == pytest.approx(90.0)


def test_canonical_direction_points_east_then_north() -> None:
    """Direction vectors should be flipped to +X, or +Y when vertical."""
    assert np.allclose(canonical_direction(np.asarray([-2.0, 0.0])), [1.0, 0.0])
    assert np.allclose(canonical_direction(np.asarray([0.0, -3.0])), [0.0, 1.0])
    with pytest.raises(ValueError):
        canonical_direction(np.asarray([0.0, 0.0]))


def test_variance_ratio_of_collinear_points_is_infinite(grid_points: np.ndarray) -> None:
    """Collinear input should report an infinite eigenvalue ratio."""
    assert variance_ratio(grid_points[:5]) == float("inf")
    assert variance_ratio(grid_points) < 5.0


def test_estimate_spacing_uses_median_nearest_neighbour(grid_points: np.ndarray) -> None:
    """Spacing of the grid should be its along-row step."""
    assert estimate_spacing(grid_points) == pytest.approx(3.0)


def test_estimate_row_axis_follows_closest_pairs(grid_points: np.ndarray) -> None:
    """Rows of the grid run east-west."""
    assert axial_difference_deg(estimate_row_axis(grid_points), 0.0) < 1.0


def test_fit_circle_curvature_recovers_radius() -> None:
    """Points on a circle of radius 10 should give curvature 0.1."""
    angles = np.radians(np.linspace(0.0, 90.0, 8))
    arc = np.column_stack((10.0 * np.cos(angles), 10.0 * np.sin(angles)))
    assert fit_circle_curvature(arc) == pytest.approx(0.1, rel=1e-6)
    assert fit_circle_curvature(np.asarray([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]])) == 0.0


def test_loess_smooth_reproduces_a_line() -> None:
    """Local linear fits should return a linear signal unchanged."""
    x_values = np.linspace(0.0, 10.0, 21)
    y_values = 2.0 * x_values + 1.0
    assert np.allclose(loess_smooth(x_values, y_values, bandwidth=0.3), y_values)


def test_loess_smooth_rejects_bad_bandwidth() -> None:
    """Bandwidth must be a fraction."""
    with pytest.raises(ValueError):
        loess_smooth(np.arange(5.0), np.arange(5.0), bandwidth=0.0)


def test_project_onto_polyline_reports_distance_arc_and_side() -> None:
    """Projection should return distance, arc position and signed offset."""
    polyline = np.asarray([[0.0, 0.0], [10.0, 0.0]])
    points = np.asarray([[4.0, 2.0], [7.0, -1.0]])
    distance, arc_position, signed = project_onto_polyline(points, polyline)
    assert np.allclose(distance, [2.0, 1.0])
    assert np.allclose(arc_position, [4.0, 7.0])
    assert np.allclose(signed, [2.0, -1.0])


def test_nearest_neighbor_chain_starts_at_an_end() -> None:
    """Chaining should start at the point farthest from the centroid."""
    points = np.asarray([[6.0, 0.0], [0.0, 0.0], [3.0, 0.0], [9.0, 0.0]])
    assert nearest_neighbor_chain(points).tolist() == [1, 2, 0, 3]


def test_simplify_polyline_keeps_corners() -> None:
    """Douglas-Peucker should keep the ends and the corner of an L."""
    polyline = np.asarray([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0], [2.0, 1.0], [2.0, 2.0]])
    assert simplify_polyline_indices(polyline, 0.1).tolist() == [0, 2, 4]


def test_describe_path_and_line_deviation() -> None:
    """Path bearings and deviation should describe an eastward row."""
    row = np.asarray([[0.0, 0.0], [3.0, 0.0], [6.0, 0.0]])
    direction, start, end = describe_path(row)
    assert (direction, start, end) == pytest.approx((90.0, 90.0, 90.0))
    assert max_line_deviation(row) == pytest.approx(0.0)
    bent = np.asarray([[0.0, 0.0], [3.0, 1.0], [6.0, 0.0]])
    assert max_line_deviation(bent) > 0.5


def test_validate_points_shape_message() -> None:
    """Helpers should reject arrays that are not (N, 2)."""
    with pytest.raises(ValueError, match=r"\(N, 2\)"):
        estimate_spacing(np.zeros((3, 3)))

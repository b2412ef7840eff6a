"""Spine-based strategies: principal curve and PCA-LOESS binning.

Both strategies fit one smooth spine through the subset, bin the points by
signed perpendicular offset from it and order each bin along the spine.
"""

from __future__ import annotations

import numpy as np
from loguru import logger

from holerows.core.errors import AlgorithmFailure
from holerows.utils.row_detection.row_geometry import (
    _validate_points,
    direction_from_axial,
    loess_smooth,
    principal_axes,
    project_onto_polyline,
)
from holerows.utils.row_detection.strategies import (
    DetectionContext,
    RowStrategy,
    StrategyKind,
    StrategyResult,
    bin_offsets,
    singleton_fraction,
    split_at_gaps,
)

_EPS = 1e-12


def fit_principal_curve(
    points_xy: np.ndarray,
    spacing: float,
    max_iter: int = 20,
    tol: float = 0.001,
    vertices: int = 50,
    bandwidth: float = 0.3,
) -> tuple[np.ndarray, int]:
    """Fit a Hastie-Stuetzle principal curve.

    The curve starts as the first principal axis, extended by 10% on both
    ends. Each iteration projects the points onto the curve and smooths
    their coordinates against arc length with LOESS.

    Parameters
    ----------
    points_xy : numpy.ndarray
        Coordinates with shape ``(N, 2)``.
    spacing : float
        Hole spacing; convergence is ``movement < tol * spacing``.
    max_iter : int, optional
        Iteration cap.
    tol : float, optional
        Relative convergence tolerance.
    vertices : int, optional
        Number of curve vertices.
    bandwidth : float, optional
        LOESS bandwidth fraction.

    Returns
    -------
    tuple[numpy.ndarray, int]
        ``(curve, iterations)``. ``curve`` is the iterate with the lowest
        mean squared projection distance.
    """
    points_array = _validate_points(points_xy)
    if points_array.shape[0] < 3:
        raise ValueError("principal curve needs at least 3 points")
    eigenvalues, eigenvectors, centroid = principal_axes(points_array)
    if eigenvalues[0] <= _EPS:
        raise ValueError("points have no spatial extent")
    axis = eigenvectors[:, 0]
    projection = (points_array - centroid) @ axis
    low, high = float(projection.min()), float(projection.max())
    margin = 0.1 * (high - low)
    grid = np.linspace(low - margin, high + margin, vertices)
    curve = centroid + grid[:, None] * axis[None, :]
    distance, arc_position, _ = project_onto_polyline(points_array, curve)
    best_curve = curve
    best_score = float(np.mean(distance**2))
    iterations = 0
    for iterations in range(1, max_iter + 1):
        arc_grid = np.linspace(float(arc_position.min()), float(arc_position.max()), vertices)
        if arc_grid[-1] - arc_grid[0] <= _EPS:
            break
        smoothed = np.column_stack(
            (
                loess_smooth(arc_position, points_array[:, 0], arc_grid, bandwidth),
                loess_smooth(arc_position, points_array[:, 1], arc_grid, bandwidth),
            )
        )
        movement = float(project_onto_polyline(smoothed, curve)[0].max())
        curve = smoothed
        distance, arc_position, _ = project_onto_polyline(points_array, curve)
        score = float(np.mean(distance**2))
        if score < best_score:
            best_score = score
            best_curve = curve
        if movement < tol * spacing:
            break
    return best_curve, iterations


def rows_from_offsets(
    points_xy: np.ndarray,
    offsets: np.ndarray,
    along: np.ndarray,
    offset_gap: float,
    max_step: float,
) -> tuple[list[np.ndarray], float]:
    """Bin points by offset, order bins along the spine and cut at gaps.

    Returns
    -------
    tuple[list[numpy.ndarray], float]
        ``(rows, tightness)`` where ``tightness`` is the mean absolute
        offset deviation from each bin's median.
    """
    rows: list[np.ndarray] = []
    spreads: list[float] = []
    for members in bin_offsets(offsets, offset_gap):
        spreads.append(float(np.mean(np.abs(offsets[members] - np.median(offsets[members])))))
        ordered = members[np.argsort(along[members], kind="stable")]
        rows.extend(split_at_gaps(points_xy, ordered, max_step))
    tightness = float(np.mean(spreads)) if spreads else 0.0
    return rows, tightness


class PrincipalCurveStrategy(RowStrategy):
    """Rows binned around a principal curve fitted to the whole subset."""

    kind = StrategyKind.PRINCIPAL_CURVE

    def detect(self, context: DetectionContext) -> StrategyResult:
        if context.count < 3:
            raise AlgorithmFailure("principal curve needs at least 3 points")
        config = context.config
        curve, iterations = fit_principal_curve(
            context.points_xy,
            context.spacing,
            max_iter=config.principal_curve_max_iter,
            tol=config.principal_curve_tol,
            vertices=config.principal_curve_vertices,
            bandwidth=config.loess_bandwidth,
        )
        _, arc_position, offsets = project_onto_polyline(context.points_xy, curve)
        rows, tightness = rows_from_offsets(
            context.points_xy,
            offsets,
            arc_position,
            config.offset_gap_factor * context.spacing,
            config.row_gap_factor * context.spacing,
        )
        confidence = _spine_confidence(tightness, context.spacing, rows)
        logger.debug(
            f"{self.name}: {len(rows)} rows after {iterations} iterations, "
            f"confidence {confidence:.2f}"
        )
        return self._result(context, rows, confidence)


class PcaLoessStrategy(RowStrategy):
    """Rows binned around a LOESS spine in the row-axis frame."""

    kind = StrategyKind.PCA_LOESS

    def detect(self, context: DetectionContext) -> StrategyResult:
        config = context.config
        points_array = context.points_xy
        direction = direction_from_axial(context.classification.row_axis_deg)
        normal = np.asarray([-direction[1], direction[0]])
        centered = points_array - points_array.mean(axis=0)
        along = centered @ direction
        across = centered @ normal
        if float(np.ptp(along)) <= _EPS:
            raise AlgorithmFailure("points have no extent along the row axis")
        spine = loess_smooth(along, across, bandwidth=config.loess_bandwidth)
        offsets = across - spine
        rows, tightness = rows_from_offsets(
            points_array,
            offsets,
            along,
            config.offset_gap_factor * context.spacing,
            config.row_gap_factor * context.spacing,
        )
        confidence = _spine_confidence(tightness, context.spacing, rows)
        logger.debug(f"{self.name}: {len(rows)} rows, confidence {confidence:.2f}")
        return self._result(context, rows, confidence)


def _spine_confidence(tightness: float, spacing: float, rows: list[np.ndarray]) -> float:
    """Bin tightness relative to half a spacing, discounted by singletons."""
    tight_score = float(np.clip(1.0 - tightness / (0.5 * spacing), 0.0, 1.0))
    return tight_score * (1.0 - singleton_fraction(rows))

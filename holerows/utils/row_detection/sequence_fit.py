"""Token-driven strategies: running line fit and B-spline fit."""

from __future__ import annotations

import numpy as np
from loguru import logger
from sklearn.linear_model import RANSACRegressor

from holerows.core.errors import AlgorithmFailure
from holerows.utils.row_detection.row_geometry import (
    bearing_deg,
    bearing_difference_deg,
    bspline_curve,
    principal_axes,
    project_onto_polyline,
)
from holerows.utils.row_detection.strategies import (
    DetectionContext,
    RowStrategy,
    StrategyKind,
    StrategyResult,
    attach_to_rows,
    singleton_fraction,
    split_at_gaps,
)

_MAX_SPLINE_SAMPLES = 400


class SequenceLineFitStrategy(RowStrategy):
    """Walk points in token order and cut rows where the line breaks.

    A new row starts when the next point steps further than
    ``row_gap_factor`` spacings, deviates from the running row's line by more
    than ``line_deviation_factor`` spacings, or turns away from the row
    direction by more than ``bearing_jump_deg``. Alphanumeric prefixes never
    share a row.
    """

    kind = StrategyKind.SEQUENCE_LINE_FIT

    def detect(self, context: DetectionContext) -> StrategyResult:
        sequence = context.sequence
        if not sequence.reliable or sequence.order.size < 2:
            raise AlgorithmFailure("sequence tokens are not reliable")
        points_array = context.points_xy
        rows: list[list[int]] = []
        for segment in sequence.prefix_segments():
            current = [int(segment[0])]
            for point_index in segment[1:]:
                if self._starts_new_row(context, current, int(point_index)):
                    rows.append(current)
                    current = [int(point_index)]
                else:
                    current.append(int(point_index))
            rows.append(current)
        untokened = np.where(~sequence.parsed_mask)[0]
        row_arrays, orphans = attach_to_rows(
            points_array,
            [np.asarray(row, dtype=np.int64) for row in rows],
            untokened,
            context.config.attach_factor * context.spacing,
        )
        confidence = self._confidence(context, row_arrays)
        logger.debug(f"{self.name}: {len(row_arrays)} rows, confidence {confidence:.2f}")
        return self._result(context, row_arrays, confidence, orphans, token_ordered=True)

    def _starts_new_row(
        self,
        context: DetectionContext,
        current: list[int],
        point_index: int,
    ) -> bool:
        points_array = context.points_xy
        config = context.config
        last = points_array[current[-1]]
        candidate = points_array[point_index]
        if float(np.linalg.norm(candidate - last)) > config.row_gap_factor * context.spacing:
            return True
        if len(current) < 2:
            return False
        row_xy = points_array[current]
        eigenvalues, eigenvectors, centroid = principal_axes(row_xy)
        normal = eigenvectors[:, 1]
        deviation = abs(float((candidate - centroid) @ normal))
        if deviation > config.line_deviation_factor * context.spacing:
            return True
        row_bearing = bearing_deg(row_xy[0], row_xy[-1])
        step_bearing = bearing_deg(last, candidate)
        return bearing_difference_deg(row_bearing, step_bearing) > config.bearing_jump_deg

    def _confidence(self, context: DetectionContext, rows: list[np.ndarray]) -> float:
        """Robust line-fit quality times the share of non-singleton points."""
        tolerance = context.config.line_deviation_factor * context.spacing
        scores: list[float] = []
        for row in rows:
            if row.size < 3:
                continue
            score = _ransac_row_quality(context.points_xy[row], tolerance)
            if score is not None:
                scores.append(score)
        fit_quality = float(np.mean(scores)) if scores else 1.0
        return fit_quality * (1.0 - singleton_fraction(rows))


class SplineFitStrategy(RowStrategy):
    """Token-ordered runs refined by recursive clamped B-spline fitting."""

    kind = StrategyKind.SPLINE_FIT

    def detect(self, context: DetectionContext) -> StrategyResult:
        sequence = context.sequence
        if not sequence.reliable or sequence.order.size < 2:
            raise AlgorithmFailure("sequence tokens are not reliable")
        config = context.config
        max_step = config.row_gap_factor * context.spacing
        rows: list[np.ndarray] = []
        deviations: list[float] = []
        for segment in sequence.prefix_segments():
            for run in split_at_gaps(context.points_xy, segment, max_step):
                for row in self._split_run(context, run):
                    rows.append(row)
                    deviations.append(self._mean_deviation(context, row))
        untokened = np.where(~sequence.parsed_mask)[0]
        rows, orphans = attach_to_rows(
            context.points_xy, rows, untokened, config.attach_factor * context.spacing
        )
        tolerance = config.spline_tolerance_factor * context.spacing
        mean_deviation = float(np.mean(deviations)) if deviations else 0.0
        fit_quality = 1.0 - 0.5 * min(1.0, mean_deviation / tolerance)
        confidence = fit_quality * (1.0 - singleton_fraction(rows))
        logger.debug(f"{self.name}: {len(rows)} rows, confidence {confidence:.2f}")
        return self._result(context, rows, confidence, orphans, token_ordered=True)

    def _spline_for(self, context: DetectionContext, run: np.ndarray) -> np.ndarray:
        stride = context.config.spline_control_stride
        control_positions = list(range(0, run.size, stride))
        if control_positions[-1] != run.size - 1:
            control_positions.append(run.size - 1)
        control = context.points_xy[run[control_positions]]
        samples = min(_MAX_SPLINE_SAMPLES, max(50, 10 * run.size))
        return bspline_curve(control, samples=samples)

    def _split_run(self, context: DetectionContext, run: np.ndarray) -> list[np.ndarray]:
        """Split a run at its worst-fitting point until the spline fits."""
        if run.size < 4:
            return [run]
        curve = self._spline_for(context, run)
        distance, _, _ = project_onto_polyline(context.points_xy[run], curve)
        worst = int(np.argmax(distance))
        tolerance = context.config.spline_tolerance_factor * context.spacing
        if float(distance[worst]) <= tolerance:
            return [run]
        cut = _cut_position(context.points_xy[run], worst)
        return self._split_run(context, run[:cut]) + self._split_run(context, run[cut:])

    def _mean_deviation(self, context: DetectionContext, row: np.ndarray) -> float:
        if row.size < 4:
            return 0.0
        distance, _, _ = project_onto_polyline(
            context.points_xy[row], self._spline_for(context, row)
        )
        return float(distance.mean())


def _cut_position(run_xy: np.ndarray, worst: int) -> int:
    """Cut on the longer step next to the worst point, never at an end."""
    count = run_xy.shape[0]
    if worst <= 0:
        return 1
    if worst >= count - 1:
        return count - 1
    before = float(np.linalg.norm(run_xy[worst] - run_xy[worst - 1]))
    after = float(np.linalg.norm(run_xy[worst + 1] - run_xy[worst]))
    return worst if before > after else worst + 1


def _ransac_row_quality(row_xy: np.ndarray, tolerance: float) -> float | None:
    """Inlier share and residual of a RANSAC line fit in the row's own frame."""
    _, eigenvectors, centroid = principal_axes(row_xy)
    centered = row_xy - centroid
    along = centered @ eigenvectors[:, 0]
    across = centered @ eigenvectors[:, 1]
    ransac = RANSACRegressor(
        residual_threshold=float(tolerance),
        max_trials=100,
        random_state=0,
    )
    try:
        ransac.fit(along.reshape(-1, 1), across)
    except ValueError:
        return None
    inlier_mask = np.asarray(ransac.inlier_mask_, dtype=bool)
    residual = np.abs(across - ransac.predict(along.reshape(-1, 1)))
    mean_residual = float(residual[inlier_mask].mean()) if inlier_mask.any() else tolerance
    return float(inlier_mask.mean()) * (1.0 - 0.5 * min(1.0, mean_residual / tolerance))

"""Post-detection validation, burden/spacing metrics and final confidence."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from holerows.core.config import DetectionConfig
from holerows.core.errors import UnresolvedPointError
from holerows.core.models import BurdenSpacingMetrics, LayoutStyle
from holerows.utils.row_detection.row_geometry import _validate_points, project_onto_polyline
from holerows.utils.row_detection.strategies import fragmentation


@dataclass(frozen=True)
class ValidationReport:
    """Metrics, accumulated warnings and adjusted confidence."""

    metrics: BurdenSpacingMetrics
    warnings: tuple[str, ...]
    confidence: float


def check_partition(
    rows: Sequence[Sequence[int]],
    orphans: Sequence[int],
    n_points: int,
) -> None:
    """Ensure every index sits in exactly one row or in the orphan list.

    Raises
    ------
    UnresolvedPointError
        Raised when an index is missing, duplicated or out of range.
    """
    counts = np.zeros(n_points, dtype=np.int64)
    for group in list(rows) + [orphans]:
        for index in group:
            if not 0 <= int(index) < n_points:
                raise UnresolvedPointError(f"point index {index} is out of range")
            counts[int(index)] += 1
    missing = np.where(counts == 0)[0]
    duplicated = np.where(counts > 1)[0]
    if missing.size or duplicated.size:
        raise UnresolvedPointError(
            f"partition broken: missing={missing.tolist()}, "
            f"duplicated={duplicated.tolist()}"
        )


def validate_rows(
    points_xy: np.ndarray,
    rows: Sequence[Sequence[int]],
    orphans: Sequence[int],
    n_points: int,
    strategy_confidence: float,
    config: DetectionConfig,
    row_groups: Sequence[int] | None = None,
    row_labels: Sequence[int] | None = None,
) -> ValidationReport:
    """Check a labelled row set and compute its metrics.

    Parameters
    ----------
    points_xy : numpy.ndarray
        All coordinates with shape ``(N, 2)``.
    rows : Sequence[Sequence[int]]
        Ordered rows in numbering order.
    orphans : Sequence[int]
        Unassigned point indices.
    n_points : int
        Total number of input points.
    strategy_confidence : float
        Confidence reported by the accepted strategies.
    config : DetectionConfig
        Warning thresholds.
    row_groups : Sequence[int] | None, optional
        Sub-pattern id per row; burden and offsets only pair rows of one group.
    row_labels : Sequence[int] | None, optional
        Row numbers used in warning texts. Defaults to ``1..len(rows)``.

    Returns
    -------
    ValidationReport
        Metrics, warnings and confidence clipped to ``[0, 1]``.

    Raises
    ------
    UnresolvedPointError
        Raised when the partition invariant does not hold.
    """
    points_array = _validate_points(points_xy)
    check_partition(rows, orphans, n_points)
    row_list = [np.asarray(row, dtype=np.int64) for row in rows]
    labels = list(row_labels) if row_labels is not None else list(range(1, len(row_list) + 1))
    warnings: list[str] = []
    steps = _row_steps(points_array, row_list)
    all_steps = np.concatenate(steps) if any(step.size for step in steps) else np.asarray([])
    mean_spacing, spacing_std, spacing_cv = _moments(all_steps)
    if all_steps.size:
        reference = float(np.median(all_steps))
        for label, row_steps in zip(labels, steps):
            warnings.extend(_contiguity_warnings(label, row_steps, reference, config))
    pairs = adjacent_pairs(len(row_list), row_groups)
    burdens = [_pair_burden(points_array, row_list[first], row_list[second]) for first, second in pairs]
    mean_burden, burden_std, burden_cv = _moments(np.asarray(burdens, dtype=np.float64))
    offset_ratio, layout = _layout(points_array, row_list, pairs, mean_spacing, config)
    if layout is LayoutStyle.IRREGULAR:
        warnings.append(f"irregular row offset layout (offset ratio {offset_ratio:.2f})")
    if spacing_cv > config.cv_warning:
        warnings.append(f"high spacing variation (CV {spacing_cv:.2f})")
    if burden_cv > config.cv_warning:
        warnings.append(f"high burden variation (CV {burden_cv:.2f})")
    sizes = [row.size for row in row_list if row.size > 0]
    if sizes and min(sizes) > 0 and max(sizes) / min(sizes) > config.size_imbalance_ratio:
        warnings.append(f"row size imbalance ({min(sizes)} to {max(sizes)} points)")
    orphan_count = len(orphans)
    if orphan_count:
        warnings.append(f"{orphan_count} point(s) could not be assigned to a row")
    metrics = BurdenSpacingMetrics(
        mean_spacing=mean_spacing,
        spacing_std=spacing_std,
        spacing_cv=spacing_cv,
        mean_burden=mean_burden,
        burden_std=burden_std,
        burden_cv=burden_cv,
        offset_ratio=offset_ratio,
        layout=layout,
        row_count=len(row_list),
        min_row_size=min(sizes) if sizes else 0,
        max_row_size=max(sizes) if sizes else 0,
        mean_row_size=float(np.mean(sizes)) if sizes else 0.0,
    )
    fragmented = fragmentation(row_list, config.winding_min_row, config.size_imbalance_ratio)
    confidence = (
        float(strategy_confidence)
        - 0.2 * min(spacing_cv, 1.0)
        - 0.5 * min(fragmented, 1.0)
        - 0.05 * len(warnings)
    )
    return ValidationReport(metrics, tuple(warnings), float(np.clip(confidence, 0.0, 1.0)))


def point_spacing_and_burden(
    points_xy: np.ndarray,
    rows: Sequence[Sequence[int]],
    row_groups: Sequence[int] | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Per-point spacing and burden.

    Spacing is the mean length of the steps touching a point inside its
    row. Burden is the distance to the previous row of the same group, or to
    the next one for a group's first row. Undefined values are ``nan``.
    """
    points_array = _validate_points(points_xy)
    spacing = np.full(points_array.shape[0], np.nan, dtype=np.float64)
    burden = np.full(points_array.shape[0], np.nan, dtype=np.float64)
    row_list = [np.asarray(row, dtype=np.int64) for row in rows]
    for row in row_list:
        if row.size < 2:
            continue
        steps = np.linalg.norm(np.diff(points_array[row], axis=0), axis=1)
        touching = np.zeros(row.size)
        counts = np.zeros(row.size)
        touching[:-1] += steps
        touching[1:] += steps
        counts[:-1] += 1
        counts[1:] += 1
        spacing[row] = touching / counts
    partner: dict[int, int] = {}
    for first, second in adjacent_pairs(len(row_list), row_groups):
        partner[second] = first
        partner.setdefault(first, second)
    for row_pos, other in partner.items():
        row = row_list[row_pos]
        if row.size == 0 or row_list[other].size == 0:
            continue
        distance, _, _ = project_onto_polyline(points_array[row], points_array[row_list[other]])
        burden[row] = distance
    return spacing, burden


def adjacent_pairs(
    row_count: int,
    row_groups: Sequence[int] | None = None,
) -> list[tuple[int, int]]:
    """Consecutive row positions belonging to the same group."""
    return [
        (position, position + 1)
        for position in range(row_count - 1)
        if row_groups is None or row_groups[position] == row_groups[position + 1]
    ]


def _row_steps(points_array: np.ndarray, rows: list[np.ndarray]) -> list[np.ndarray]:
    return [
        np.linalg.norm(np.diff(points_array[row], axis=0), axis=1)
        if row.size >= 2
        else np.asarray([], dtype=np.float64)
        for row in rows
    ]


def _moments(values: np.ndarray) -> tuple[float, float, float]:
    """Mean, standard deviation and coefficient of variation."""
    if values.size == 0:
        return 0.0, 0.0, 0.0
    mean = float(values.mean())
    std = float(values.std())
    return mean, std, (std / mean if mean > 0 else 0.0)


def _contiguity_warnings(
    label: int,
    steps: np.ndarray,
    reference: float,
    config: DetectionConfig,
) -> list[str]:
    warnings: list[str] = []
    for position, step in enumerate(steps, start=1):
        if step > config.row_gap_factor * reference:
            warnings.append(
                f"row {label}: gap of {step:.2f} between positions "
                f"{position} and {position + 1}"
            )
        elif step < config.overlap_factor * reference:
            warnings.append(
                f"row {label}: overlapping points at positions "
                f"{position} and {position + 1}"
            )
    return warnings


def _pair_burden(points_array: np.ndarray, current: np.ndarray, following: np.ndarray) -> float:
    """Mean distance from the following row to the current row polyline."""
    distance, _, _ = project_onto_polyline(points_array[following], points_array[current])
    return float(distance.mean())


def _layout(
    points_array: np.ndarray,
    rows: list[np.ndarray],
    pairs: list[tuple[int, int]],
    spacing: float,
    config: DetectionConfig,
) -> tuple[float, LayoutStyle]:
    """Folded along-row offset ratio between adjacent rows and its layout."""
    if spacing <= 0:
        return 0.0, LayoutStyle.UNDETERMINED
    ratios: list[float] = []
    for first, second in pairs:
        current = rows[first]
        if current.size < 2 or rows[second].size == 0:
            continue
        travel = points_array[current[-1]] - points_array[current[0]]
        length = float(np.linalg.norm(travel))
        if length <= 0:
            continue
        along = (points_array[rows[second]] - points_array[current[0]]) @ (travel / length)
        fraction = np.mod(along / spacing, 1.0)
        folded = np.minimum(fraction, 1.0 - fraction)
        ratios.append(float(np.median(folded)))
    if not ratios:
        return 0.0, LayoutStyle.UNDETERMINED
    ratio = float(np.median(ratios))
    if ratio < config.layout_tolerance:
        return ratio, LayoutStyle.SQUARE
    if abs(ratio - 0.5) <= config.layout_tolerance:
        return ratio, LayoutStyle.STAGGERED
    return ratio, LayoutStyle.IRREGULAR

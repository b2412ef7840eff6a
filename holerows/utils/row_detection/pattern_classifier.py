"""Pattern classification: STRAIGHT, CURVED or MULTI_PATTERN.

Three measurements drive the decision:

- the covariance eigenvalue ratio, measured on row-mate windows so that
  parallel rows do not read as spread;
- the local curvature of a least-squares circle through each point and its
  row-mates, scaled by half the principal extent;
- orientation families built from nearest-neighbour bearings.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np
from loguru import logger
from scipy.spatial import cKDTree

from holerows.core.config import DetectionConfig
from holerows.core.models import PatternType
from holerows.utils.row_detection.point_set import SequenceInfo
from holerows.utils.row_detection.row_geometry import (
    _validate_points,
    axial_angle_deg,
    axial_difference_deg,
    axial_mean_deg,
    cluster_axial_angles,
    direction_from_axial,
    estimate_row_axis,
    estimate_spacing,
    fit_circle_curvature,
    local_orientations,
    principal_axes,
    variance_ratio,
)
from holerows.utils.row_detection.serpentine import detect_sequence_reversals

_RATIO_CAP = 1e6
_ROW_MATE_REACH = 2.5
_ROW_MATE_TOLERANCE_DEG = 30.0
_ROW_MATE_OFFSET = 0.5


@dataclass
class Classification:
    """Classifier output for one point subset."""

    pattern_type: PatternType
    confidence: float
    variance_ratio: float
    row_variance_ratio: float
    mean_curvature: float
    curvature_variance: float
    row_axis_deg: float
    spacing: float
    orientations: np.ndarray
    orientation_families: list[np.ndarray] = field(default_factory=list)
    populated_families: int = 1
    serpentine_candidate: bool = False


def classify_pattern(
    points_xy: np.ndarray,
    config: DetectionConfig,
    spacing: float | None = None,
    sequence: SequenceInfo | None = None,
) -> Classification:
    """Classify the geometry of a point subset.

    Parameters
    ----------
    points_xy : numpy.ndarray
        Subset coordinates with shape ``(N, 2)``.
    config : DetectionConfig
        Thresholds for ratio, curvature and orientation clustering.
    spacing : float | None, optional
        Pre-computed hole spacing; estimated when omitted.
    sequence : SequenceInfo | None, optional
        Parsed tokens used for the serpentine cue.

    Returns
    -------
    Classification
        Pattern type, confidence and intermediate measurements.
    """
    points_array = _validate_points(points_xy)
    count = points_array.shape[0]
    spacing_value = float(spacing) if spacing else estimate_spacing(points_array)
    global_ratio = _capped(variance_ratio(points_array))
    row_axis = estimate_row_axis(points_array, config.orientation_tolerance_deg)
    orientations = local_orientations(points_array, row_axis)
    serpentine_cue = _serpentine_cue(points_array, sequence, config)
    if count < 3:
        return Classification(
            pattern_type=PatternType.STRAIGHT,
            confidence=1.0 if count == 2 else 0.0,
            variance_ratio=global_ratio,
            row_variance_ratio=_RATIO_CAP,
            mean_curvature=0.0,
            curvature_variance=0.0,
            row_axis_deg=row_axis,
            spacing=spacing_value,
            orientations=orientations,
            orientation_families=[np.arange(count, dtype=np.int64)],
            populated_families=1,
            serpentine_candidate=serpentine_cue,
        )
    families = orientation_families(orientations, config.orientation_tolerance_deg)
    populated_size = max(
        config.min_sub_pattern_size, int(math.ceil(config.min_family_fraction * count))
    )
    populated = sum(1 for family in families if family.size >= populated_size)
    windows = _row_mate_windows(points_array, orientations, config.curvature_neighbors)
    row_ratio, curvatures = _window_measurements(points_array, windows)
    mean_curvature = float(np.mean(curvatures)) if curvatures.size else 0.0
    curvature_variance = float(np.var(curvatures)) if curvatures.size else 0.0
    pattern_type, confidence = _decide(
        populated, row_ratio, mean_curvature, config
    )
    logger.debug(
        f"classified {count} points as {pattern_type.value} "
        f"(ratio={row_ratio:.2f}, curvature={mean_curvature:.3f}, "
        f"families={populated}, axis={row_axis:.1f})"
    )
    return Classification(
        pattern_type=pattern_type,
        confidence=confidence,
        variance_ratio=global_ratio,
        row_variance_ratio=row_ratio,
        mean_curvature=mean_curvature,
        curvature_variance=curvature_variance,
        row_axis_deg=row_axis,
        spacing=spacing_value,
        orientations=orientations,
        orientation_families=families,
        populated_families=populated,
        serpentine_candidate=serpentine_cue,
    )


def orientation_families(
    orientations: np.ndarray,
    tolerance_deg: float,
) -> list[np.ndarray]:
    """Group axial orientations into families.

    Orientations are clustered by circular mean within ``tolerance_deg``.
    Clusters whose means lie within twice the tolerance of each other are
    then chained into one family, so a continuously turning curve stays one
    family while perpendicular groups split.

    Returns
    -------
    list[numpy.ndarray]
        Member index arrays sorted by size (descending), then lowest index.
    """
    orientation_array = np.asarray(orientations, dtype=np.float64)
    if orientation_array.size == 0:
        return []
    clusters = cluster_axial_angles(orientation_array, tolerance_deg)
    means = [axial_mean_deg(orientation_array[group]) for group in clusters]
    parent = list(range(len(clusters)))

    def _find(item: int) -> int:
        while parent[item] != item:
            parent[item] = parent[parent[item]]
            item = parent[item]
        return item

    for first in range(len(clusters)):
        for second in range(first + 1, len(clusters)):
            if axial_difference_deg(means[first], means[second]) <= 2.0 * tolerance_deg:
                parent[_find(second)] = _find(first)
    grouped: dict[int, list[int]] = {}
    for cluster_index, group in enumerate(clusters):
        grouped.setdefault(_find(cluster_index), []).extend(int(i) for i in group)
    families = [np.asarray(sorted(members), dtype=np.int64) for members in grouped.values()]
    families.sort(key=lambda members: (-members.size, int(members[0])))
    return families


def row_mate_neighbors(
    points_xy: np.ndarray,
    orientations: np.ndarray,
    limit: int = 5,
) -> list[np.ndarray]:
    """Neighbours of each point lying along its local row axis.

    A row-mate lies within ``2.5`` nearest-neighbour distances, within 30
    degrees of the point's orientation and at most half a nearest-neighbour
    distance off the line through the point. The offset limit keeps
    knight-move neighbours of a near-square lattice out of the window.
    """
    points_array = _validate_points(points_xy)
    count = points_array.shape[0]
    tree = cKDTree(points_array)
    k = min(count, 9)
    distances, neighbors = tree.query(points_array, k=k)
    distances = np.asarray(distances).reshape(count, k)
    neighbors = np.asarray(neighbors).reshape(count, k)
    mates: list[np.ndarray] = []
    for index in range(count):
        valid = (neighbors[index] != index) & (distances[index] > 1e-12)
        if not np.any(valid):
            mates.append(np.asarray([], dtype=np.int64))
            continue
        nearest = float(distances[index][valid].min())
        reach = nearest * _ROW_MATE_REACH
        normal = direction_from_axial(float(orientations[index]) + 90.0)
        chosen: list[int] = []
        for dist, other in zip(distances[index][valid], neighbors[index][valid]):
            if dist > reach or len(chosen) >= limit:
                continue
            offset_vector = points_array[other] - points_array[index]
            angle = axial_angle_deg(offset_vector)
            if axial_difference_deg(angle, orientations[index]) > _ROW_MATE_TOLERANCE_DEG:
                continue
            if abs(float(offset_vector @ normal)) > _ROW_MATE_OFFSET * nearest:
                continue
            chosen.append(int(other))
        mates.append(np.asarray(chosen, dtype=np.int64))
    return mates


def _row_mate_windows(
    points_array: np.ndarray,
    orientations: np.ndarray,
    limit: int,
) -> list[np.ndarray]:
    """Point-plus-row-mates windows with at least three members."""
    windows: list[np.ndarray] = []
    for index, mates in enumerate(row_mate_neighbors(points_array, orientations, limit)):
        if mates.size < 2:
            continue
        windows.append(np.concatenate(([index], mates)))
    return windows


def _window_measurements(
    points_array: np.ndarray,
    windows: list[np.ndarray],
) -> tuple[float, np.ndarray]:
    """Median window variance ratio and scale-free window curvatures."""
    if not windows:
        return _capped(variance_ratio(points_array)), np.asarray([], dtype=np.float64)
    eigenvalues, eigenvectors, centroid = principal_axes(points_array)
    projection = (points_array - centroid) @ eigenvectors[:, 0]
    half_extent = 0.5 * float(np.ptp(projection))
    ratios = np.asarray(
        [_capped(variance_ratio(points_array[window])) for window in windows]
    )
    curvatures = np.asarray(
        [fit_circle_curvature(points_array[window]) * half_extent for window in windows]
    )
    return float(np.median(ratios)), curvatures


def _decide(
    populated: int,
    ratio: float,
    curvature: float,
    config: DetectionConfig,
) -> tuple[PatternType, float]:
    """Apply the classification thresholds."""
    if populated >= 2:
        return PatternType.MULTI_PATTERN, min(1.0, 0.6 + 0.2 * (populated - 1))
    if ratio > config.ratio_straight and curvature < config.curvature_straight:
        ratio_score = 0.5 + 0.5 * min(
            1.0, (ratio - config.ratio_straight) / config.ratio_straight
        )
        curvature_score = 1.0 - 0.5 * curvature / config.curvature_straight
        return PatternType.STRAIGHT, float(np.clip(ratio_score * curvature_score, 0.0, 1.0))
    if ratio < config.ratio_curved or curvature > config.curvature_curved:
        curvature_excess = (curvature - config.curvature_curved) / config.curvature_curved
        ratio_deficit = (config.ratio_curved - ratio) / config.ratio_curved
        score = 0.5 + 0.5 * min(1.0, max(curvature_excess, ratio_deficit))
        return PatternType.CURVED, float(np.clip(score, 0.0, 1.0))
    return PatternType.STRAIGHT, 0.5


def _serpentine_cue(
    points_array: np.ndarray,
    sequence: SequenceInfo | None,
    config: DetectionConfig,
) -> bool:
    """Token reversal cue; needs at least half of the tokens parsed."""
    if sequence is None or sequence.order.size < 4:
        return False
    if sequence.order.size * 2 < points_array.shape[0]:
        return False
    return detect_sequence_reversals(points_array, sequence.order, config).is_serpentine


def _capped(value: float) -> float:
    """Cap infinite ratios to a finite sentinel."""
    return float(min(value, _RATIO_CAP))

"""Immutable detection configuration.

All thresholds used by the pipeline live in :class:`DetectionConfig`. The
value is frozen and passed explicitly through every stage.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any

from holerows.core.errors import ConfigurationError
from holerows.core.models import DirectionType

_SNAKE_ANGLE_RANGE = (75.0, 105.0)


@dataclass(frozen=True)
class DetectionConfig:
    """Thresholds and parameters for pattern classification and row detection.

    Distances expressed as ``*_factor`` are multiples of the estimated hole
    spacing. Angles are degrees.

    Examples
    --------
    >>> config = DetectionConfig(snake_angle_deg=80.0)
    >>> config.replace(min_confidence=0.6).snake_angle_deg
    80.0
    """

    # classification
    ratio_straight: float = 5.0
    ratio_curved: float = 3.0
    curvature_straight: float = 0.1
    curvature_curved: float = 0.3
    curvature_neighbors: int = 5
    orientation_tolerance_deg: float = 15.0
    min_family_fraction: float = 0.05

    # sub-pattern separation
    min_sub_pattern_size: int = 3
    connection_factor: float = 2.0
    perpendicular_tolerance_deg: float = 30.0
    max_recursion_depth: int = 3

    # sequence tokens
    sequence_reliability: float = 0.7

    # orchestration
    min_confidence: float = 0.5
    fallback_confidence: float = 0.2
    attach_factor: float = 1.0
    row_curvature_tolerance: float = 0.25
    force_direction: DirectionType | None = None

    # sequence line / spline fit
    line_deviation_factor: float = 0.5
    row_gap_factor: float = 2.5
    bearing_jump_deg: float = 45.0
    spline_control_stride: int = 5
    spline_tolerance_factor: float = 0.5

    # principal curve and LOESS
    principal_curve_max_iter: int = 20
    principal_curve_tol: float = 0.001
    principal_curve_vertices: int = 50
    loess_bandwidth: float = 0.3
    offset_gap_factor: float = 0.5

    # graph traversal
    mst_max_turn_deg: float = 60.0
    knn_k: int | None = None
    gentle_turn_deg: float = 30.0
    reversal_deg: float = 150.0

    # density clustering and simplification
    dbscan_eps: float | None = None
    dbscan_min_samples: int | None = None
    simplify_factor: float = 0.3
    backbone_turn_deg: float = 60.0

    # sequence-weighted HDBSCAN
    hdbscan_sequence_weight: float = 0.3
    hdbscan_cluster_fraction: float = 0.1

    # winding sequence
    snake_angle_deg: float = 90.0
    winding_window: int = 4
    winding_jump_factor: float = 3.0
    winding_min_row: int = 3
    winding_max_token_gap: int = 5

    # validation
    overlap_factor: float = 0.2
    cv_warning: float = 0.5
    size_imbalance_ratio: float = 3.0
    layout_tolerance: float = 0.15

    def __post_init__(self) -> None:
        if self.force_direction is not None and not isinstance(
            self.force_direction, DirectionType
        ):
            try:
                direction = DirectionType(str(self.force_direction).lower())
            except ValueError as exc:
                raise ConfigurationError(
                    f"force_direction must be one of "
                    f"{[item.value for item in DirectionType]}"
                ) from exc
            object.__setattr__(self, "force_direction", direction)
        _check_positive(self, _POSITIVE_FIELDS)
        _check_fractions(self, _FRACTION_FIELDS)
        _check_angles(self, _ANGLE_FIELDS)
        _check_min_int(self, _INT_FIELDS)
        if self.ratio_curved > self.ratio_straight:
            raise ConfigurationError("ratio_curved must be <= ratio_straight")
        if self.curvature_straight > self.curvature_curved:
            raise ConfigurationError("curvature_straight must be <= curvature_curved")
        low, high = _SNAKE_ANGLE_RANGE
        if not low <= self.snake_angle_deg <= high:
            raise ConfigurationError(
                f"snake_angle_deg must be within [{low:g}, {high:g}]"
            )
        if self.gentle_turn_deg >= self.reversal_deg:
            raise ConfigurationError("gentle_turn_deg must be < reversal_deg")
        if self.winding_window < 2:
            raise ConfigurationError("winding_window must be >= 2")
        if self.max_recursion_depth < 0:
            raise ConfigurationError("max_recursion_depth must be >= 0")
        if self.knn_k is not None and self.knn_k < 1:
            raise ConfigurationError("knn_k must be >= 1")
        if self.dbscan_eps is not None and self.dbscan_eps <= 0:
            raise ConfigurationError("dbscan_eps must be > 0")
        if self.dbscan_min_samples is not None and self.dbscan_min_samples < 1:
            raise ConfigurationError("dbscan_min_samples must be >= 1")

    def replace(self, **overrides: Any) -> DetectionConfig:
        """Return a validated copy with the given fields overridden."""
        known = {item.name for item in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration fields: {unknown}")
        return replace(self, **overrides)


_POSITIVE_FIELDS = (
    "ratio_straight",
    "ratio_curved",
    "curvature_straight",
    "curvature_curved",
    "connection_factor",
    "attach_factor",
    "row_curvature_tolerance",
    "line_deviation_factor",
    "row_gap_factor",
    "spline_tolerance_factor",
    "principal_curve_tol",
    "offset_gap_factor",
    "simplify_factor",
    "winding_jump_factor",
    "overlap_factor",
    "cv_warning",
    "size_imbalance_ratio",
)
_FRACTION_FIELDS = (
    "min_family_fraction",
    "sequence_reliability",
    "min_confidence",
    "fallback_confidence",
    "loess_bandwidth",
    "layout_tolerance",
    "hdbscan_sequence_weight",
    "hdbscan_cluster_fraction",
)
_ANGLE_FIELDS = (
    "orientation_tolerance_deg",
    "perpendicular_tolerance_deg",
    "bearing_jump_deg",
    "mst_max_turn_deg",
    "gentle_turn_deg",
    "reversal_deg",
    "backbone_turn_deg",
)
_INT_FIELDS = (
    "curvature_neighbors",
    "min_sub_pattern_size",
    "spline_control_stride",
    "principal_curve_max_iter",
    "principal_curve_vertices",
    "winding_min_row",
    "winding_max_token_gap",
)


def _check_positive(config: DetectionConfig, names: tuple[str, ...]) -> None:
    """Reject non-positive numeric fields."""
    for name in names:
        if not float(getattr(config, name)) > 0:
            raise ConfigurationError(f"{name} must be > 0")


def _check_fractions(config: DetectionConfig, names: tuple[str, ...]) -> None:
    """Reject fraction fields outside ``(0, 1]``."""
    for name in names:
        value = float(getattr(config, name))
        if not 0.0 < value <= 1.0:
            raise ConfigurationError(f"{name} must be within (0, 1]")


def _check_angles(config: DetectionConfig, names: tuple[str, ...]) -> None:
    """Reject angle fields outside ``(0, 180]``."""
    for name in names:
        value = float(getattr(config, name))
        if not 0.0 < value <= 180.0:
            raise ConfigurationError(f"{name} must be within (0, 180]")


def _check_min_int(config: DetectionConfig, names: tuple[str, ...]) -> None:
    """Reject integer fields below one."""
    for name in names:
        value = getattr(config, name)
        if int(value) != value or int(value) < 1:
            raise ConfigurationError(f"{name} must be an integer >= 1")

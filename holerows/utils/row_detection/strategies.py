"""Row-detection strategy contract and shared helpers.

Every strategy receives a :class:`DetectionContext` for one point subset and
returns a :class:`StrategyResult` holding ordered rows of local indices. A
strategy that cannot produce a usable row set raises
:class:`holerows.core.errors.AlgorithmFailure`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

import numpy as np

from holerows.core.config import DetectionConfig
from holerows.core.errors import AlgorithmFailure
from holerows.utils.row_detection.pattern_classifier import Classification
from holerows.utils.row_detection.point_set import PointSetSummary, SequenceInfo
from holerows.utils.row_detection.row_geometry import (
    _validate_points,
    nearest_neighbor_chain,
    project_onto_polyline,
    row_roughness,
)


class StrategyKind(str, Enum):
    """Closed set of row-detection strategies."""

    WINDING_SEQUENCE = "winding_sequence"
    SEQUENCE_LINE_FIT = "sequence_line_fit"
    SPLINE_FIT = "spline_fit"
    PRINCIPAL_CURVE = "principal_curve"
    MST_PATHS = "mst_paths"
    KNN_TRAVERSAL = "knn_traversal"
    PCA_LOESS = "pca_loess"
    SEQUENCE_HDBSCAN = "sequence_hdbscan"
    DENSITY_CLUSTERING = "density_clustering"
    DENSITY_SIMPLIFY = "density_simplify"
    SINGLE_ROW = "single_row"


@dataclass(frozen=True)
class DetectionContext:
    """Inputs shared by all strategies for one point subset."""

    points_xy: np.ndarray
    sequence: SequenceInfo
    summary: PointSetSummary
    classification: Classification
    config: DetectionConfig

    @property
    def spacing(self) -> float:
        return float(self.summary.spacing)

    @property
    def count(self) -> int:
        return int(self.points_xy.shape[0])

    def residual(self, rows: Sequence[Sequence[int]]) -> float:
        """:func:`ordering_residual` of ``rows`` with this context's settings."""
        return ordering_residual(
            self.points_xy,
            rows,
            self.spacing,
            self.config.row_gap_factor,
            self.config.winding_min_row,
            self.config.size_imbalance_ratio,
        )


@dataclass
class StrategyResult:
    """Rows produced by one strategy run.

    ``token_ordered`` marks rows whose point order already follows the
    sequence tokens and must not be re-oriented.
    """

    kind: StrategyKind
    rows: list[np.ndarray]
    confidence: float
    orphans: np.ndarray = field(default_factory=lambda: np.asarray([], dtype=np.int64))
    token_ordered: bool = False


class RowStrategy:
    """Base class of all row-detection strategies."""

    kind: StrategyKind = StrategyKind.SINGLE_ROW

    @property
    def name(self) -> str:
        return self.kind.value

    def detect(self, context: DetectionContext) -> StrategyResult:
        raise NotImplementedError

    def _result(
        self,
        context: DetectionContext,
        rows: Sequence[Sequence[int]],
        confidence: float,
        orphans: Sequence[int] = (),
        token_ordered: bool = False,
    ) -> StrategyResult:
        """Normalize rows and check that no point is assigned twice."""
        row_arrays = [np.asarray(row, dtype=np.int64) for row in rows if len(row) > 0]
        if not row_arrays:
            raise AlgorithmFailure(f"{self.name} produced no rows")
        orphan_array = np.asarray(sorted(int(i) for i in orphans), dtype=np.int64)
        assigned = np.concatenate(row_arrays + [orphan_array])
        if np.unique(assigned).size != assigned.size:
            raise AlgorithmFailure(f"{self.name} assigned a point twice")
        if assigned.size and (assigned.min() < 0 or assigned.max() >= context.count):
            raise AlgorithmFailure(f"{self.name} produced out-of-range indices")
        return StrategyResult(
            kind=self.kind,
            rows=row_arrays,
            confidence=float(np.clip(confidence, 0.0, 1.0)),
            orphans=orphan_array,
            token_ordered=token_ordered,
        )


class SingleRowStrategy(RowStrategy):
    """Terminal fallback: the whole subset as one nearest-neighbour chain."""

    kind = StrategyKind.SINGLE_ROW

    def detect(self, context: DetectionContext) -> StrategyResult:
        order = nearest_neighbor_chain(context.points_xy)
        return self._result(context, [order], context.config.fallback_confidence)


def ordering_residual(
    points_xy: np.ndarray,
    rows: Sequence[Sequence[int]],
    spacing: float,
    gap_factor: float = 2.5,
    min_row: int = 3,
    imbalance_ratio: float = 3.0,
) -> float:
    """Score how well ordered rows follow smooth, evenly stepped paths.

    The score adds the mean row roughness, the share of points left in
    single-point rows, the share of steps longer than ``gap_factor``
    spacings and a fragmentation penalty. Lower is better.

    Fragmentation counts the share of points in multi-point rows shorter
    than ``min_row`` and the share of rows more than ``imbalance_ratio``
    times shorter than the longest row. A bench broken into many stubs
    scores worse than the same points in a few full rows.

    Parameters
    ----------
    points_xy : numpy.ndarray
        Subset coordinates with shape ``(N, 2)``.
    rows : Sequence[Sequence[int]]
        Ordered rows of local indices.
    spacing : float
        Hole spacing used to normalize distances.
    gap_factor : float, optional
        Step length, in spacings, counted as a gap.
    min_row : int, optional
        Rows with fewer points count as fragments.
    imbalance_ratio : float, optional
        Longest-to-row size ratio above which a row counts as a stub.

    Returns
    -------
    float
        Non-negative residual.
    """
    points_array = _validate_points(points_xy)
    if spacing <= 0:
        raise ValueError("spacing must be > 0")
    row_list = [np.asarray(row, dtype=np.int64) for row in rows if len(row) > 0]
    total = sum(row.size for row in row_list)
    if total == 0:
        return float("inf")
    roughness = [
        row_roughness(points_array[row], spacing) for row in row_list if row.size >= 3
    ]
    singletons = sum(1 for row in row_list if row.size == 1) / total
    steps = [
        np.linalg.norm(np.diff(points_array[row], axis=0), axis=1)
        for row in row_list
        if row.size >= 2
    ]
    long_fraction = 0.0
    if steps:
        step_array = np.concatenate(steps)
        long_fraction = float(np.mean(step_array > gap_factor * spacing))
    mean_roughness = float(np.mean(roughness)) if roughness else 0.0
    return mean_roughness + singletons + long_fraction + fragmentation(
        row_list, min_row, imbalance_ratio
    )


def fragmentation(
    rows: Sequence[Sequence[int]],
    min_row: int = 3,
    imbalance_ratio: float = 3.0,
) -> float:
    """Penalty for short multi-point rows and rows dwarfed by the longest one.

    Examples
    --------
    >>> fragmentation([[0, 1, 2, 3], [4, 5, 6, 7]])
    0.0
    >>> fragmentation([[0, 1, 2, 3, 4, 5, 6, 7], [8, 9]])
    0.7
    """
    sizes = np.asarray([len(row) for row in rows if len(row) > 0], dtype=np.int64)
    if sizes.size == 0:
        return 0.0
    short = sizes[(sizes >= 2) & (sizes < min_row)]
    short_fraction = float(short.sum()) / float(sizes.sum())
    stub_fraction = float(np.mean(sizes * imbalance_ratio < sizes.max()))
    return short_fraction + stub_fraction


def singleton_fraction(rows: Sequence[Sequence[int]]) -> float:
    """Share of assigned points sitting alone in a row."""
    total = sum(len(row) for row in rows)
    if total == 0:
        return 1.0
    return sum(1 for row in rows if len(row) == 1) / total


def split_at_gaps(
    points_xy: np.ndarray,
    order: Sequence[int],
    max_step: float,
) -> list[np.ndarray]:
    """Cut an ordered index run wherever a step exceeds ``max_step``."""
    points_array = _validate_points(points_xy)
    order_array = np.asarray(order, dtype=np.int64)
    if order_array.size < 2:
        return [order_array] if order_array.size else []
    steps = np.linalg.norm(np.diff(points_array[order_array], axis=0), axis=1)
    cuts = np.where(steps > max_step)[0] + 1
    return [part for part in np.split(order_array, cuts) if part.size > 0]


def bin_offsets(offsets: np.ndarray, gap: float) -> list[np.ndarray]:
    """Group values separated by gaps larger than ``gap``.

    Returns
    -------
    list[numpy.ndarray]
        Index arrays, one per bin, in ascending offset order.

    Examples
    --------
    >>> [b.tolist() for b in bin_offsets(np.asarray([0.0, 3.1, 0.2]), 1.0)]
    [[0, 2], [1]]
    """
    offset_array = np.asarray(offsets, dtype=np.float64)
    if offset_array.size == 0:
        return []
    order = np.argsort(offset_array, kind="stable")
    sorted_values = offset_array[order]
    cuts = np.where(np.diff(sorted_values) > gap)[0] + 1
    return [np.sort(part) for part in np.split(order, cuts)]


def attach_to_rows(
    points_xy: np.ndarray,
    rows: list[np.ndarray],
    candidates: Sequence[int],
    max_distance: float,
) -> tuple[list[np.ndarray], np.ndarray]:
    """Insert leftover points into the nearest row when close enough.

    Each candidate is projected onto every row polyline. Within
    ``max_distance`` of the closest one it is inserted at its projected
    position along the row; otherwise it is returned as an orphan.

    Returns
    -------
    tuple[list[numpy.ndarray], numpy.ndarray]
        ``(rows, orphans)`` with rows as new arrays.
    """
    points_array = _validate_points(points_xy)
    row_lists = [list(int(i) for i in row) for row in rows]
    orphans: list[int] = []
    for candidate in sorted(int(i) for i in candidates):
        point = points_array[[candidate]]
        best_row = -1
        best_distance = np.inf
        for row_pos, row in enumerate(row_lists):
            if not row:
                continue
            distance, _, _ = project_onto_polyline(point, points_array[row])
            if float(distance[0]) < best_distance:
                best_distance = float(distance[0])
                best_row = row_pos
        if best_row < 0 or best_distance > max_distance:
            orphans.append(candidate)
            continue
        row = row_lists[best_row]
        row.insert(_insert_position(points_array, row, point), candidate)
    return [np.asarray(row, dtype=np.int64) for row in row_lists], np.asarray(
        orphans, dtype=np.int64
    )


def _insert_position(points_array: np.ndarray, row: list[int], point: np.ndarray) -> int:
    """Position along ``row`` at which ``point`` projects."""
    if len(row) == 1:
        return 1
    row_xy = points_array[row]
    if float(np.dot(point[0] - row_xy[0], row_xy[1] - row_xy[0])) < 0.0:
        return 0
    _, arc_position, _ = project_onto_polyline(point, row_xy)
    vertex_arc = np.concatenate(
        ([0.0], np.cumsum(np.linalg.norm(np.diff(row_xy, axis=0), axis=1)))
    )
    return int(np.searchsorted(vertex_arc, float(arc_position[0]), side="right"))

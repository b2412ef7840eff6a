"""Density-based strategies.

DBSCAN clustering and chain simplification are the geometry-only fallbacks.
Sequence-weighted HDBSCAN clusters tokened points on a blend of spatial and
sequence distance.
"""

from __future__ import annotations

import numpy as np
from loguru import logger
from scipy.spatial import cKDTree
from scipy.spatial.distance import cdist
from sklearn.cluster import DBSCAN, HDBSCAN

from holerows.core.errors import AlgorithmFailure
from holerows.utils.row_detection.row_geometry import (
    _validate_points,
    nearest_neighbor_chain,
    simplify_polyline_indices,
    turning_angles,
)
from holerows.utils.row_detection.strategies import (
    DetectionContext,
    RowStrategy,
    StrategyKind,
    StrategyResult,
    attach_to_rows,
    split_at_gaps,
)


def dbscan_clusters(
    points_xy: np.ndarray,
    eps: float,
    min_samples: int,
) -> tuple[list[np.ndarray], np.ndarray, float]:
    """Cluster points with DBSCAN and resolve noise.

    When every point is noise the run is repeated once with ``eps * 1.5``.
    Noise points within ``2 * eps`` of a clustered point join that cluster;
    the rest are returned as orphans.

    Returns
    -------
    tuple[list[numpy.ndarray], numpy.ndarray, float]
        ``(clusters, orphans, eps_used)``.

    Raises
    ------
    AlgorithmFailure
        Raised when both runs label every point as noise.
    """
    points_array = _validate_points(points_xy)
    labels = DBSCAN(eps=eps, min_samples=min_samples).fit_predict(points_array)
    if np.all(labels < 0):
        eps = eps * 1.5
        labels = DBSCAN(eps=eps, min_samples=min_samples).fit_predict(points_array)
    if np.all(labels < 0):
        raise AlgorithmFailure("DBSCAN labelled every point as noise")
    noise = np.where(labels < 0)[0]
    orphans: list[int] = []
    if noise.size > 0:
        clustered = np.where(labels >= 0)[0]
        distance, nearest = cKDTree(points_array[clustered]).query(points_array[noise], k=1)
        for noise_index, dist, near in zip(noise, distance, nearest):
            if float(dist) <= 2.0 * eps:
                labels[noise_index] = labels[clustered[int(near)]]
            else:
                orphans.append(int(noise_index))
    clusters = [np.where(labels == label)[0] for label in np.unique(labels[labels >= 0])]
    return clusters, np.asarray(orphans, dtype=np.int64), float(eps)


def cluster_separation(
    points_xy: np.ndarray,
    clusters: list[np.ndarray],
    eps: float,
) -> float:
    """Smallest inter-cluster gap relative to ``2 * eps``, clipped to ``[0, 1]``.

    Examples
    --------
    >>> points = np.asarray([[0.0, 0.0], [1.0, 0.0], [10.0, 0.0], [11.0, 0.0]])
    >>> cluster_separation(points, [np.asarray([0, 1]), np.asarray([2, 3])], 2.0)
    1.0
    """
    points_array = _validate_points(points_xy)
    if len(clusters) < 2 or eps <= 0:
        return 0.0
    labels = np.full(points_array.shape[0], -1, dtype=np.int64)
    for label, cluster in enumerate(clusters):
        labels[cluster] = label
    smallest = np.inf
    for label, cluster in enumerate(clusters):
        others = np.where((labels >= 0) & (labels != label))[0]
        distance, _ = cKDTree(points_array[others]).query(points_array[cluster], k=1)
        smallest = min(smallest, float(np.min(distance)))
    return float(np.clip(smallest / (2.0 * eps), 0.0, 1.0))


def chain_cuts_at_turns(
    chain_xy: np.ndarray,
    tolerance: float,
    max_turn_deg: float,
) -> list[int]:
    """Boundaries splitting a chain at sharp turns of its simplified backbone.

    Each turning vertex stays with the longer of its two neighbouring runs.
    """
    kept = simplify_polyline_indices(chain_xy, tolerance)
    if kept.size < 3:
        return []
    turns = turning_angles(chain_xy[kept])
    corners = [int(kept[vertex + 1]) for vertex in range(turns.size) if turns[vertex] > max_turn_deg]
    boundaries: list[int] = []
    previous = 0
    for position, corner in enumerate(corners):
        following = corners[position + 1] if position + 1 < len(corners) else chain_xy.shape[0]
        boundary = corner + 1 if corner - previous > following - corner else corner
        if 0 < boundary < chain_xy.shape[0] and boundary not in boundaries:
            boundaries.append(boundary)
        previous = boundary
    return boundaries


class DensityClusteringStrategy(RowStrategy):
    """One row per DBSCAN cluster, ordered by nearest-neighbour chain.

    Several clusters are scored by how cleanly they separate: the smallest
    gap between a cluster and its nearest other cluster, relative to
    ``2 * eps``, times the share of clustered points. A lone cluster is only
    trusted as far as it reads as one ordered row.
    """

    kind = StrategyKind.DENSITY_CLUSTERING

    def detect(self, context: DetectionContext) -> StrategyResult:
        clusters, orphans, eps = _clusters_for(context)
        rows = [cluster[nearest_neighbor_chain(context.points_xy[cluster])] for cluster in clusters]
        if len(rows) >= 2:
            separation = cluster_separation(context.points_xy, clusters, eps)
            confidence = separation * (1.0 - orphans.size / context.count)
        else:
            confidence = _density_confidence(context, rows, orphans)
        logger.debug(
            f"{self.name}: {len(rows)} clusters, {orphans.size} orphans, "
            f"confidence {confidence:.2f}"
        )
        return self._result(context, rows, confidence, orphans)


class DensitySimplifyStrategy(RowStrategy):
    """Cluster, chain, simplify to a backbone and cut at sharp backbone turns."""

    kind = StrategyKind.DENSITY_SIMPLIFY

    def detect(self, context: DetectionContext) -> StrategyResult:
        try:
            clusters, orphans, _ = _clusters_for(context)
        except AlgorithmFailure:
            clusters = [np.arange(context.count, dtype=np.int64)]
            orphans = np.asarray([], dtype=np.int64)
        config = context.config
        tolerance = config.simplify_factor * context.spacing
        max_step = config.row_gap_factor * context.spacing
        rows: list[np.ndarray] = []
        for cluster in clusters:
            chain = cluster[nearest_neighbor_chain(context.points_xy[cluster])]
            chain_xy = context.points_xy[chain]
            boundaries = chain_cuts_at_turns(chain_xy, tolerance, config.backbone_turn_deg)
            for piece in np.split(chain, boundaries):
                rows.extend(split_at_gaps(context.points_xy, piece, max_step))
        confidence = _density_confidence(context, rows, orphans)
        logger.debug(f"{self.name}: {len(rows)} rows, confidence {confidence:.2f}")
        return self._result(context, rows, confidence, orphans)


def _clusters_for(
    context: DetectionContext,
) -> tuple[list[np.ndarray], np.ndarray, float]:
    config = context.config
    eps = config.dbscan_eps or context.summary.default_eps
    min_samples = config.dbscan_min_samples or int(np.clip(int(0.05 * context.count), 2, 5))
    return dbscan_clusters(context.points_xy, eps, min_samples)


def _density_confidence(
    context: DetectionContext,
    rows: list[np.ndarray],
    orphans: np.ndarray,
) -> float:
    residual = context.residual(rows)
    orphan_fraction = orphans.size / max(1, context.count)
    return float(np.clip(1.0 - residual, 0.0, 1.0)) * (1.0 - orphan_fraction)


def sequence_weighted_distances(
    points_xy: np.ndarray,
    rank: np.ndarray,
    weight: float,
) -> np.ndarray:
    """Pairwise blend of spatial and sequence distance.

    Spatial distance is normalized by the largest pairwise distance and rank
    difference by the number of points; ``weight`` is the sequence share.

    Examples
    --------
    >>> points = np.asarray([[0.0, 0.0], [4.0, 0.0]])
    >>> sequence_weighted_distances(points, np.asarray([0, 1]), 0.5)[0, 1]
    0.75
    """
    points_array = _validate_points(points_xy)
    rank_array = np.asarray(rank, dtype=np.float64).reshape(-1, 1)
    spatial = cdist(points_array, points_array)
    largest = float(spatial.max())
    if largest <= 0:
        largest = 1.0
    sequence = cdist(rank_array, rank_array, metric="cityblock") / max(1, rank_array.shape[0])
    return (1.0 - weight) * spatial / largest + weight * sequence


class SequenceHDBSCANStrategy(RowStrategy):
    """HDBSCAN rows on sequence-weighted distances of the tokened points.

    Each cluster becomes one row in token order. Noise and untokened points
    join the nearest row within ``attach_factor`` spacings, or stay orphans.
    """

    kind = StrategyKind.SEQUENCE_HDBSCAN

    def detect(self, context: DetectionContext) -> StrategyResult:
        sequence = context.sequence
        if not sequence.reliable:
            raise AlgorithmFailure("sequence tokens are not reliable")
        order = sequence.order
        if order.size < 3:
            raise AlgorithmFailure("sequence-weighted HDBSCAN needs at least 3 tokened points")
        config = context.config
        distances = sequence_weighted_distances(
            context.points_xy[order],
            np.arange(order.size),
            config.hdbscan_sequence_weight,
        )
        min_cluster_size = max(2, int(order.size * config.hdbscan_cluster_fraction))
        min_samples = max(2, min_cluster_size // 2)
        labels = HDBSCAN(
            min_cluster_size=min_cluster_size,
            min_samples=min_samples,
            metric="precomputed",
        ).fit_predict(distances)
        if np.all(labels < 0):
            raise AlgorithmFailure("HDBSCAN labelled every tokened point as noise")
        clusters = [order[labels == label] for label in np.unique(labels[labels >= 0])]
        rank = sequence.rank()
        clusters.sort(key=lambda cluster: int(rank[cluster[0]]))
        leftovers = np.concatenate((order[labels < 0], np.where(~sequence.parsed_mask)[0]))
        rows, orphans = attach_to_rows(
            context.points_xy,
            clusters,
            leftovers,
            config.attach_factor * context.spacing,
        )
        orphan_fraction = orphans.size / context.count
        confidence = float(np.clip(1.0 - context.residual(rows), 0.0, 1.0)) * (
            1.0 - orphan_fraction
        )
        logger.debug(
            f"{self.name}: {len(rows)} clusters, {orphans.size} orphans, "
            f"confidence {confidence:.2f}"
        )
        return self._result(context, rows, confidence, orphans, token_ordered=True)

"""Graph strategies: minimum-spanning-tree paths and k-NN bearing traversal."""

from __future__ import annotations

from collections import deque

import numpy as np
from loguru import logger
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import minimum_spanning_tree
from scipy.spatial import cKDTree
from scipy.spatial.distance import cdist

from holerows.core.errors import AlgorithmFailure
from holerows.utils.row_detection.row_geometry import (
    _validate_points,
    axial_angle_deg,
    axial_difference_deg,
    bearing_deg,
    bearing_difference_deg,
    turning_angles,
)
from holerows.utils.row_detection.strategies import (
    DetectionContext,
    RowStrategy,
    StrategyKind,
    StrategyResult,
)

_DENSE_LIMIT = 400
_SPARSE_NEIGHBORS = 10
_MERGE_TURN_DEG = 30.0


def spanning_tree_adjacency(points_xy: np.ndarray) -> list[dict[int, float]]:
    """Adjacency of the Euclidean minimum spanning tree (or forest).

    Up to 400 points the tree is built on the full distance matrix; larger
    sets use a 10-nearest-neighbour graph and may yield a forest.
    """
    points_array = _validate_points(points_xy)
    count = points_array.shape[0]
    if count <= _DENSE_LIMIT:
        weights = cdist(points_array, points_array) + 1e-9
        np.fill_diagonal(weights, 0.0)
        graph = csr_matrix(weights)
    else:
        k = min(count, _SPARSE_NEIGHBORS + 1)
        distances, neighbors = cKDTree(points_array).query(points_array, k=k)
        row_ids = np.repeat(np.arange(count), k - 1)
        graph = csr_matrix(
            (distances[:, 1:].ravel() + 1e-9, (row_ids, neighbors[:, 1:].ravel())),
            shape=(count, count),
        )
    tree = minimum_spanning_tree(graph).tocoo()
    adjacency: list[dict[int, float]] = [{} for _ in range(count)]
    for start, end, weight in zip(tree.row, tree.col, tree.data):
        adjacency[int(start)][int(end)] = float(weight)
        adjacency[int(end)][int(start)] = float(weight)
    return adjacency


def extract_longest_paths(adjacency: list[dict[int, float]]) -> list[list[int]]:
    """Peel a forest into paths, longest path first.

    The longest path of each remaining tree is found by a double sweep from
    its lowest remaining index; its nodes are then removed.
    """
    remaining = set(range(len(adjacency)))
    paths: list[list[int]] = []
    while remaining:
        start = min(remaining)
        far_end, _ = _farthest(adjacency, start, remaining)
        other_end, parent = _farthest(adjacency, far_end, remaining)
        path = [other_end]
        while path[-1] != far_end:
            path.append(parent[path[-1]])
        path.reverse()
        paths.append(path)
        remaining.difference_update(path)
    return paths


def split_path(
    points_xy: np.ndarray,
    path: list[int],
    max_turn_deg: float,
    max_step: float,
) -> list[list[int]]:
    """Cut a path at long steps and sharp turns.

    Two sharp corners in a row mark a connector step, which is removed. A
    lone sharp corner cuts its longer adjacent step.
    """
    points_array = _validate_points(points_xy)
    if len(path) < 2:
        return [list(path)]
    path_xy = points_array[path]
    steps = np.linalg.norm(np.diff(path_xy, axis=0), axis=1)
    cut_steps = set(int(step) for step in np.where(steps > max_step)[0])
    turns = turning_angles(path_xy)
    sharp = [vertex + 1 for vertex in range(turns.size) if turns[vertex] > max_turn_deg]
    position = 0
    while position < len(sharp):
        vertex = sharp[position]
        if position + 1 < len(sharp) and sharp[position + 1] == vertex + 1:
            cut_steps.add(vertex)
            position += 2
            continue
        cut_steps.add(vertex - 1 if steps[vertex - 1] > steps[vertex] else vertex)
        position += 1
    pieces: list[list[int]] = []
    current = [path[0]]
    for step in range(len(path) - 1):
        if step in cut_steps:
            pieces.append(current)
            current = [path[step + 1]]
        else:
            current.append(path[step + 1])
    pieces.append(current)
    return pieces


def merge_collinear_paths(
    points_xy: np.ndarray,
    paths: list[list[int]],
    max_gap: float,
    max_turn_deg: float = _MERGE_TURN_DEG,
) -> list[list[int]]:
    """Join path ends that continue each other in a straight line.

    The closest admissible pair of ends is joined first, until none is left.
    Joining a single point only checks the turn on the multi-point side.
    """
    points_array = _validate_points(points_xy)
    merged = [list(path) for path in paths if path]
    while True:
        best: tuple[float, int, int, list[int]] | None = None
        for first in range(len(merged)):
            for second in range(first + 1, len(merged)):
                candidate = _best_join(
                    points_array, merged[first], merged[second], max_gap, max_turn_deg
                )
                if candidate is None:
                    continue
                gap, joined = candidate
                if best is None or gap < best[0]:
                    best = (gap, first, second, joined)
        if best is None:
            return merged
        _, first, second, joined = best
        merged[first] = joined
        del merged[second]


class MSTPathStrategy(RowStrategy):
    """Rows read off the longest paths of the minimum spanning tree."""

    kind = StrategyKind.MST_PATHS

    def detect(self, context: DetectionContext) -> StrategyResult:
        if context.count < 2:
            raise AlgorithmFailure("spanning tree needs at least 2 points")
        config = context.config
        max_step = config.row_gap_factor * context.spacing
        paths = extract_longest_paths(spanning_tree_adjacency(context.points_xy))
        pieces: list[list[int]] = []
        for path in paths:
            pieces.extend(
                split_path(context.points_xy, path, config.mst_max_turn_deg, max_step)
            )
        rows = merge_collinear_paths(context.points_xy, pieces, max_step)
        residual = context.residual(rows)
        confidence = 1.0 - residual
        logger.debug(
            f"{self.name}: {len(paths)} paths -> {len(rows)} rows, "
            f"residual {residual:.3f}"
        )
        return self._result(context, rows, confidence)


class KNNTraversalStrategy(RowStrategy):
    """Trace rows through the k-NN graph by least bearing deviation.

    Tracing starts from low-degree points, which sit at row ends. The first
    step prefers the row axis; later steps must stay within
    ``gentle_turn_deg`` of the previous bearing and never reverse.
    """

    kind = StrategyKind.KNN_TRAVERSAL

    def detect(self, context: DetectionContext) -> StrategyResult:
        if context.count < 2:
            raise AlgorithmFailure("k-NN traversal needs at least 2 points")
        points_array = context.points_xy
        k = min(context.count - 1, context.config.knn_k or context.summary.default_k)
        _, neighbors = cKDTree(points_array).query(points_array, k=k + 1)
        neighbors = np.asarray(neighbors, dtype=np.int64).reshape(context.count, k + 1)
        neighbor_lists = [
            [int(other) for other in neighbors[index] if other != index]
            for index in range(context.count)
        ]
        degree = np.zeros(context.count, dtype=np.int64)
        for neighbor_list in neighbor_lists:
            degree[neighbor_list] += 1
        from_centroid = np.linalg.norm(points_array - points_array.mean(axis=0), axis=1)
        seeds = sorted(
            range(context.count),
            key=lambda index: (int(degree[index]), -float(from_centroid[index]), index),
        )
        visited = np.zeros(context.count, dtype=bool)
        rows: list[list[int]] = []
        for seed in seeds:
            if visited[seed]:
                continue
            row = self._trace(context, neighbor_lists, visited, seed)
            visited[row] = True
            rows.append(row)
        residual = context.residual(rows)
        confidence = 1.0 - residual
        logger.debug(f"{self.name}: k={k}, {len(rows)} rows, residual {residual:.3f}")
        return self._result(context, rows, confidence)

    def _trace(
        self,
        context: DetectionContext,
        neighbor_lists: list[list[int]],
        visited: np.ndarray,
        seed: int,
    ) -> list[int]:
        """Walk both ways from ``seed`` and join the halves."""
        taken = {seed}
        forward = self._walk(context, neighbor_lists, visited, taken, seed, None)
        backward: list[int] = []
        if forward:
            first_bearing = bearing_deg(
                context.points_xy[seed], context.points_xy[forward[0]]
            )
            backward = self._walk(
                context,
                neighbor_lists,
                visited,
                taken,
                seed,
                (first_bearing + 180.0) % 360.0,
            )
        return list(reversed(backward)) + [seed] + forward

    def _walk(
        self,
        context: DetectionContext,
        neighbor_lists: list[list[int]],
        visited: np.ndarray,
        taken: set[int],
        start: int,
        heading: float | None,
    ) -> list[int]:
        config = context.config
        gentle = config.gentle_turn_deg
        row_axis = context.classification.row_axis_deg
        points_array = context.points_xy
        path: list[int] = []
        current = start
        while True:
            best_score = 0.0
            best_next = -1
            best_bearing = 0.0
            for other in neighbor_lists[current]:
                if visited[other] or other in taken:
                    continue
                delta = points_array[other] - points_array[current]
                distance = float(np.linalg.norm(delta))
                if distance <= 0.0:
                    continue
                step_bearing = bearing_deg(points_array[current], points_array[other])
                if heading is None:
                    turn = axial_difference_deg(axial_angle_deg(delta), row_axis)
                    score = (1.0 / distance) * (1.0 + max(0.0, gentle - turn) / gentle)
                    if turn > gentle:
                        score *= 0.1
                else:
                    turn = bearing_difference_deg(step_bearing, heading)
                    if turn > config.reversal_deg or turn > gentle:
                        continue
                    score = (1.0 / distance) * (1.0 + (gentle - turn) / gentle)
                if score > best_score:
                    best_score = score
                    best_next = other
                    best_bearing = step_bearing
            if best_next < 0:
                return path
            path.append(best_next)
            taken.add(best_next)
            current = best_next
            heading = best_bearing


def _farthest(
    adjacency: list[dict[int, float]],
    start: int,
    allowed: set[int],
) -> tuple[int, dict[int, int]]:
    """Farthest node from ``start`` by path length, with BFS parents."""
    distance = {start: 0.0}
    parent: dict[int, int] = {}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        for other, weight in sorted(adjacency[node].items()):
            if other not in allowed or other in distance:
                continue
            distance[other] = distance[node] + weight
            parent[other] = node
            queue.append(other)
    farthest = max(distance, key=lambda node: (distance[node], -node))
    return farthest, parent


def _best_join(
    points_array: np.ndarray,
    first: list[int],
    second: list[int],
    max_gap: float,
    max_turn_deg: float,
) -> tuple[float, list[int]] | None:
    """Closest admissible end-to-end join of two paths."""
    if len(first) < 2 and len(second) < 2:
        return None
    best: tuple[float, list[int]] | None = None
    for head in (first, first[::-1]):
        for tail in (second, second[::-1]):
            gap = float(np.linalg.norm(points_array[tail[0]] - points_array[head[-1]]))
            if gap > max_gap:
                continue
            joined = head + tail
            turns = turning_angles(points_array[joined])
            joint_turns = [
                turns[vertex - 1]
                for vertex in (len(head) - 1, len(head))
                if 1 <= vertex <= turns.size
            ]
            if any(turn > max_turn_deg for turn in joint_turns):
                continue
            if best is None or gap < best[0]:
                best = (gap, joined)
    return best

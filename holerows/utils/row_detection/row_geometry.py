"""Geometry helpers shared by row-detection stages.

Conventions used across the package:

- ``bearing`` values are compass degrees in ``[0, 360)`` where 0 points to
  +Y (north) and 90 points to +X (east).
- ``axial`` values are undirected line orientations in ``[0, 180)``
  measured counter-clockwise from +X.
"""

from __future__ import annotations

import math

import numpy as np
from scipy.interpolate import BSpline
from scipy.spatial import cKDTree
from shapely.geometry import LineString

_EPS = 1e-12


def _validate_points(points_xy: np.ndarray) -> np.ndarray:
    """Validate points array shape.

    Parameters
    ----------
    points_xy : numpy.ndarray
        Input points with shape ``(N, 2)``.

    Returns
    -------
    numpy.ndarray
        Float64 points with shape ``(N, 2)``.
    """
    points_array = np.asarray(points_xy, dtype=np.float64)
    if points_array.ndim != 2 or points_array.shape[1] != 2:
        raise ValueError("points_xy must have shape (N, 2)")
    return points_array


def principal_axes(
    points_xy: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Eigen-decompose the coordinate covariance matrix.

    Parameters
    ----------
    points_xy : numpy.ndarray
        Point coordinates with shape ``(N, 2)``.

    Returns
    -------
    tuple[numpy.ndarray, numpy.ndarray, numpy.ndarray]
        ``(eigenvalues, eigenvectors, centroid)``. Eigenvalues are sorted in
        descending order and eigenvectors are stored as columns.

    Examples
    --------
    >>> values, vectors, _ = principal_axes(np.asarray([[0, 0], [2, 0], [4, 0]]))
    >>> bool(values[0] > values[1])
    True
    """
    points_array = _validate_points(points_xy)
    if points_array.shape[0] == 0:
        raise ValueError("points_xy must not be empty")
    centroid = points_array.mean(axis=0)
    centered = points_array - centroid
    covariance = centered.T @ centered / float(max(1, points_array.shape[0]))
    eigenvalues, eigenvectors = np.linalg.eigh(covariance)
    order = np.argsort(eigenvalues)[::-1]
    eigenvalues = np.clip(eigenvalues[order], 0.0, None)
    return eigenvalues, eigenvectors[:, order], centroid


def variance_ratio(points_xy: np.ndarray) -> float:
    """Return ``lambda1 / lambda2`` of the coordinate covariance.

    Collinear inputs return ``inf``.
    """
    eigenvalues, _, _ = principal_axes(points_xy)
    if eigenvalues[0] <= _EPS:
        return 1.0
    if eigenvalues[1] <= eigenvalues[0] * 1e-12:
        return math.inf
    return float(eigenvalues[0] / eigenvalues[1])


def bearing_deg(start_xy: np.ndarray, end_xy: np.ndarray) -> float:
    """Compass bearing from one point to another.

    Examples
    --------
    >>> bearing_deg(np.asarray([0.0, 0.0]), np.asarray([1.0, 0.0]))
    90.0
    """
    delta = np.asarray(end_xy, dtype=np.float64) - np.asarray(start_xy, dtype=np.float64)
    return float(math.degrees(math.atan2(delta[0], delta[1])) % 360.0)


def path_bearings(ordered_xy: np.ndarray) -> np.ndarray:
    """Compass bearings of consecutive steps along an ordered path."""
    points_array = _validate_points(ordered_xy)
    if points_array.shape[0] < 2:
        return np.asarray([], dtype=np.float64)
    delta = np.diff(points_array, axis=0)
    return np.degrees(np.arctan2(delta[:, 0], delta[:, 1])) % 360.0


def bearing_difference_deg(first: float, second: float) -> float:
    """Smallest absolute difference between two bearings, in ``[0, 180]``."""
    diff = abs(float(first) - float(second)) % 360.0
    return 360.0 - diff if diff > 180.0 else diff


def axial_angle_deg(vector: np.ndarray) -> float:
    """Undirected orientation of a vector, in ``[0, 180)``."""
    vec = np.asarray(vector, dtype=np.float64)
    return float(math.degrees(math.atan2(vec[1], vec[0])) % 180.0)


def axial_difference_deg(first: float, second: float) -> float:
    """Smallest difference between two axial angles, in ``[0, 90]``."""
    diff = abs(float(first) - float(second)) % 180.0
    return 180.0 - diff if diff > 90.0 else diff


def axial_mean_deg(angles_deg: np.ndarray) -> float:
    """Circular mean of axial angles using angle doubling."""
    angle_array = np.radians(np.asarray(angles_deg, dtype=np.float64) * 2.0)
    if angle_array.size == 0:
        raise ValueError("angles_deg must not be empty")
    mean = math.atan2(float(np.sin(angle_array).sum()), float(np.cos(angle_array).sum()))
    return float(math.degrees(mean) / 2.0 % 180.0)


def direction_from_axial(angle_deg: float) -> np.ndarray:
    """Unit vector for an axial angle, oriented canonically."""
    radians = math.radians(angle_deg)
    return canonical_direction(np.asarray([math.cos(radians), math.sin(radians)]))


def canonical_direction(vector: np.ndarray) -> np.ndarray:
    """Normalize a direction so that it points to +X, or +Y when vertical.

    Raises
    ------
    ValueError
        Raised when the vector has zero length.
    """
    vec = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(vec))
    if norm <= _EPS:
        raise ValueError("zero-length direction vector")
    unit = vec / norm
    if unit[0] < -1e-9 or (abs(unit[0]) <= 1e-9 and unit[1] < 0):
        unit = -unit
    return unit


def nearest_neighbor_distances(points_xy: np.ndarray) -> np.ndarray:
    """Distance from each point to its closest distinct neighbour.

    Points whose neighbours all coincide with them get ``0``.
    """
    points_array = _validate_points(points_xy)
    count = points_array.shape[0]
    if count < 2:
        return np.zeros(count, dtype=np.float64)
    tree = cKDTree(points_array)
    k = min(count, 8)
    distances, _ = tree.query(points_array, k=k)
    distances = np.asarray(distances, dtype=np.float64).reshape(count, k)[:, 1:]
    masked = np.where(distances > _EPS, distances, np.inf)
    nearest = masked.min(axis=1)
    return np.where(np.isfinite(nearest), nearest, 0.0)


def estimate_spacing(points_xy: np.ndarray) -> float:
    """Median positive nearest-neighbour distance, with safe fallbacks."""
    points_array = _validate_points(points_xy)
    nearest = nearest_neighbor_distances(points_array)
    positive = nearest[nearest > _EPS]
    if positive.size > 0:
        return float(np.median(positive))
    if points_array.shape[0] >= 2:
        extent = np.ptp(points_array, axis=0)
        diagonal = float(np.hypot(extent[0], extent[1]))
        if diagonal > _EPS:
            return diagonal / max(1.0, points_array.shape[0] - 1.0)
    return 1.0


def cluster_axial_angles(
    angles_deg: np.ndarray,
    tolerance_deg: float,
) -> list[np.ndarray]:
    """Greedy circular-mean clustering of axial angles.

    Each angle joins the cluster whose running mean is closest, provided the
    difference is within ``tolerance_deg``; otherwise it opens a new cluster.

    Returns
    -------
    list[numpy.ndarray]
        Member index arrays, in order of creation.
    """
    angle_array = np.asarray(angles_deg, dtype=np.float64)
    members: list[list[int]] = []
    means: list[float] = []
    for index, angle in enumerate(angle_array):
        best_cluster = -1
        best_diff = math.inf
        for cluster_index, mean in enumerate(means):
            diff = axial_difference_deg(angle, mean)
            if diff < best_diff:
                best_diff = diff
                best_cluster = cluster_index
        if best_cluster >= 0 and best_diff <= tolerance_deg:
            members[best_cluster].append(index)
            means[best_cluster] = axial_mean_deg(angle_array[members[best_cluster]])
        else:
            members.append([index])
            means.append(float(angle % 180.0))
    return [np.asarray(group, dtype=np.int64) for group in members]


def close_neighbor_pairs(points_xy: np.ndarray, slack: float = 1.1) -> np.ndarray:
    """Unique index pairs lying within ``slack`` times either point's NN distance."""
    points_array = _validate_points(points_xy)
    count = points_array.shape[0]
    if count < 2:
        return np.empty((0, 2), dtype=np.int64)
    nearest = nearest_neighbor_distances(points_array)
    tree = cKDTree(points_array)
    k = min(count, 9)
    distances, neighbors = tree.query(points_array, k=k)
    distances = np.asarray(distances).reshape(count, k)
    neighbors = np.asarray(neighbors).reshape(count, k)
    pairs: set[tuple[int, int]] = set()
    for index in range(count):
        if nearest[index] <= _EPS:
            continue
        limit = nearest[index] * slack
        for dist, other in zip(distances[index], neighbors[index]):
            if other == index or dist <= _EPS or dist > limit:
                continue
            pairs.add((min(index, int(other)), max(index, int(other))))
    if not pairs:
        return np.empty((0, 2), dtype=np.int64)
    return np.asarray(sorted(pairs), dtype=np.int64)


def estimate_row_axis(
    points_xy: np.ndarray,
    tolerance_deg: float = 15.0,
    tie_ratio: float = 0.8,
) -> float:
    """Estimate the dominant row orientation of a point set.

    Close neighbour pairs vote with their axial orientation. The most
    populated orientation cluster wins; clusters within ``tie_ratio`` of the
    winner are tie-broken toward the first principal axis.

    Parameters
    ----------
    points_xy : numpy.ndarray
        Point coordinates with shape ``(N, 2)``.
    tolerance_deg : float, optional
        Clustering tolerance for pair orientations.
    tie_ratio : float, optional
        Relative size above which a cluster competes with the largest one.

    Returns
    -------
    float
        Axial row orientation in ``[0, 180)``.
    """
    points_array = _validate_points(points_xy)
    eigenvalues, eigenvectors, _ = principal_axes(points_array)
    pca_axis = axial_angle_deg(eigenvectors[:, 0]) if eigenvalues[0] > _EPS else 0.0
    pairs = close_neighbor_pairs(points_array)
    if pairs.shape[0] == 0:
        return pca_axis
    vectors = points_array[pairs[:, 1]] - points_array[pairs[:, 0]]
    angles = np.degrees(np.arctan2(vectors[:, 1], vectors[:, 0])) % 180.0
    clusters = cluster_axial_angles(angles, tolerance_deg)
    largest = max(group.size for group in clusters)
    best_angle = pca_axis
    best_key: tuple[float, int] | None = None
    for group in clusters:
        if group.size < tie_ratio * largest:
            continue
        mean = axial_mean_deg(angles[group])
        key = (axial_difference_deg(mean, pca_axis), -int(group.size))
        if best_key is None or key < best_key:
            best_key = key
            best_angle = mean
    return best_angle


def local_orientations(
    points_xy: np.ndarray,
    row_axis_deg: float,
    tie_slack: float = 1.1,
    run_tolerance_deg: float = 10.0,
) -> np.ndarray:
    """Axial orientation from each point to its nearest neighbour.

    Neighbours within ``tie_slack`` of the nearest distance compete. On a
    lattice where burden and spacing are close, the candidates are the two
    lattice axes; the one closest to ``row_axis_deg`` wins, and candidates
    equally far from it fall back to the longer run of collinear
    neighbours. Every point of a rectilinear grid therefore reads the same
    lattice axis.
    """
    points_array = _validate_points(points_xy)
    count = points_array.shape[0]
    orientations = np.full(count, float(row_axis_deg) % 180.0, dtype=np.float64)
    if count < 2:
        return orientations
    tree = cKDTree(points_array)
    k = min(count, 9)
    distances, neighbors = tree.query(points_array, k=k)
    distances = np.asarray(distances).reshape(count, k)
    neighbors = np.asarray(neighbors).reshape(count, k)
    for index in range(count):
        valid = (neighbors[index] != index) & (distances[index] > _EPS)
        if not np.any(valid):
            continue
        limit = float(distances[index][valid].min()) * tie_slack
        neighbor_angles = np.asarray(
            [
                axial_angle_deg(points_array[other] - points_array[index])
                for other in neighbors[index][valid]
            ]
        )
        best_key: tuple[int, int] | None = None
        for dist, angle in zip(distances[index][valid], neighbor_angles):
            if dist > limit:
                continue
            run = sum(
                1
                for other_angle in neighbor_angles
                if axial_difference_deg(float(other_angle), float(angle)) <= run_tolerance_deg
            )
            # Whole degrees, so float noise on a rotated lattice still ties.
            diff = round(axial_difference_deg(float(angle), row_axis_deg))
            key = (diff, -run)
            if best_key is None or key < best_key:
                best_key = key
                orientations[index] = float(angle)
    return orientations


def fit_circle_curvature(points_xy: np.ndarray) -> float:
    """Curvature ``1 / R`` of a least-squares (Kasa) circle fit.

    Collinear or degenerate windows return ``0``.

    Examples
    --------
    >>> fit_circle_curvature(np.asarray([[0, 0], [1, 0], [2, 0]]))
    0.0
    """
    points_array = _validate_points(points_xy)
    if points_array.shape[0] < 3:
        return 0.0
    centered = points_array - points_array.mean(axis=0)
    scale = float(np.max(np.linalg.norm(centered, axis=1)))
    if scale <= _EPS:
        return 0.0
    unit = centered / scale
    eigenvalues, _, _ = principal_axes(unit)
    if eigenvalues[0] <= _EPS or eigenvalues[1] <= eigenvalues[0] * 1e-10:
        return 0.0
    design = np.column_stack((2.0 * unit[:, 0], 2.0 * unit[:, 1], np.ones(unit.shape[0])))
    target = unit[:, 0] ** 2 + unit[:, 1] ** 2
    solution, *_ = np.linalg.lstsq(design, target, rcond=None)
    radius_sq = float(solution[2] + solution[0] ** 2 + solution[1] ** 2)
    if radius_sq <= _EPS:
        return 0.0
    return float(1.0 / (math.sqrt(radius_sq) * scale))


def loess_smooth(
    x_values: np.ndarray,
    y_values: np.ndarray,
    x_eval: np.ndarray | None = None,
    bandwidth: float = 0.3,
) -> np.ndarray:
    """Local linear regression with tricube weights.

    The window at each evaluation point spans the distance to its
    ``ceil(bandwidth * N)``-th nearest sample.

    Parameters
    ----------
    x_values, y_values : numpy.ndarray
        Samples with shape ``(N,)``.
    x_eval : numpy.ndarray | None, optional
        Evaluation locations. Defaults to ``x_values``.
    bandwidth : float, optional
        Fraction of samples inside each local window.

    Returns
    -------
    numpy.ndarray
        Smoothed values at ``x_eval``.
    """
    x_array = np.asarray(x_values, dtype=np.float64)
    y_array = np.asarray(y_values, dtype=np.float64)
    if x_array.ndim != 1 or x_array.shape != y_array.shape:
        raise ValueError("x_values and y_values must be 1D with matching length")
    if not 0.0 < bandwidth <= 1.0:
        raise ValueError("bandwidth must be within (0, 1]")
    eval_array = x_array if x_eval is None else np.asarray(x_eval, dtype=np.float64)
    count = x_array.size
    if count == 0:
        raise ValueError("x_values must not be empty")
    span = min(count, max(3, int(math.ceil(bandwidth * count))))
    smoothed = np.empty(eval_array.shape[0], dtype=np.float64)
    for eval_index, x0 in enumerate(eval_array):
        distance = np.abs(x_array - x0)
        reach = float(np.partition(distance, span - 1)[span - 1])
        if reach <= _EPS:
            weights = (distance <= _EPS).astype(np.float64)
        else:
            ratio = np.clip(distance / reach, 0.0, 1.0)
            weights = (1.0 - ratio**3) ** 3
        if weights.sum() <= _EPS:
            weights = (distance <= reach).astype(np.float64)
        smoothed[eval_index] = _weighted_linear_value(x_array, y_array, weights, x0)
    return smoothed


def _weighted_linear_value(
    x_array: np.ndarray,
    y_array: np.ndarray,
    weights: np.ndarray,
    x0: float,
) -> float:
    """Evaluate one weighted least-squares line at ``x0``."""
    total = float(weights.sum())
    x_mean = float((weights * x_array).sum() / total)
    y_mean = float((weights * y_array).sum() / total)
    sxx = float((weights * (x_array - x_mean) ** 2).sum())
    if sxx <= _EPS * max(1.0, total):
        return y_mean
    slope = float((weights * (x_array - x_mean) * (y_array - y_mean)).sum()) / sxx
    return y_mean + slope * (x0 - x_mean)


def project_onto_polyline(
    points_xy: np.ndarray,
    polyline_xy: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Project points onto a polyline.

    Parameters
    ----------
    points_xy : numpy.ndarray
        Points with shape ``(M, 2)``.
    polyline_xy : numpy.ndarray
        Polyline vertices with shape ``(V, 2)``, ``V >= 1``.

    Returns
    -------
    tuple[numpy.ndarray, numpy.ndarray, numpy.ndarray]
        ``(distance, arc_position, signed_offset)`` each with shape ``(M,)``.
        Offsets are positive on the left of the travel direction.
    """
    points_array = _validate_points(points_xy)
    line_array = _validate_points(polyline_xy)
    if line_array.shape[0] == 0:
        raise ValueError("polyline_xy must not be empty")
    if line_array.shape[0] == 1:
        delta = points_array - line_array[0]
        distance = np.linalg.norm(delta, axis=1)
        return distance, np.zeros(points_array.shape[0]), distance.copy()
    seg_start = line_array[:-1]
    seg_vec = line_array[1:] - seg_start
    seg_len_sq = (seg_vec**2).sum(axis=1)
    seg_len = np.sqrt(seg_len_sq)
    cumulative = np.concatenate(([0.0], np.cumsum(seg_len)))[:-1]
    rel = points_array[:, None, :] - seg_start[None, :, :]
    safe_len_sq = np.where(seg_len_sq > _EPS, seg_len_sq, 1.0)
    t_param = (rel * seg_vec[None, :, :]).sum(axis=2) / safe_len_sq[None, :]
    t_param = np.where(seg_len_sq[None, :] > _EPS, np.clip(t_param, 0.0, 1.0), 0.0)
    foot = seg_start[None, :, :] + t_param[:, :, None] * seg_vec[None, :, :]
    dist_all = np.linalg.norm(points_array[:, None, :] - foot, axis=2)
    best = np.argmin(dist_all, axis=1)
    rows = np.arange(points_array.shape[0])
    distance = dist_all[rows, best]
    arc_position = cumulative[best] + t_param[rows, best] * seg_len[best]
    cross = (
        seg_vec[best, 0] * rel[rows, best, 1] - seg_vec[best, 1] * rel[rows, best, 0]
    )
    signed = np.where(cross >= 0.0, distance, -distance)
    return distance, arc_position, signed


def nearest_neighbor_chain(points_xy: np.ndarray, start: int | None = None) -> np.ndarray:
    """Order points by greedy nearest-neighbour chaining.

    The chain starts at ``start`` or, by default, at the point farthest from
    the centroid (lowest index on ties).
    """
    points_array = _validate_points(points_xy)
    count = points_array.shape[0]
    if count == 0:
        return np.asarray([], dtype=np.int64)
    if start is None:
        from_centroid = np.linalg.norm(points_array - points_array.mean(axis=0), axis=1)
        start = int(np.argmax(from_centroid))
    visited = np.zeros(count, dtype=bool)
    order = [int(start)]
    visited[start] = True
    for _ in range(count - 1):
        current = points_array[order[-1]]
        distance = np.linalg.norm(points_array - current, axis=1)
        distance[visited] = np.inf
        nxt = int(np.argmin(distance))
        order.append(nxt)
        visited[nxt] = True
    return np.asarray(order, dtype=np.int64)


def simplify_polyline_indices(polyline_xy: np.ndarray, tolerance: float) -> np.ndarray:
    """Douglas-Peucker simplification returning kept vertex positions.

    Simplification runs through :meth:`shapely.LineString.simplify`; the kept
    coordinates are mapped back onto positions of the input polyline.
    """
    line_array = _validate_points(polyline_xy)
    count = line_array.shape[0]
    if count <= 2:
        return np.arange(count, dtype=np.int64)
    if np.unique(line_array, axis=0).shape[0] < 2:
        return np.asarray([0, count - 1], dtype=np.int64)
    simplified = LineString(line_array).simplify(float(tolerance), preserve_topology=False)
    kept_coords = np.asarray(simplified.coords, dtype=np.float64)
    kept: list[int] = []
    cursor = 0
    for coord in kept_coords:
        while cursor < count and not np.array_equal(line_array[cursor], coord):
            cursor += 1
        if cursor >= count:
            break
        kept.append(cursor)
        cursor += 1
    if not kept or kept[0] != 0:
        kept.insert(0, 0)
    if kept[-1] != count - 1:
        kept.append(count - 1)
    return np.asarray(kept, dtype=np.int64)


def bspline_curve(
    control_xy: np.ndarray,
    degree: int = 3,
    samples: int = 100,
) -> np.ndarray:
    """Sample a clamped uniform B-spline defined by control points.

    Evaluation goes through :class:`scipy.interpolate.BSpline` (de Boor
    recursion). The degree drops when fewer than ``degree + 1`` control
    points are supplied.
    """
    control_array = _validate_points(control_xy)
    count = control_array.shape[0]
    if count < 2:
        raise ValueError("at least two control points are required")
    order = min(int(degree), count - 1)
    interior = np.linspace(0.0, 1.0, count - order + 1)[1:-1]
    knots = np.concatenate((np.zeros(order + 1), interior, np.ones(order + 1)))
    spline = BSpline(knots, control_array, order)
    return np.asarray(spline(np.linspace(0.0, 1.0, max(2, int(samples)))))


def turning_angles(ordered_xy: np.ndarray) -> np.ndarray:
    """Direction change at each interior vertex, in degrees ``[0, 180]``."""
    bearings = path_bearings(ordered_xy)
    if bearings.size < 2:
        return np.asarray([], dtype=np.float64)
    diff = np.abs(np.diff(bearings)) % 360.0
    return np.where(diff > 180.0, 360.0 - diff, diff)


def row_roughness(ordered_xy: np.ndarray, spacing: float) -> float:
    """Mean second difference along an ordered row, in spacing units."""
    points_array = _validate_points(ordered_xy)
    if points_array.shape[0] < 3 or spacing <= _EPS:
        return 0.0
    second = points_array[:-2] - 2.0 * points_array[1:-1] + points_array[2:]
    return float(np.linalg.norm(second, axis=1).mean() / (2.0 * spacing))


def describe_path(ordered_xy: np.ndarray) -> tuple[float, float, float]:
    """Return ``(direction, start_bearing, end_bearing)`` of an ordered path."""
    points_array = _validate_points(ordered_xy)
    if points_array.shape[0] < 2:
        return 0.0, 0.0, 0.0
    direction = bearing_deg(points_array[0], points_array[-1])
    start = bearing_deg(points_array[0], points_array[1])
    end = bearing_deg(points_array[-2], points_array[-1])
    return direction, start, end


def max_line_deviation(points_xy: np.ndarray) -> float:
    """Largest perpendicular distance from the total-least-squares line."""
    points_array = _validate_points(points_xy)
    if points_array.shape[0] < 3:
        return 0.0
    eigenvalues, eigenvectors, centroid = principal_axes(points_array)
    if eigenvalues[0] <= _EPS:
        return 0.0
    normal = eigenvectors[:, 1]
    return float(np.max(np.abs((points_array - centroid) @ normal)))

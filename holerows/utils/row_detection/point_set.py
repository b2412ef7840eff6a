"""Point set pre-analysis and sequence token parsing."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy.spatial import cKDTree

from holerows.core.config import DetectionConfig
from holerows.core.errors import InputError
from holerows.utils.row_detection.row_geometry import (
    _validate_points,
    estimate_spacing,
    nearest_neighbor_distances,
)

NUMERIC_KIND = "numeric"
ALPHANUMERIC_KIND = "alphanumeric"

_NUMERIC_PATTERN = re.compile(r"^\s*(\d+)\s*$")
_ALPHANUMERIC_PATTERN = re.compile(r"^\s*([A-Za-z]+)[\s_\-]*(\d+)\s*$")


@dataclass(frozen=True)
class SequenceInfo:
    """Parsed sequence tokens of a point subset.

    ``order`` lists the indices of parsed points sorted by token, with
    alphanumeric tokens sorted by ``(prefix, number)``.
    """

    tokens: tuple[str | None, ...]
    kind: str | None
    order: np.ndarray
    numbers: np.ndarray
    prefixes: tuple[str | None, ...]
    parsed_mask: np.ndarray
    reliability: float
    reliable: bool

    @property
    def complete(self) -> bool:
        """Whether every point carries a parsed token."""
        return bool(self.parsed_mask.size > 0 and self.parsed_mask.all())

    def rank(self) -> np.ndarray:
        """Sequence rank per point, ``-1`` where the token did not parse."""
        rank = np.full(self.parsed_mask.size, -1, dtype=np.int64)
        rank[self.order] = np.arange(self.order.size)
        return rank

    def prefix_segments(self) -> list[np.ndarray]:
        """Split the token order into runs sharing one alphanumeric prefix."""
        if self.order.size == 0:
            return []
        if self.kind != ALPHANUMERIC_KIND:
            return [self.order]
        segments: list[np.ndarray] = []
        start = 0
        for position in range(1, self.order.size + 1):
            at_end = position == self.order.size
            if at_end or (
                self.prefixes[self.order[position]]
                != self.prefixes[self.order[start]]
            ):
                segments.append(self.order[start:position])
                start = position
        return segments


@dataclass(frozen=True)
class PointSetSummary:
    """Pre-analysis summary feeding default parameters downstream."""

    count: int
    extent_min: np.ndarray
    extent_max: np.ndarray
    diagonal: float
    nn_distances: np.ndarray
    spacing: float
    density: float
    sequence: SequenceInfo
    default_k: int
    default_eps: float


def validate_point_array(points_xy: np.ndarray) -> np.ndarray:
    """Validate input coordinates before any analysis runs.

    Parameters
    ----------
    points_xy : numpy.ndarray
        Candidate coordinates with shape ``(N, 2)``.

    Returns
    -------
    numpy.ndarray
        Float64 coordinates with shape ``(N, 2)``.

    Raises
    ------
    InputError
        Raised for fewer than two points, non-finite values or zero extent.
    """
    try:
        points_array = _validate_points(points_xy)
    except ValueError as exc:
        raise InputError(str(exc)) from exc
    if points_array.shape[0] < 2:
        raise InputError(
            f"at least 2 points are required, got {points_array.shape[0]}"
        )
    if not np.all(np.isfinite(points_array)):
        raise InputError("point coordinates must be finite")
    if has_zero_extent(points_array):
        raise InputError("point set has zero spatial extent")
    return points_array


def has_zero_extent(points_xy: np.ndarray) -> bool:
    """Whether all points coincide in the plane."""
    points_array = np.asarray(points_xy, dtype=np.float64)
    if points_array.shape[0] == 0:
        return True
    extent = np.ptp(points_array, axis=0)
    scale = max(1.0, float(np.max(np.abs(points_array))))
    return bool(np.all(extent <= 1e-9 * scale))


def parse_sequence_tokens(
    tokens: Sequence[str | None],
    reliability_threshold: float = 0.7,
) -> SequenceInfo:
    """Parse ordering hints into a sorted sequence.

    Parameters
    ----------
    tokens : Sequence[str | None]
        One token per point. ``None`` marks a missing hint.
    reliability_threshold : float, optional
        Share of unique, parseable tokens required to trust the sequence.

    Returns
    -------
    SequenceInfo
        Parsed ordering details.

    Examples
    --------
    >>> info = parse_sequence_tokens(["3", "1", "2"])
    >>> info.order.tolist(), info.reliable
    ([1, 2, 0], True)
    """
    token_tuple = tuple(None if token is None else str(token) for token in tokens)
    count = len(token_tuple)
    numeric = [_parse_numeric(token) for token in token_tuple]
    alphanumeric = [_parse_alphanumeric(token) for token in token_tuple]
    numeric_hits = sum(value is not None for value in numeric)
    alpha_hits = sum(value is not None for value in alphanumeric)
    numbers = np.full(count, -1, dtype=np.int64)
    prefixes: list[str | None] = [None] * count
    kind: str | None = None
    if numeric_hits > 0 and numeric_hits >= alpha_hits:
        kind = NUMERIC_KIND
        for index, value in enumerate(numeric):
            if value is not None:
                numbers[index] = value
    elif alpha_hits > 0:
        kind = ALPHANUMERIC_KIND
        for index, value in enumerate(alphanumeric):
            if value is not None:
                prefixes[index], numbers[index] = value
    parsed_mask = numbers >= 0
    parsed = np.where(parsed_mask)[0]
    sort_keys = [(prefixes[index] or "", int(numbers[index]), int(index)) for index in parsed]
    order = np.asarray(
        [key[2] for key in sorted(sort_keys)], dtype=np.int64
    ).reshape(-1)
    unique_keys = {(prefixes[index], int(numbers[index])) for index in parsed}
    reliability = len(unique_keys) / count if count > 0 else 0.0
    return SequenceInfo(
        tokens=token_tuple,
        kind=kind,
        order=order,
        numbers=numbers,
        prefixes=tuple(prefixes),
        parsed_mask=parsed_mask,
        reliability=float(reliability),
        reliable=bool(count > 0 and reliability >= reliability_threshold),
    )


def analyze_point_set(
    points_xy: np.ndarray,
    sequence: SequenceInfo,
    config: DetectionConfig,
) -> PointSetSummary:
    """Compute count, extent, density and default clustering parameters.

    Parameters
    ----------
    points_xy : numpy.ndarray
        Subset coordinates with shape ``(N, 2)``.
    sequence : SequenceInfo
        Parsed tokens of the same subset.
    config : DetectionConfig
        Active detection configuration.

    Returns
    -------
    PointSetSummary
        Summary whose ``spacing``, ``default_k`` and ``default_eps`` seed the
        downstream stages.
    """
    points_array = _validate_points(points_xy)
    count = points_array.shape[0]
    extent_min = points_array.min(axis=0)
    extent_max = points_array.max(axis=0)
    extent = extent_max - extent_min
    diagonal = float(np.hypot(extent[0], extent[1]))
    nn_distances = nearest_neighbor_distances(points_array)
    spacing = estimate_spacing(points_array)
    area = float(extent[0] * extent[1])
    if area <= 1e-12:
        area = max(diagonal * spacing, 1e-12)
    default_k = config.knn_k or max(2, min(6, count // 5))
    default_eps = config.dbscan_eps or estimate_dbscan_eps(points_array, spacing)
    return PointSetSummary(
        count=count,
        extent_min=extent_min,
        extent_max=extent_max,
        diagonal=diagonal,
        nn_distances=nn_distances,
        spacing=spacing,
        density=float(count / area),
        sequence=sequence,
        default_k=int(default_k),
        default_eps=float(default_eps),
    )


def estimate_dbscan_eps(points_xy: np.ndarray, spacing: float, k: int = 4) -> float:
    """Pick DBSCAN epsilon at the elbow of the sorted k-distance curve.

    The value is clamped into ``[1.1, 3.0]`` times the hole spacing.
    """
    points_array = _validate_points(points_xy)
    count = points_array.shape[0]
    low = 1.1 * spacing
    high = 3.0 * spacing
    if count < 5:
        return float(1.5 * spacing)
    neighbor_k = min(k, count - 1)
    tree = cKDTree(points_array)
    distances, _ = tree.query(points_array, k=neighbor_k + 1)
    k_distance = np.sort(np.asarray(distances)[:, neighbor_k])
    curvature = np.diff(k_distance, n=2)
    if curvature.size == 0:
        elbow = float(np.median(k_distance))
    else:
        elbow = float(k_distance[int(np.argmax(curvature)) + 1])
    if not math.isfinite(elbow):
        elbow = 1.5 * spacing
    return float(np.clip(elbow, low, high))


def _parse_numeric(token: str | None) -> int | None:
    """Parse a purely numeric token."""
    if token is None:
        return None
    match = _NUMERIC_PATTERN.match(token)
    return int(match.group(1)) if match else None


def _parse_alphanumeric(token: str | None) -> tuple[str, int] | None:
    """Parse a letter-prefixed token such as ``B07``."""
    if token is None:
        return None
    match = _ALPHANUMERIC_PATTERN.match(token)
    if match is None:
        return None
    return match.group(1).upper(), int(match.group(2))

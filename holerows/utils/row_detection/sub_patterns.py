"""Separate a MULTI_PATTERN point set into orientation-homogeneous groups."""

from __future__ import annotations

import math

import numpy as np
from loguru import logger
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components
from scipy.spatial import cKDTree

from holerows.core.config import DetectionConfig
from holerows.core.models import SubPattern, SubPatternRole
from holerows.utils.row_detection.pattern_classifier import Classification
from holerows.utils.row_detection.row_geometry import (
    _validate_points,
    axial_difference_deg,
    direction_from_axial,
    estimate_row_axis,
    estimate_spacing,
)


def separate_sub_patterns(
    points_xy: np.ndarray,
    classification: Classification,
    config: DetectionConfig,
    depth: int = 0,
) -> list[SubPattern]:
    """Split a point subset into connected sub-patterns.

    Parameters
    ----------
    points_xy : numpy.ndarray
        Subset coordinates with shape ``(N, 2)``.
    classification : Classification
        Classifier output carrying orientation families.
    config : DetectionConfig
        Supplies connectivity, size and perpendicularity thresholds.
    depth : int, optional
        Recursion depth stamped on every produced sub-pattern.

    Returns
    -------
    list[SubPattern]
        Sub-patterns with local indices. MAIN comes first, the rest follow
        by descending size.
    """
    points_array = _validate_points(points_xy)
    count = points_array.shape[0]
    if count == 0:
        return []
    family_id = _family_labels(points_array, classification, config)
    groups: list[np.ndarray] = []
    for family in np.unique(family_id):
        members = np.where(family_id == family)[0]
        groups.extend(_connected_groups(points_array, members, config.connection_factor))
    groups = absorb_small_groups(points_array, groups, config.min_sub_pattern_size)
    sub_patterns = assign_roles(points_array, groups, config, depth)
    logger.debug(
        f"separated {count} points into {len(sub_patterns)} sub-patterns "
        f"at depth {depth}: {[sub.role.value for sub in sub_patterns]}"
    )
    return sub_patterns


def absorb_small_groups(
    points_xy: np.ndarray,
    groups: list[np.ndarray],
    min_size: int,
) -> list[np.ndarray]:
    """Merge groups smaller than ``min_size`` into their nearest other group.

    The smallest group is absorbed first. A lone remaining group is kept
    whatever its size.
    """
    points_array = _validate_points(points_xy)
    merged = [np.asarray(group, dtype=np.int64) for group in groups if len(group) > 0]
    while len(merged) > 1:
        sizes = [group.size for group in merged]
        smallest = int(np.argmin(sizes))
        if sizes[smallest] >= min_size:
            break
        source = merged.pop(smallest)
        target = _nearest_group(points_array, source, merged)
        merged[target] = np.sort(np.concatenate((merged[target], source)))
    return merged


def assign_roles(
    points_xy: np.ndarray,
    groups: list[np.ndarray],
    config: DetectionConfig,
    depth: int = 0,
) -> list[SubPattern]:
    """Tag groups as MAIN, BATTER, BUFFER or SECONDARY.

    The largest group is MAIN, ties going to the group holding the lowest
    index. Groups within ``perpendicular_tolerance_deg`` of perpendicular to
    MAIN are BATTER when their centroid lies beyond MAIN's along-row extent
    and BUFFER otherwise.
    """
    points_array = _validate_points(points_xy)
    if not groups:
        return []
    ordered = sorted(groups, key=lambda group: (-group.size, int(group.min())))
    orientations = [_group_orientation(points_array, group) for group in ordered]
    main_orientation = orientations[0]
    main_direction = direction_from_axial(main_orientation)
    main_along = points_array[ordered[0]] @ main_direction
    low, high = float(main_along.min()), float(main_along.max())
    sub_patterns = [
        SubPattern(
            indices=tuple(int(i) for i in ordered[0]),
            role=SubPatternRole.MAIN,
            orientation_deg=main_orientation,
            depth=depth,
        )
    ]
    for group, orientation in zip(ordered[1:], orientations[1:]):
        difference = axial_difference_deg(orientation, main_orientation)
        if difference >= 90.0 - config.perpendicular_tolerance_deg:
            centroid_along = float(points_array[group].mean(axis=0) @ main_direction)
            role = (
                SubPatternRole.BATTER
                if centroid_along < low or centroid_along > high
                else SubPatternRole.BUFFER
            )
        else:
            role = SubPatternRole.SECONDARY
        sub_patterns.append(
            SubPattern(
                indices=tuple(int(i) for i in group),
                role=role,
                orientation_deg=orientation,
                depth=depth,
            )
        )
    return sub_patterns


def _family_labels(
    points_array: np.ndarray,
    classification: Classification,
    config: DetectionConfig,
) -> np.ndarray:
    """Family id per point; unpopulated families join their nearest populated one."""
    count = points_array.shape[0]
    family_id = np.full(count, -1, dtype=np.int64)
    populated_size = max(
        config.min_sub_pattern_size,
        int(math.ceil(config.min_family_fraction * count)),
    )
    families = classification.orientation_families
    populated = [family for family in families if family.size >= populated_size]
    if not populated:
        family_id[:] = 0
        return family_id
    for label, family in enumerate(populated):
        family_id[family] = label
    stray = np.where(family_id < 0)[0]
    if stray.size > 0:
        anchored = np.where(family_id >= 0)[0]
        tree = cKDTree(points_array[anchored])
        _, nearest = tree.query(points_array[stray], k=1)
        family_id[stray] = family_id[anchored[np.asarray(nearest, dtype=np.int64)]]
    return family_id


def _connected_groups(
    points_array: np.ndarray,
    members: np.ndarray,
    connection_factor: float,
) -> list[np.ndarray]:
    """Connected components of one family under a spacing-scaled reach."""
    if members.size < 2:
        return [members]
    member_xy = points_array[members]
    reach = connection_factor * estimate_spacing(member_xy)
    pairs = cKDTree(member_xy).query_pairs(r=reach, output_type="ndarray")
    size = members.size
    if pairs.shape[0] == 0:
        return [members[[index]] for index in range(size)]
    graph = coo_matrix(
        (np.ones(pairs.shape[0]), (pairs[:, 0], pairs[:, 1])), shape=(size, size)
    )
    component_count, labels = connected_components(graph, directed=False)
    return [members[labels == component] for component in range(component_count)]


def _nearest_group(
    points_array: np.ndarray,
    source: np.ndarray,
    candidates: list[np.ndarray],
) -> int:
    """Index of the candidate group with the smallest point-to-point gap."""
    best_index = 0
    best_distance = math.inf
    for candidate_index, candidate in enumerate(candidates):
        distance, _ = cKDTree(points_array[candidate]).query(points_array[source], k=1)
        gap = float(np.min(distance))
        if gap < best_distance:
            best_distance = gap
            best_index = candidate_index
    return best_index


def _group_orientation(points_array: np.ndarray, group: np.ndarray) -> float:
    """Dominant row axis of one group."""
    if group.size < 2:
        return 0.0
    return estimate_row_axis(points_array[group])

"""Post-detection editing of labelled rows.

All helpers are pure: they return a new :class:`PatternResult` and leave the
input untouched. Metrics and warnings are carried over unchanged.
"""

from __future__ import annotations

import re
from dataclasses import replace
from typing import Hashable, Iterable, Mapping

import numpy as np
from loguru import logger

from holerows.core.models import DetectedRow, DirectionType, PatternResult, RowShape
from holerows.utils.row_detection.row_geometry import (
    _validate_points,
    canonical_direction,
    describe_path,
    nearest_neighbor_chain,
    principal_axes,
)
from holerows.utils.row_detection.strategies import attach_to_rows

_ORDER_BY = ("spatial", "existing")
_ALPHA_START = re.compile(r"^([A-Z]+)(\d+)$")


def rename_rows(result: PatternResult, mapping: Mapping[int, int]) -> PatternResult:
    """Renumber rows through ``{old_row_index: new_row_index}``.

    Raises
    ------
    ValueError
        Raised for an unknown row, a non-positive target or a rename that
        would make two rows share an index.

    Examples
    --------
    >>> rename_rows(result, {1: 10}).row_by_index(10).indices == result.row_by_index(1).indices
    True
    """
    known = {row.row_index for row in result.rows}
    unknown = sorted(set(mapping) - known)
    if unknown:
        raise ValueError(f"unknown row index: {unknown}")
    renamed = [replace(row, row_index=int(mapping.get(row.row_index, row.row_index))) for row in result.rows]
    new_indices = [row.row_index for row in renamed]
    if min(new_indices, default=1) < 1:
        raise ValueError("row indices must be >= 1")
    if len(set(new_indices)) != len(new_indices):
        raise ValueError("rename would give two rows the same index")
    logger.debug(f"renamed rows: {dict(mapping)}")
    return _with_rows(result, renamed)


def invert_row_order(result: PatternResult, invert_positions: bool = False) -> PatternResult:
    """Swap row numbers end for end; row 1 becomes row N.

    Parameters
    ----------
    result : PatternResult
        Labelled rows.
    invert_positions : bool, optional
        Also reverse the position order within every row.

    Raises
    ------
    ValueError
        Raised when fewer than two rows exist.
    """
    ordered = sorted(row.row_index for row in result.rows)
    if len(ordered) < 2:
        raise ValueError("need at least 2 rows to invert")
    mapping = dict(zip(ordered, reversed(ordered)))
    inverted = []
    for row in result.rows:
        row = replace(row, row_index=mapping[row.row_index])
        inverted.append(row.reversed() if invert_positions and len(row) > 1 else row)
    return _with_rows(result, inverted)


def reverse_row(result: PatternResult, row_index: int) -> PatternResult:
    """Reverse the position order of one row."""
    target = result.row_by_index(row_index)
    return _with_rows(
        result,
        [row.reversed() if row is target else row for row in result.rows],
    )


def resequence_positions(
    result: PatternResult,
    points_xy: np.ndarray,
    direction: DirectionType | str = DirectionType.FORWARD,
    order_by: str = "spatial",
) -> PatternResult:
    """Re-derive position order within every row.

    Parameters
    ----------
    result : PatternResult
        Labelled rows.
    points_xy : numpy.ndarray
        Coordinates with shape ``(N, 2)``.
    direction : DirectionType | str, optional
        ``"forward"`` keeps every row in one sense; ``"serpentine"`` reverses
        every second row in row-number order.
    order_by : str, optional
        ``"spatial"`` sorts points along the row's principal axis, or chains
        curved rows from their first end by nearest neighbour;
        ``"existing"`` keeps the current position order.

    Returns
    -------
    PatternResult
        Result with the requested direction at confidence 1.0.
    """
    points_array = _validate_points(points_xy)
    direction_type = DirectionType(direction)
    if order_by not in _ORDER_BY:
        raise ValueError(f"order_by must be one of {_ORDER_BY}")
    resequenced: list[DetectedRow] = []
    for position, row in enumerate(sorted(result.rows, key=lambda item: item.row_index)):
        indices = list(row.indices)
        if order_by == "spatial" and len(indices) > 1:
            indices = _spatial_order(points_array, indices, row.shape)
        if direction_type is DirectionType.SERPENTINE and position % 2 == 1:
            indices.reverse()
        resequenced.append(_refresh(row, indices, points_array))
    updated = _with_rows(result, resequenced)
    return replace(updated, direction=direction_type, direction_confidence=1.0)


def move_points_to_row(
    result: PatternResult,
    points_xy: np.ndarray,
    point_indices: Iterable[int],
    row_index: int,
) -> PatternResult:
    """Move points, orphans included, into another row.

    Each moved point is inserted where it projects along the target row.
    Rows left empty are removed.
    """
    points_array = _validate_points(points_xy)
    moving = sorted({int(index) for index in point_indices})
    target = result.row_by_index(row_index)
    for index in moving:
        if not 0 <= index < len(result.hole_ids):
            raise ValueError(f"unknown point index: {index}")
    moving_set = set(moving)
    kept_target = [index for index in target.indices if index not in moving_set]
    if kept_target:
        rows, _ = attach_to_rows(
            points_array, [np.asarray(kept_target, dtype=np.int64)], moving, np.inf
        )
        new_target = [int(index) for index in rows[0]]
    else:
        new_target = moving
    updated: list[DetectedRow] = []
    for row in result.rows:
        if row.row_index == row_index:
            updated.append(_refresh(row, new_target, points_array))
            continue
        remaining = [index for index in row.indices if index not in moving_set]
        if not remaining:
            continue
        if len(remaining) == len(row.indices):
            updated.append(row)
        else:
            updated.append(_refresh(row, remaining, points_array))
    orphans = tuple(index for index in result.orphan_indices if index not in moving_set)
    return replace(_with_rows(result, updated), orphan_indices=orphans)


def increment_letters(letters: str) -> str:
    """Next row letter code: ``A`` to ``B``, ``Z`` to ``AA``, ``AZ`` to ``BA``.

    Examples
    --------
    >>> [increment_letters(code) for code in ("A", "Z", "AZ", "ZZ")]
    ['B', 'AA', 'BA', 'AAA']
    """
    if not letters or not letters.isalpha() or not letters.isupper():
        raise ValueError(f"row letters must be upper-case A-Z: {letters!r}")
    chars = list(letters)
    position = len(chars) - 1
    while position >= 0:
        if chars[position] != "Z":
            chars[position] = chr(ord(chars[position]) + 1)
            return "".join(chars)
        chars[position] = "A"
        position -= 1
    return "A" + "".join(chars)


def renumber_tokens(result: PatternResult, start: str | int = "1") -> dict[Hashable, str]:
    """Rebuild hole tokens from row and position labels.

    Holes are visited row by row, in position order. A numeric ``start``
    numbers them consecutively across rows. A letter-prefixed ``start`` such
    as ``"A1"`` gives every row its own letter code, advanced with
    :func:`increment_letters`, and restarts the number at each row.

    Parameters
    ----------
    result : PatternResult
        Labelled rows.
    start : str | int, optional
        First token, ``"1"`` or ``"A1"`` style.

    Returns
    -------
    dict[Hashable, str]
        New token per assigned hole id. Orphans get none.

    Raises
    ------
    ValueError
        Raised when ``start`` is neither a whole number nor letters
        followed by digits.

    Examples
    --------
    >>> renumber_tokens(result, "A1")[result.hole_ids[result.rows[1].indices[0]]]
    'B1'
    """
    start_text = str(start).strip()
    rows = sorted(result.rows, key=lambda row: row.row_index)
    tokens: dict[Hashable, str] = {}
    alpha = _ALPHA_START.match(start_text)
    if alpha is not None:
        letters, first = alpha.group(1), int(alpha.group(2))
        for row in rows:
            for position, point_index in enumerate(row.indices):
                tokens[result.hole_ids[point_index]] = f"{letters}{first + position}"
            letters = increment_letters(letters)
    elif start_text.isdigit():
        number = int(start_text)
        for row in rows:
            for point_index in row.indices:
                tokens[result.hole_ids[point_index]] = str(number)
                number += 1
    else:
        raise ValueError(f"start must look like '1' or 'A1', got {start_text!r}")
    logger.debug(f"renumbered {len(tokens)} holes from {start_text}")
    return tokens


def delete_point_and_renumber(
    result: PatternResult,
    points_xy: np.ndarray,
    point_index: int,
) -> tuple[PatternResult, np.ndarray]:
    """Remove one hole and close the gap it leaves.

    Later positions in the hole's row move up by one, a row left empty is
    dropped, and every point index above ``point_index`` shifts down by one
    so the result stays aligned with the returned coordinates.

    Returns
    -------
    tuple[PatternResult, numpy.ndarray]
        ``(result, points_xy)`` without the deleted hole.

    Raises
    ------
    ValueError
        Raised for an unknown point index.
    """
    points_array = _validate_points(points_xy)
    if not 0 <= int(point_index) < len(result.hole_ids):
        raise ValueError(f"unknown point index: {point_index}")
    if points_array.shape[0] != len(result.hole_ids):
        raise ValueError("points_xy length must match the result")
    removed = int(point_index)
    remaining_xy = np.delete(points_array, removed, axis=0)

    def _shift(indices: Iterable[int]) -> list[int]:
        return [index - 1 if index > removed else index for index in indices if index != removed]

    owner = result.row_of(removed)
    rows: list[DetectedRow] = []
    for row in result.rows:
        shifted = _shift(row.indices)
        if not shifted:
            continue
        if row is owner:
            rows.append(_refresh(row, shifted, remaining_xy))
        else:
            rows.append(replace(row, indices=tuple(shifted)))
    sub_patterns = tuple(
        replace(sub, indices=tuple(_shift(sub.indices)))
        for sub in result.sub_patterns
        if _shift(sub.indices)
    )
    hole_ids = result.hole_ids[:removed] + result.hole_ids[removed + 1 :]
    logger.debug(
        f"deleted hole {result.hole_ids[removed]!r}"
        + (f" from row {owner.row_index}" if owner is not None else " (orphan)")
    )
    updated = replace(
        _with_rows(result, rows),
        hole_ids=hole_ids,
        sub_patterns=sub_patterns,
        orphan_indices=tuple(_shift(result.orphan_indices)),
    )
    return updated, remaining_xy


def _with_rows(result: PatternResult, rows: list[DetectedRow]) -> PatternResult:
    return replace(result, rows=tuple(sorted(rows, key=lambda row: row.row_index)))


def _refresh(row: DetectedRow, indices: list[int], points_array: np.ndarray) -> DetectedRow:
    """Row with new indices and recomputed bearings."""
    direction, start, end = describe_path(points_array[indices])
    return replace(
        row,
        indices=tuple(int(index) for index in indices),
        direction_deg=direction,
        start_bearing_deg=start,
        end_bearing_deg=end,
    )


def _spatial_order(
    points_array: np.ndarray,
    indices: list[int],
    shape: RowShape = RowShape.STRAIGHT,
) -> list[int]:
    """Sort row points along their canonical principal axis.

    Curved rows fold back over the principal axis, so they are chained by
    nearest neighbour instead, starting from the point lowest on that axis.
    """
    row_xy = points_array[indices]
    eigenvalues, eigenvectors, centroid = principal_axes(row_xy)
    if eigenvalues[0] <= 0:
        return indices
    axis = canonical_direction(eigenvectors[:, 0])
    along = (row_xy - centroid) @ axis
    if shape is RowShape.CURVED and len(indices) > 2:
        order = nearest_neighbor_chain(row_xy, start=int(np.argmin(along)))
    else:
        order = np.argsort(along, kind="stable")
    return [indices[int(position)] for position in order]

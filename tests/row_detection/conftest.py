"""Pytest path bootstrap and shared layouts for row detection tests."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Sequence

import numpy as np
import pytest


def _append_repo_root() -> None:
    """Ensure repository root is present in import path."""
    repo_root = Path(__file__).resolve().parents[2]
    repo_root_text = str(repo_root)
    if repo_root_text in sys.path:
        return
    sys.path.insert(0, repo_root_text)


_append_repo_root()

from holerows.core.config import DetectionConfig  # noqa: E402
from holerows.core.models import HolePoint  # noqa: E402
from holerows.utils.row_detection.pattern_classifier import classify_pattern  # noqa: E402
from holerows.utils.row_detection.point_set import (  # noqa: E402
    analyze_point_set,
    parse_sequence_tokens,
)
from holerows.utils.row_detection.strategies import DetectionContext  # noqa: E402

GRID_X = (0.0, 3.0, 6.0, 9.0, 12.0)
GRID_Y = (0.0, 4.0, 8.0, 12.0)


def build_grid_xy() -> np.ndarray:
    """4 rows of 5 holes; spacing 3 along X, burden 4 along Y.

    Index ``row * 5 + column`` holds ``(GRID_X[column], GRID_Y[row])``.
    """
    return np.asarray([[x, y] for y in GRID_Y for x in GRID_X], dtype=np.float64)


def _holes(tokens: Sequence[int]) -> list[HolePoint]:
    grid = build_grid_xy()
    return [
        HolePoint(hole_id=f"H{index:02d}", x=float(x), y=float(y), sequence_token=str(token))
        for index, ((x, y), token) in enumerate(zip(grid, tokens))
    ]


@pytest.fixture
def grid_points() -> np.ndarray:
    """Untokened 4 x 5 grid."""
    return build_grid_xy()


@pytest.fixture
def snake_holes() -> list[HolePoint]:
    """Grid drilled in boustrophedon order, tokens 1..20."""
    tokens = []
    for row in range(len(GRID_Y)):
        for column in range(len(GRID_X)):
            ordinal = column if row % 2 == 0 else len(GRID_X) - 1 - column
            tokens.append(row * len(GRID_X) + ordinal + 1)
    return _holes(tokens)


@pytest.fixture
def row_major_holes() -> list[HolePoint]:
    """Grid drilled row by row, always from the west end."""
    return _holes(range(1, 21))


@pytest.fixture
def arc_points() -> np.ndarray:
    """20 holes on a 60 degree arc of radius 50."""
    angles = np.radians(np.linspace(60.0, 120.0, 20))
    return np.column_stack((50.0 * np.cos(angles), 50.0 * np.sin(angles)))


@pytest.fixture
def two_line_points() -> np.ndarray:
    """A 10-hole east-west line and a 6-hole north-south line past its end."""
    line_a = [[3.0 * index, 0.0] for index in range(10)]
    line_b = [[60.0, 10.0 + 3.0 * index] for index in range(6)]
    return np.asarray(line_a + line_b, dtype=np.float64)


@pytest.fixture
def context_factory() -> Callable[..., DetectionContext]:
    """Build a :class:`DetectionContext` the way the detector does."""

    def _build(
        points_xy: np.ndarray,
        tokens: Sequence[str | None] | None = None,
        config: DetectionConfig | None = None,
    ) -> DetectionContext:
        config = config or DetectionConfig()
        token_list = list(tokens) if tokens is not None else [None] * len(points_xy)
        sequence = parse_sequence_tokens(token_list, config.sequence_reliability)
        summary = analyze_point_set(points_xy, sequence, config)
        classification = classify_pattern(points_xy, config, summary.spacing, sequence)
        return DetectionContext(points_xy, sequence, summary, classification, config)

    return _build

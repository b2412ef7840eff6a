"""Utility package exports for HoleRows."""

from holerows.utils.row_detection import (
    classify_pattern,
    separate_sub_patterns,
    validate_rows,
)

__all__ = [
    "classify_pattern",
    "separate_sub_patterns",
    "validate_rows",
]

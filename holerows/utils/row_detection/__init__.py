"""Row detection building blocks: analysis, strategies and validation."""

from holerows.utils.row_detection.pattern_classifier import (
    Classification,
    classify_pattern,
    orientation_families,
)
from holerows.utils.row_detection.point_set import (
    SequenceInfo,
    analyze_point_set,
    parse_sequence_tokens,
    validate_point_array,
)
from holerows.utils.row_detection.serpentine import (
    analyze_direction,
    apply_direction,
    detect_sequence_reversals,
)
from holerows.utils.row_detection.strategies import (
    DetectionContext,
    RowStrategy,
    StrategyKind,
    StrategyResult,
)
from holerows.utils.row_detection.sub_patterns import separate_sub_patterns
from holerows.utils.row_detection.validation import (
    ValidationReport,
    point_spacing_and_burden,
    validate_rows,
)

__all__ = [
    "Classification",
    "classify_pattern",
    "orientation_families",
    "SequenceInfo",
    "analyze_point_set",
    "parse_sequence_tokens",
    "validate_point_array",
    "analyze_direction",
    "apply_direction",
    "detect_sequence_reversals",
    "DetectionContext",
    "RowStrategy",
    "StrategyKind",
    "StrategyResult",
    "separate_sub_patterns",
    "ValidationReport",
    "point_spacing_and_burden",
    "validate_rows",
]

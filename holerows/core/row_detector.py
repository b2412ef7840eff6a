"""Row detection orchestrator.

:class:`RowDetector` runs the full pipeline on one point set:

1. validate and analyze the points;
2. classify the pattern (STRAIGHT, CURVED or MULTI_PATTERN);
3. walk the strategy decision tree, recursing into sub-patterns;
4. orient, order and number the rows;
5. decide the position direction;
6. validate the labelled rows and build a :class:`PatternResult`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Hashable, Mapping, Sequence

import numpy as np
from loguru import logger

from holerows.core.config import DetectionConfig
from holerows.core.errors import AlgorithmFailure, InputError
from holerows.core.models import (
    DetectedRow,
    DirectionType,
    HolePoint,
    PatternResult,
    PatternType,
    RowShape,
    SubPattern,
    SubPatternRole,
)
from holerows.utils.row_detection.curve_fit import PcaLoessStrategy, PrincipalCurveStrategy
from holerows.utils.row_detection.density import (
    DensityClusteringStrategy,
    DensitySimplifyStrategy,
    SequenceHDBSCANStrategy,
)
from holerows.utils.row_detection.graph_paths import KNNTraversalStrategy, MSTPathStrategy
from holerows.utils.row_detection.pattern_classifier import classify_pattern
from holerows.utils.row_detection.point_set import (
    NUMERIC_KIND,
    SequenceInfo,
    analyze_point_set,
    has_zero_extent,
    parse_sequence_tokens,
    validate_point_array,
)
from holerows.utils.row_detection.row_geometry import (
    canonical_direction,
    describe_path,
    direction_from_axial,
    estimate_spacing,
    max_line_deviation,
)
from holerows.utils.row_detection.sequence_fit import (
    SequenceLineFitStrategy,
    SplineFitStrategy,
)
from holerows.utils.row_detection.serpentine import (
    align_rows_forward,
    analyze_direction,
    apply_direction,
)
from holerows.utils.row_detection.strategies import (
    DetectionContext,
    RowStrategy,
    SingleRowStrategy,
    StrategyResult,
    attach_to_rows,
)
from holerows.utils.row_detection.sub_patterns import separate_sub_patterns
from holerows.utils.row_detection.validation import validate_rows
from holerows.utils.row_detection.winding import WindingSequenceStrategy

ProgressCallback = Callable[[int, str], None]
PriorLabels = Mapping[Hashable, tuple[int, int]]

STAGE_PERCENT = {
    "analyze": 5,
    "classify": 15,
    "detect": 30,
    "direction": 80,
    "validate": 90,
    "done": 100,
}
PRIOR_METHOD = "prior"


@dataclass
class _RowRecord:
    """Detected row in global indices, before numbering."""

    indices: np.ndarray
    group: int
    method: str


@dataclass
class _SubsetDetection:
    """Rows, orphans and sub-patterns found for one point subset."""

    rows: list[_RowRecord]
    orphans: list[int]
    confidence: float
    pattern_type: PatternType
    sub_patterns: list[SubPattern]
    methods: list[str] = field(default_factory=list)


class RowDetector:
    """Detect ordered rows in a set of hole positions.

    Parameters
    ----------
    config : DetectionConfig | None, optional
        Thresholds; defaults to ``DetectionConfig()``.

    Examples
    --------
    >>> detector = RowDetector(DetectionConfig(snake_angle_deg=80.0))
    >>> result = detector.detect(points)
    >>> result.labels()[points[0].hole_id]
    (1, 1)
    """

    def __init__(self, config: DetectionConfig | None = None) -> None:
        self.config = config or DetectionConfig()

    def detect(
        self,
        points: Any,
        progress: ProgressCallback | None = None,
        prior_labels: PriorLabels | None = None,
    ) -> PatternResult:
        """Run detection on ``points``.

        Parameters
        ----------
        points : Any
            Sequence of :class:`HolePoint`, an ``(N, 2)``/``(N, 3)`` array,
            or a mapping with ``x`` and ``y`` arrays (optional ``id`` and
            ``sequence_token``).
        progress : ProgressCallback | None, optional
            Called as ``progress(percent, stage)`` at each pipeline stage.
        prior_labels : PriorLabels | None, optional
            ``{hole_id: (row_index, position_index)}`` of manually labelled
            points kept as fixed rows.

        Returns
        -------
        PatternResult
            Rows, metrics and warnings of this run.

        Raises
        ------
        InputError
            Raised for degenerate or malformed input.
        """
        config = self.config
        hole_ids, points_xy, tokens = coerce_points(points)
        notify = _progress_notifier(progress)
        points_xy = validate_point_array(points_xy)
        count = points_xy.shape[0]
        notify("analyze")
        fixed_rows, free = _split_prior_labels(hole_ids, prior_labels)
        first_row = max(fixed_rows, default=0) + 1
        notify("classify")
        if free.size:
            detection = self._detect_subset(points_xy, free, tokens, depth=0, notify=notify)
        else:
            detection = _SubsetDetection([], [], 1.0, PatternType.STRAIGHT, [])
        notify("detect")
        spacing = estimate_spacing(points_xy[free] if free.size >= 2 else points_xy)
        curved_deviation = config.row_curvature_tolerance * spacing
        notify("direction")
        rows_in_order = [record.indices.tolist() for record in detection.rows]
        groups = [record.group for record in detection.rows]
        rows_in_order, direction, direction_confidence = self._resolve_direction(
            points_xy, rows_in_order, groups
        )
        detected_rows = [
            _build_row(
                points_xy,
                first_row + position,
                indices,
                record.group,
                record.method,
                curved_deviation,
            )
            for position, (indices, record) in enumerate(zip(rows_in_order, detection.rows))
        ]
        for row_index, indices in sorted(fixed_rows.items()):
            detected_rows.append(
                _build_row(points_xy, row_index, indices, -1, PRIOR_METHOD, curved_deviation)
            )
        detected_rows.sort(key=lambda row: row.row_index)
        notify("validate")
        report = validate_rows(
            points_xy,
            [row.indices for row in detected_rows],
            detection.orphans,
            count,
            detection.confidence,
            config,
            row_groups=[row.sub_pattern for row in detected_rows],
            row_labels=[row.row_index for row in detected_rows],
        )
        result = PatternResult(
            hole_ids=hole_ids,
            rows=tuple(detected_rows),
            pattern_type=detection.pattern_type,
            sub_patterns=tuple(detection.sub_patterns),
            direction=direction,
            direction_confidence=direction_confidence,
            confidence=report.confidence,
            metrics=report.metrics,
            warnings=report.warnings,
            orphan_indices=tuple(sorted(detection.orphans)),
            methods=tuple(detection.methods),
        )
        logger.info(
            f"Detected {len(result.rows)} rows ({result.pattern_type.value}) for "
            f"{count} points, direction {direction.value}, "
            f"confidence {result.confidence:.2f}"
        )
        notify("done")
        return result

    def _detect_subset(
        self,
        points_xy: np.ndarray,
        subset: np.ndarray,
        tokens: Sequence[str | None],
        depth: int,
        notify: Callable[[str], None] | None = None,
    ) -> _SubsetDetection:
        """Classify one subset and walk the strategy decision tree."""
        config = self.config
        local_xy = points_xy[subset]
        sequence = parse_sequence_tokens(
            [tokens[index] for index in subset], config.sequence_reliability
        )
        if subset.size < 2 or has_zero_extent(local_xy):
            logger.debug(f"trivial subset of {subset.size} points kept as one row")
            return _trivial_detection(subset, depth, config.fallback_confidence)
        summary = analyze_point_set(local_xy, sequence, config)
        classification = classify_pattern(local_xy, config, summary.spacing, sequence)
        context = DetectionContext(local_xy, sequence, summary, classification, config)
        if notify is not None:
            notify("detect")
        logger.debug(
            f"depth {depth}: {subset.size} points, {classification.pattern_type.value}, "
            f"reliable tokens={sequence.reliable}"
        )
        result = self._token_strategies(context)
        if result is not None:
            sub_patterns = self._reporting_sub_patterns(context, subset, depth)
            return self._finish(context, subset, result, sub_patterns)
        if classification.pattern_type is PatternType.MULTI_PATTERN:
            if depth < config.max_recursion_depth:
                combined = self._recurse(points_xy, subset, tokens, context, depth)
                if combined is not None:
                    return combined
            else:
                logger.debug(f"depth cap {depth} reached; using the fallback chain")
                result = self._fallback_chain(context)
                return self._finish(context, subset, result, self._single_group(context, subset, depth))
        result = self._spatial_strategies(context)
        if result is None:
            result = self._fallback_chain(context)
        return self._finish(context, subset, result, self._single_group(context, subset, depth))

    def _token_strategies(self, context: DetectionContext) -> StrategyResult | None:
        """Decision steps driven by sequence tokens."""
        sequence = context.sequence
        if sequence.kind == NUMERIC_KIND and sequence.complete and sequence.reliable:
            result = self._attempt(WindingSequenceStrategy(), context)
            if self._accepted(result, self.config.min_confidence):
                return result
        if sequence.reliable:
            if context.classification.pattern_type is PatternType.CURVED:
                strategy: RowStrategy = SplineFitStrategy()
            else:
                strategy = SequenceLineFitStrategy()
            result = self._attempt(strategy, context)
            if self._accepted(result, self.config.min_confidence):
                return result
            result = self._attempt(SequenceHDBSCANStrategy(), context)
            if self._accepted(result, self.config.min_confidence):
                return result
        return None

    def _spatial_strategies(self, context: DetectionContext) -> StrategyResult | None:
        """Decision steps driven by geometry alone."""
        min_confidence = self.config.min_confidence
        classification = context.classification
        if classification.pattern_type is PatternType.CURVED:
            candidates = [
                result
                for result in (
                    self._attempt(PrincipalCurveStrategy(), context),
                    self._attempt(MSTPathStrategy(), context),
                )
                if self._accepted(result, min_confidence)
            ]
            if candidates:
                return min(
                    candidates,
                    key=lambda result: context.residual(result.rows),
                )
        if classification.serpentine_candidate:
            result = self._attempt(KNNTraversalStrategy(), context)
            if self._accepted(result, min_confidence):
                return result
        result = self._attempt(PcaLoessStrategy(), context)
        if self._accepted(result, min_confidence):
            return result
        return None

    def _fallback_chain(self, context: DetectionContext) -> StrategyResult:
        """Density clustering, then density simplification, then one row."""
        result = self._attempt(DensityClusteringStrategy(), context)
        if self._accepted(result, self.config.min_confidence):
            return result
        result = self._attempt(DensitySimplifyStrategy(), context)
        if self._accepted(result, self.config.fallback_confidence):
            return result
        return SingleRowStrategy().detect(context)

    def _recurse(
        self,
        points_xy: np.ndarray,
        subset: np.ndarray,
        tokens: Sequence[str | None],
        context: DetectionContext,
        depth: int,
    ) -> _SubsetDetection | None:
        """Detect every sub-pattern separately and merge the outcomes."""
        local_subs = separate_sub_patterns(
            context.points_xy, context.classification, self.config, depth + 1
        )
        if len(local_subs) < 2:
            logger.debug("multi-pattern subset did not separate; continuing spatially")
            return None
        rows: list[_RowRecord] = []
        orphans: list[int] = []
        sub_patterns: list[SubPattern] = []
        methods: list[str] = []
        weighted_confidence = 0.0
        for local_sub in local_subs:
            child_subset = subset[np.asarray(local_sub.indices, dtype=np.int64)]
            logger.debug(
                f"recursing into {local_sub.role.value} sub-pattern of "
                f"{child_subset.size} points at depth {depth + 1}"
            )
            child = self._detect_subset(points_xy, child_subset, tokens, depth + 1)
            offset = len(sub_patterns)
            for position, child_sub in enumerate(child.sub_patterns):
                if position == 0:
                    child_sub = replace(
                        child_sub,
                        role=local_sub.role,
                        orientation_deg=local_sub.orientation_deg,
                    )
                sub_patterns.append(child_sub)
            for record in child.rows:
                rows.append(_RowRecord(record.indices, record.group + offset, record.method))
            orphans.extend(child.orphans)
            weighted_confidence += child.confidence * child_subset.size
            methods.extend(method for method in child.methods if method not in methods)
        return _SubsetDetection(
            rows=rows,
            orphans=orphans,
            confidence=weighted_confidence / subset.size,
            pattern_type=PatternType.MULTI_PATTERN,
            sub_patterns=sub_patterns,
            methods=methods,
        )

    def _reporting_sub_patterns(
        self,
        context: DetectionContext,
        subset: np.ndarray,
        depth: int,
    ) -> list[SubPattern]:
        """Sub-patterns of a token-handled subset, kept for the report."""
        if context.classification.pattern_type is not PatternType.MULTI_PATTERN:
            return self._single_group(context, subset, depth)
        local_subs = separate_sub_patterns(
            context.points_xy, context.classification, self.config, depth + 1
        )
        return [_to_global(sub, subset) for sub in local_subs]

    def _single_group(
        self,
        context: DetectionContext,
        subset: np.ndarray,
        depth: int,
    ) -> list[SubPattern]:
        return [
            SubPattern(
                indices=tuple(int(index) for index in subset),
                role=SubPatternRole.MAIN,
                orientation_deg=context.classification.row_axis_deg,
                pattern_type=context.classification.pattern_type,
                depth=depth,
            )
        ]

    def _finish(
        self,
        context: DetectionContext,
        subset: np.ndarray,
        result: StrategyResult,
        sub_patterns: list[SubPattern],
    ) -> _SubsetDetection:
        """Attach leftovers, orient and order rows, and map to global indices."""
        config = self.config
        rows, orphans = attach_to_rows(
            context.points_xy,
            result.rows,
            result.orphans,
            config.attach_factor * context.spacing,
        )
        rows = [row for row in rows if row.size > 0]
        axis = direction_from_axial(context.classification.row_axis_deg)
        if not result.token_ordered:
            rows = [_orient_row(context, row, axis) for row in rows]
        rows = _order_rows(context, rows, axis)
        membership = _membership(sub_patterns)
        records = [
            _RowRecord(subset[row], _row_group(subset[row], membership), result.kind.value)
            for row in rows
        ]
        logger.debug(
            f"accepted {result.kind.value}: {len(records)} rows, "
            f"{orphans.size} orphans, confidence {result.confidence:.2f}"
        )
        return _SubsetDetection(
            rows=records,
            orphans=[int(subset[index]) for index in orphans],
            confidence=result.confidence,
            pattern_type=context.classification.pattern_type,
            sub_patterns=sub_patterns,
            methods=[result.kind.value],
        )

    def _resolve_direction(
        self,
        points_xy: np.ndarray,
        rows: list[list[int]],
        groups: list[int],
    ) -> tuple[list[list[int]], DirectionType, float]:
        """Apply a forced direction or infer it from row ends."""
        forced = self.config.force_direction
        if forced is None:
            analysis = analyze_direction(points_xy, rows, groups)
            return rows, analysis.direction, analysis.confidence
        adjusted: list[list[int]] = [[] for _ in rows]
        for group in sorted(set(groups)):
            positions = [pos for pos, value in enumerate(groups) if value == group]
            group_rows = align_rows_forward(points_xy, [rows[pos] for pos in positions])
            group_rows = apply_direction(group_rows, forced)
            for pos, row in zip(positions, group_rows):
                adjusted[pos] = row
        logger.debug(f"forced position direction: {forced.value}")
        return adjusted, forced, 1.0

    def _attempt(
        self,
        strategy: RowStrategy,
        context: DetectionContext,
    ) -> StrategyResult | None:
        try:
            return strategy.detect(context)
        except (AlgorithmFailure, np.linalg.LinAlgError, ValueError) as exc:
            logger.debug(f"{strategy.name} rejected: {exc}")
            return None

    def _accepted(self, result: StrategyResult | None, threshold: float) -> bool:
        if result is None:
            return False
        if result.confidence < threshold:
            logger.debug(
                f"{result.kind.value} below threshold "
                f"({result.confidence:.2f} < {threshold:.2f})"
            )
            return False
        return True


def detect_rows(
    points: Any,
    config: DetectionConfig | None = None,
    progress: ProgressCallback | None = None,
    prior_labels: PriorLabels | None = None,
) -> PatternResult:
    """Shortcut for ``RowDetector(config).detect(points, ...)``."""
    return RowDetector(config).detect(points, progress=progress, prior_labels=prior_labels)


def coerce_points(points: Any) -> tuple[tuple[Hashable, ...], np.ndarray, list[str | None]]:
    """Normalize supported point inputs.

    Returns
    -------
    tuple[tuple[Hashable, ...], numpy.ndarray, list[str | None]]
        ``(hole_ids, points_xy, tokens)``.

    Raises
    ------
    InputError
        Raised for unsupported shapes or duplicate hole ids.
    """
    if isinstance(points, Mapping):
        if "x" not in points or "y" not in points:
            raise InputError("point mapping must provide 'x' and 'y'")
        x_values = np.asarray(points["x"], dtype=np.float64).reshape(-1)
        y_values = np.asarray(points["y"], dtype=np.float64).reshape(-1)
        if x_values.size != y_values.size:
            raise InputError("'x' and 'y' must have the same length")
        count = x_values.size
        hole_ids = tuple(points.get("id", range(count)))
        raw_tokens = points.get("sequence_token")
        tokens = [None] * count if raw_tokens is None else [_token(value) for value in raw_tokens]
        points_xy = np.column_stack((x_values, y_values))
    elif len(points) > 0 and all(isinstance(point, HolePoint) for point in points):
        hole_ids = tuple(point.hole_id for point in points)
        points_xy = np.asarray([[point.x, point.y] for point in points], dtype=np.float64)
        tokens = [_token(point.sequence_token) for point in points]
    else:
        try:
            array = np.asarray(points, dtype=np.float64)
        except (TypeError, ValueError) as exc:
            raise InputError("unsupported point input") from exc
        if array.ndim != 2 or array.shape[1] not in (2, 3):
            raise InputError("point array must have shape (N, 2) or (N, 3)")
        points_xy = array[:, :2]
        hole_ids = tuple(range(array.shape[0]))
        tokens = [None] * array.shape[0]
    if len(hole_ids) != points_xy.shape[0] or len(tokens) != points_xy.shape[0]:
        raise InputError("ids and tokens must match the number of points")
    if len(set(hole_ids)) != len(hole_ids):
        raise InputError("hole ids must be unique")
    return hole_ids, points_xy, tokens


def _token(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and np.isnan(value):
        return None
    text = str(value).strip()
    return text or None


def _progress_notifier(progress: ProgressCallback | None) -> Callable[[str], None]:
    reported: set[str] = set()

    def _notify(stage: str) -> None:
        if progress is None or stage in reported:
            return
        reported.add(stage)
        progress(STAGE_PERCENT[stage], stage)

    return _notify


def _split_prior_labels(
    hole_ids: tuple[Hashable, ...],
    prior_labels: PriorLabels | None,
) -> tuple[dict[int, list[int]], np.ndarray]:
    """Fixed rows from prior labels and the indices left to detect."""
    count = len(hole_ids)
    if not prior_labels:
        return {}, np.arange(count, dtype=np.int64)
    position_of = {hole_id: index for index, hole_id in enumerate(hole_ids)}
    slots: dict[int, dict[int, int]] = {}
    for hole_id, label in prior_labels.items():
        if hole_id not in position_of:
            raise InputError(f"prior label for unknown hole id: {hole_id!r}")
        row_index, position_index = int(label[0]), int(label[1])
        if row_index < 1 or position_index < 1:
            raise InputError("prior row and position indices must be >= 1")
        row_slots = slots.setdefault(row_index, {})
        if position_index in row_slots:
            raise InputError(f"duplicate prior label ({row_index}, {position_index})")
        row_slots[position_index] = position_of[hole_id]
    fixed = {
        row_index: [row_slots[position] for position in sorted(row_slots)]
        for row_index, row_slots in slots.items()
    }
    taken = {index for indices in fixed.values() for index in indices}
    free = np.asarray([index for index in range(count) if index not in taken], dtype=np.int64)
    return fixed, free


def _trivial_detection(subset: np.ndarray, depth: int, confidence: float) -> _SubsetDetection:
    return _SubsetDetection(
        rows=[_RowRecord(subset.copy(), 0, SingleRowStrategy.kind.value)],
        orphans=[],
        confidence=confidence,
        pattern_type=PatternType.STRAIGHT,
        sub_patterns=[
            SubPattern(indices=tuple(int(index) for index in subset), depth=depth)
        ],
        methods=[SingleRowStrategy.kind.value],
    )


def _to_global(sub: SubPattern, subset: np.ndarray) -> SubPattern:
    return replace(sub, indices=tuple(int(subset[index]) for index in sub.indices))


def _membership(sub_patterns: list[SubPattern]) -> dict[int, int]:
    membership: dict[int, int] = {}
    for group, sub in enumerate(sub_patterns):
        for index in sub.indices:
            membership[int(index)] = group
    return membership


def _row_group(row: np.ndarray, membership: dict[int, int]) -> int:
    """Sub-pattern holding most of the row's points, lowest id on ties."""
    votes = [membership.get(int(index), 0) for index in row]
    values, counts = np.unique(votes, return_counts=True)
    return int(values[int(np.argmax(counts))])


def _orient_row(context: DetectionContext, row: np.ndarray, axis: np.ndarray) -> np.ndarray:
    """Orient a spatially derived row by tokens, else along the row axis."""
    if row.size < 2:
        return row
    sequence: SequenceInfo = context.sequence
    if sequence.parsed_mask[row].all():
        rank = sequence.rank()
        return row[::-1] if rank[row[0]] > rank[row[-1]] else row
    travel = context.points_xy[row[-1]] - context.points_xy[row[0]]
    along = float(travel @ axis)
    if abs(along) <= 1e-9 * max(1.0, float(np.linalg.norm(travel))):
        reference = canonical_direction(travel) if float(np.linalg.norm(travel)) > 0 else axis
        along = float(travel @ reference)
    return row[::-1] if along < 0 else row


def _order_rows(
    context: DetectionContext,
    rows: list[np.ndarray],
    axis: np.ndarray,
) -> list[np.ndarray]:
    """Order rows by token rank, else by mean perpendicular offset."""
    sequence = context.sequence
    if sequence.reliable and all(sequence.parsed_mask[row].any() for row in rows):
        rank = sequence.rank()
        return sorted(rows, key=lambda row: int(rank[row][rank[row] >= 0].min()))
    normal = canonical_direction(np.asarray([-axis[1], axis[0]]))
    along_axis = context.points_xy @ axis
    offsets = context.points_xy @ normal
    return sorted(
        rows,
        key=lambda row: (float(offsets[row].mean()), float(along_axis[row].mean())),
    )


def _build_row(
    points_xy: np.ndarray,
    row_index: int,
    indices: Sequence[int],
    group: int,
    method: str,
    curved_deviation: float,
) -> DetectedRow:
    index_tuple = tuple(int(index) for index in indices)
    row_xy = points_xy[list(index_tuple)]
    direction, start, end = describe_path(row_xy)
    shape = (
        RowShape.CURVED
        if max_line_deviation(row_xy) > curved_deviation
        else RowShape.STRAIGHT
    )
    return DetectedRow(
        row_index=row_index,
        indices=index_tuple,
        shape=shape,
        direction_deg=direction,
        start_bearing_deg=start,
        end_bearing_deg=end,
        sub_pattern=group,
        method=method,
    )

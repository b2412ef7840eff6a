"""Error types raised by the row-detection engine."""

from __future__ import annotations


class RowDetectionError(Exception):
    """Base class for every row-detection error."""


class InputError(RowDetectionError, ValueError):
    """Raised when the point set cannot be analysed at all.

    Fewer than two points, non-finite coordinates or a zero spatial extent
    all trigger this error before any strategy runs.
    """


class ConfigurationError(RowDetectionError, ValueError):
    """Raised when a threshold or parameter value is invalid."""


class AlgorithmFailure(RowDetectionError, RuntimeError):
    """Raised by a strategy that cannot produce a valid row set.

    The orchestrator catches it and falls through to the next strategy.
    """


class UnresolvedPointError(RowDetectionError, RuntimeError):
    """Raised when a point ends up in no row or in more than one row."""

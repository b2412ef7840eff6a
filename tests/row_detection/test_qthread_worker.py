"""Tests for the row detection background worker."""

from __future__ import annotations

import numpy as np

from holerows.core.models import PatternResult
from holerows.utils.row_detection.qthread import (
    RowDetectionInput,
    RowDetectionWorker,
    format_worker_exception,
)


def test_format_worker_exception_includes_traceback_lines() -> None:
    """Worker exception formatter should include exception type and traceback."""
    try:
        raise RuntimeError("rows boom")
    except RuntimeError as exc:
        message = format_worker_exception(exc)
    assert "RuntimeError" in message
    assert "rows boom" in message
    assert "Traceback" in message


def test_worker_emits_progress_and_finished(grid_points: np.ndarray) -> None:
    """Worker should report progress up to 100 and emit the result."""
    worker = RowDetectionWorker(RowDetectionInput(points=grid_points))
    progress: list[int] = []
    stages: list[str] = []
    finished: list[object] = []
    failed: list[str] = []
    worker.sigProgress.connect(lambda percent, stage: (progress.append(percent), stages.append(stage)))
    worker.sigFinished.connect(finished.append)
    worker.sigFailed.connect(failed.append)

    worker.run()

    assert failed == []
    assert progress[-1] == 100
    assert stages[0] == "analyze"
    assert len(finished) == 1
    result = finished[0]
    assert isinstance(result, PatternResult)
    assert len(result.rows) == 4


def test_worker_emits_failed_for_bad_input() -> None:
    """Detection errors should surface through sigFailed."""
    worker = RowDetectionWorker(RowDetectionInput(points=np.asarray([[0.0, 0.0]])))
    finished: list[object] = []
    failed: list[str] = []
    worker.sigFinished.connect(finished.append)
    worker.sigFailed.connect(failed.append)

    worker.run()

    assert finished == []
    assert len(failed) == 1
    assert "InputError" in failed[0]


def test_worker_cancelled_before_run(grid_points: np.ndarray) -> None:
    """A cancel request before start skips detection."""
    calls: list[object] = []

    class _RecordingDetector:
        def __init__(self, config) -> None:
            calls.append(config)

        def detect(self, points, progress=None, prior_labels=None):
            raise AssertionError("detect should not run")

    worker = RowDetectionWorker(
        RowDetectionInput(points=grid_points), detector_factory=_RecordingDetector
    )
    cancelled: list[bool] = []
    worker.sigCancelled.connect(lambda: cancelled.append(True))
    worker.request_cancel()

    worker.run()

    assert cancelled == [True]
    assert calls == []


def test_worker_passes_prior_labels_to_detector(grid_points: np.ndarray) -> None:
    """Payload fields are forwarded to the detector."""
    seen: dict[str, object] = {}

    class _RecordingDetector:
        def __init__(self, config) -> None:
            seen["config"] = config

        def detect(self, points, progress=None, prior_labels=None):
            seen["prior_labels"] = prior_labels
            progress(100, "done")
            return "result"

    payload = RowDetectionInput(points=grid_points, prior_labels={0: (1, 1)})
    worker = RowDetectionWorker(payload, detector_factory=_RecordingDetector)
    finished: list[object] = []
    worker.sigFinished.connect(finished.append)

    worker.run()

    assert seen == {"config": None, "prior_labels": {0: (1, 1)}}
    assert finished == ["result"]

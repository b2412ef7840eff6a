"""QThread worker running row detection off the UI thread."""

from __future__ import annotations

from dataclasses import dataclass
import traceback
from typing import Any, Hashable, Mapping

from PySide6.QtCore import QObject, Signal, Slot
from loguru import logger

from holerows.core.config import DetectionConfig
from holerows.core.row_detector import RowDetector


@dataclass
class RowDetectionInput:
    """Input payload for the row detection worker."""

    points: Any
    config: DetectionConfig | None = None
    prior_labels: Mapping[Hashable, tuple[int, int]] | None = None


class RowDetectionWorker(QObject):
    """Background worker running :class:`RowDetector`.

    Cancellation is best-effort: it is checked before and after the run.
    """

    sigProgress = Signal(int, str)
    sigFinished = Signal(object)
    sigFailed = Signal(str)
    sigCancelled = Signal()

    def __init__(
        self,
        payload: RowDetectionInput,
        detector_factory: Any | None = None,
    ) -> None:
        super().__init__()
        self.payload = payload
        self._detector_factory = detector_factory or RowDetector
        self._cancelled = False

    def request_cancel(self) -> None:
        """Request best-effort cancellation."""
        self._cancelled = True

    @Slot()
    def run(self) -> None:
        """Execute detection and emit progress/results."""
        if self._cancelled:
            self.sigCancelled.emit()
            return
        try:
            detector = self._detector_factory(self.payload.config)
            result = detector.detect(
                self.payload.points,
                progress=self._emit_progress,
                prior_labels=self.payload.prior_labels,
            )
        except Exception as exc:
            message = format_worker_exception(exc)
            logger.error(message)
            self.sigFailed.emit(message)
            return
        if self._cancelled:
            self.sigCancelled.emit()
            return
        self.sigFinished.emit(result)

    def _emit_progress(self, percent: int, stage: str) -> None:
        self.sigProgress.emit(int(percent), str(stage))


def format_worker_exception(exc: Exception) -> str:
    """Format an exception with traceback for UI/log display."""
    trace_text = "".join(
        traceback.format_exception(type(exc), exc, exc.__traceback__)
    ).strip()
    return f"{exc}\n{trace_text}"

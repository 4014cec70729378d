"""
Progress tracking for a referential integrity run.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from loguru import logger


class ScanStage(str, Enum):
    """Stages of an integrity run, in execution order."""

    METADATA_FETCH = "metadata_fetch"
    CANDIDATE_INFERENCE = "candidate_inference"
    INTEGRITY_SCAN = "integrity_scan"
    COMPLETE = "complete"


@dataclass
class ProgressUpdate:
    """Represents a progress update during a run."""

    stage: ScanStage
    current_step: int
    total_steps: int
    candidate: Optional[str] = None
    message: str = ""
    percentage: float = 0.0
    details: Optional[Dict[str, Any]] = None


class ScanProgressTracker:
    """
    Tracks and reports progress across the stages of an integrity run.

    Scanning dominates the wall-clock time, so it carries most of the weight.
    Updates may arrive from worker threads; they are serialised before the
    callback sees them.
    """

    def __init__(
        self, progress_callback: Optional[Callable[[ProgressUpdate], None]] = None
    ):
        self.progress_callback = progress_callback
        self.current_stage = ScanStage.METADATA_FETCH
        self.stage_weights = {
            ScanStage.METADATA_FETCH: 0.10,
            ScanStage.CANDIDATE_INFERENCE: 0.05,
            ScanStage.INTEGRITY_SCAN: 0.85,
        }
        self.completed_stage_progress = 0.0
        self.last_update: Optional[ProgressUpdate] = None
        self._lock = threading.Lock()

    def update_progress(
        self,
        stage: ScanStage,
        current: int,
        total: int,
        candidate: Optional[str] = None,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            if self.current_stage != stage:
                self._stage_completed(self.current_stage)
                self.current_stage = stage

            update = ProgressUpdate(
                stage=stage,
                current_step=current,
                total_steps=total,
                candidate=candidate,
                message=message,
                percentage=self._calculate_overall_percentage(stage, current, total),
                details=details or {},
            )
            self.last_update = update

            if self.progress_callback:
                try:
                    self.progress_callback(update)
                except Exception as exc:
                    logger.debug("Progress callback failed: {}", exc)

    def _stage_completed(self, stage: ScanStage) -> None:
        if stage in self.stage_weights:
            self.completed_stage_progress += self.stage_weights[stage]

    def _calculate_overall_percentage(
        self, stage: ScanStage, current: int, total: int
    ) -> float:
        """
        Overall progress percentage (0.0 to 100.0): completed stages plus the
        finished fraction of the current one.
        """
        if stage == ScanStage.COMPLETE:
            return 100.0
        stage_weight = self.stage_weights.get(stage, 0.0)
        if total > 0:
            stage_progress = min(current / total, 1.0) * stage_weight
        else:
            stage_progress = 0.0
        total_progress = self.completed_stage_progress + stage_progress
        return min(max(total_progress * 100.0, 0.0), 100.0)

    def mark_complete(self) -> None:
        self.update_progress(
            stage=ScanStage.COMPLETE,
            current=1,
            total=1,
            message="Integrity check complete",
        )


def create_log_progress_callback() -> Callable[[ProgressUpdate], None]:
    """Callback that writes each progress update to the log."""

    stage_labels = {
        ScanStage.METADATA_FETCH: "Reading catalog",
        ScanStage.CANDIDATE_INFERENCE: "Inferring relationships",
        ScanStage.INTEGRITY_SCAN: "Scanning",
        ScanStage.COMPLETE: "Complete",
    }

    def callback(update: ProgressUpdate) -> None:
        stage_label = stage_labels.get(update.stage, update.stage.value)
        if update.candidate:
            base_message = f"{stage_label} - {update.candidate}"
        else:
            base_message = stage_label
        if update.total_steps > 1:
            base_message += f" ({update.current_step}/{update.total_steps})"
        if update.message:
            base_message = f"{base_message}: {update.message}"
        logger.info("[{:.1f}%] {}", update.percentage, base_message)

    return callback

"""Segment progress tracking."""

from __future__ import annotations

import logging
from typing import Any

from app.pipeline.models import ProgressRecord, ProgressStage
from app.storage.pipeline_repo import PipelineRepository

logger = logging.getLogger(__name__)

# Share of one segment's progress bar owned by each stage: (start, end).
STAGE_SPANS: dict[str, tuple[float, float]] = {
  "planning": (0.0, 0.3),
  "generation": (0.3, 0.8),
  "storage": (0.8, 1.0),
  "completed": (1.0, 1.0),
  "failed": (0.0, 0.0),
}


def overall_progress(*, segment_index: int, total_segments: int, stage: ProgressStage, stage_progress: float) -> float:
  """Map a stage-local fraction onto the whole course, in [0, 1]."""
  total = max(total_segments, 1)
  start, end = STAGE_SPANS[stage]
  fraction = start + (end - start) * min(max(stage_progress, 0.0), 1.0)
  return round(min((segment_index + fraction) / total, 1.0), 4)


class SegmentProgressTracker:
  """Write progress rows for one (course, session) while a segment runs."""

  def __init__(self, *, repo: PipelineRepository, course_id: str, session_id: str | None, segment_index: int, total_segments: int) -> None:
    self._repo = repo
    self._course_id = course_id
    self._session_id = session_id
    self._segment_index = segment_index
    self._total_segments = max(total_segments, 1)

  @property
  def enabled(self) -> bool:
    return bool(self._session_id)

  async def update(self, stage: ProgressStage, *, step: str, stage_progress: float = 0.0, metadata: dict[str, Any] | None = None) -> None:
    """Upsert the progress row; failures are logged and never interrupt the pipeline."""
    if not self.enabled:
      return
    if stage == "failed":
      overall = overall_progress(segment_index=self._segment_index, total_segments=self._total_segments, stage="planning", stage_progress=0.0)
    else:
      overall = overall_progress(segment_index=self._segment_index, total_segments=self._total_segments, stage=stage, stage_progress=stage_progress)
    payload = {"segment_index": self._segment_index, "total_segments": self._total_segments, **(metadata or {})}
    record = ProgressRecord(
      course_id=self._course_id,
      session_id=self._session_id,
      stage=stage,
      current_step=step,
      stage_progress=round(min(max(stage_progress, 0.0), 1.0), 4),
      overall_progress=overall,
      metadata=payload,
    )
    try:
      await self._repo.upsert_progress(record)
    except Exception:  # noqa: BLE001
      logger.warning("Progress update failed for course %s session %s.", self._course_id, self._session_id, exc_info=True)


async def mark_course_completed(repo: PipelineRepository, course_id: str, *, total_segments: int) -> None:
  """Pin the course's most recent progress session at 100%."""
  latest = await repo.latest_progress(course_id)
  if latest is None:
    return
  await repo.upsert_progress(
    ProgressRecord(
      course_id=course_id,
      session_id=latest.session_id,
      stage="completed",
      current_step="Course published",
      stage_progress=1.0,
      overall_progress=1.0,
      metadata={**(latest.metadata or {}), "total_segments": total_segments},
    )
  )

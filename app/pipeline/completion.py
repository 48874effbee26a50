"""Idempotent publish check for a multi-segment course."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.pipeline.models import OPEN_PLAN_STATUSES
from app.pipeline.progress import mark_course_completed
from app.storage.pipeline_repo import PipelineRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionStatus:
  """Outcome of a completion check; `reasons` explains why a course is not done."""

  done: bool
  reasons: list[str] = field(default_factory=list)
  published_now: bool = False
  question_count: int = 0


class CompletionGate:
  """Publish a course once, and only once every segment has landed."""

  def __init__(self, repo: PipelineRepository) -> None:
    self._repo = repo

  async def check(self, course_id: str) -> CompletionStatus:
    """
    Run the publish checks. A failing check comes back in `reasons`; datastore
    errors propagate so callers can tell an outage from "not yet".
    """
    course = await self._repo.get_course(course_id)
    if course is None:
      return CompletionStatus(done=False, reasons=["course not found"])
    if course.published:
      return CompletionStatus(done=True, question_count=await self._repo.count_questions(course_id))

    reasons: list[str] = []
    segments = await self._repo.list_segments(course_id)
    if not segments:
      reasons.append("course has no segments")
    unfinished = [segment for segment in segments if segment.status != "completed"]
    if unfinished:
      listed = ", ".join(f"{segment.segment_index}:{segment.status}" for segment in unfinished)
      reasons.append(f"{len(unfinished)} of {len(segments)} segments not completed ({listed})")

    plan_counts = await self._repo.count_plans_by_status(course_id)
    open_plans = sum(plan_counts.get(status, 0) for status in OPEN_PLAN_STATUSES)
    if open_plans:
      reasons.append(f"{open_plans} question plans still in progress")

    question_count = await self._repo.count_questions(course_id)
    if question_count <= 0:
      reasons.append("no questions persisted")

    if reasons:
      logger.info("Course %s not ready to publish: %s", course_id, "; ".join(reasons))
      return CompletionStatus(done=False, reasons=reasons, question_count=question_count)

    published_now = await self._repo.publish_course(course_id) > 0
    if published_now:
      logger.info("Published course %s with %d questions.", course_id, question_count)
      try:
        await mark_course_completed(self._repo, course_id, total_segments=len(segments))
      except Exception:  # noqa: BLE001
        logger.warning("Could not mark progress completed for course %s.", course_id, exc_info=True)
    return CompletionStatus(done=True, published_now=published_now, question_count=question_count)

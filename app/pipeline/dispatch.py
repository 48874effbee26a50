"""Segment ordering, hand-off to the next worker, and the recovery sweep."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

from app.pipeline.claims import ClaimManager
from app.pipeline.completion import CompletionGate, CompletionStatus
from app.pipeline.context import load_context
from app.pipeline.contracts import MergedContext, TimeRange
from app.pipeline.errors import DependencyNotReadyError, SegmentIntegrityError
from app.pipeline.models import CourseRecord, NextActionRecord, SegmentRecord
from app.services.tasks.interface import TaskEnqueuer
from app.storage.pipeline_repo import PipelineRepository
from app.utils.ids import next_action_id

logger = logging.getLogger(__name__)

HandOffKind = Literal["dispatched", "queued", "completion", "skipped"]
OrchestrationState = Literal["completed", "in_progress", "processing", "waiting", "not_found"]


class SegmentTask(BaseModel):
  """Wire payload that starts processing of one segment."""

  course_id: str
  segment_id: str
  segment_index: int = Field(ge=0)
  time_range: TimeRange
  total_segments: int = Field(default=1, ge=1)
  inherited_context: MergedContext | None = None
  session_id: str | None = None
  action_id: str | None = None


@dataclass(frozen=True)
class HandOffResult:
  kind: HandOffKind
  next_segment_id: str | None = None
  action_id: str | None = None
  completion: CompletionStatus | None = None
  error: str | None = None


@dataclass
class OrchestrationStatus:
  status: OrchestrationState
  segments_total: int = 0
  segments_completed: int = 0
  status_breakdown: dict[str, int] = field(default_factory=dict)
  expired_segments: list[int] = field(default_factory=list)
  redispatched_actions: list[str] = field(default_factory=list)
  triggered_segment: int | None = None
  completion: CompletionStatus | None = None


def build_task(segment: SegmentRecord, *, total_segments: int, inherited_context: MergedContext | None, session_id: str | None, action_id: str | None) -> SegmentTask:
  return SegmentTask(
    course_id=segment.course_id,
    segment_id=segment.segment_id,
    segment_index=segment.segment_index,
    time_range=TimeRange(start=segment.start_time, end=segment.end_time),
    total_segments=max(total_segments, 1),
    inherited_context=inherited_context,
    session_id=session_id,
    action_id=action_id,
  )


class SegmentDispatcher:
  """Decide what runs next and deliver it through the configured enqueuer."""

  def __init__(self, *, repo: PipelineRepository, enqueuer: TaskEnqueuer, claims: ClaimManager, completion_gate: CompletionGate | None = None) -> None:
    self._repo = repo
    self._enqueuer = enqueuer
    self._claims = claims
    self._gate = completion_gate or CompletionGate(repo)

  @property
  def completion_gate(self) -> CompletionGate:
    return self._gate

  async def ensure_dependency_ready(self, segment: SegmentRecord, worker_id: str) -> SegmentRecord | None:
    """
    Return the completed predecessor, or None for the first segment.

    When the predecessor has not completed, the claim on `segment` is released
    back to pending before `DependencyNotReadyError` is raised.
    """
    if segment.segment_index == 0:
      return None
    predecessor = await self._repo.get_segment_by_index(segment.course_id, segment.segment_index - 1)
    if predecessor is None:
      raise SegmentIntegrityError(f"Segment {segment.segment_index} of course {segment.course_id} has no predecessor row")
    if predecessor.status != "completed":
      released = await self._claims.release(segment.segment_id, worker_id)
      logger.info("Segment %d waiting on segment %d (%s); released=%s.", segment.segment_index, predecessor.segment_index, predecessor.status, released)
      raise DependencyNotReadyError(segment.segment_index, predecessor.status)
    return predecessor

  async def hand_off(self, segment: SegmentRecord, context: MergedContext, *, session_id: str | None) -> HandOffResult:
    """Start the successor of a completed segment, or run the completion gate after the last one."""
    course = await self._require_course(segment.course_id)
    successor = await self._repo.get_segment_by_index(segment.course_id, segment.segment_index + 1)
    if successor is None:
      status = await self._gate.check(segment.course_id)
      return HandOffResult(kind="completion", completion=status)

    if successor.status not in ("pending", "failed"):
      logger.info("Successor segment %d is %s; not dispatching.", successor.segment_index, successor.status)
      return HandOffResult(kind="skipped", next_segment_id=successor.segment_id)

    source_key = f"after:{segment.segment_id}:{segment.retry_count}"
    action = await self._record(course, successor, context=context, session_id=session_id, source_key=source_key)
    if action.status == "dispatched":
      return HandOffResult(kind="skipped", next_segment_id=successor.segment_id, action_id=action.action_id)
    delivered, error = await self.dispatch_action(action)
    return HandOffResult(kind="dispatched" if delivered else "queued", next_segment_id=successor.segment_id, action_id=action.action_id, error=error)

  async def start(self, course_id: str, *, session_id: str | None) -> HandOffResult:
    """Dispatch the first segment of a freshly decomposed course."""
    course = await self._require_course(course_id)
    first = await self._repo.get_segment_by_index(course_id, 0)
    if first is None:
      raise SegmentIntegrityError(f"Course {course_id} has no segments")
    if first.status not in ("pending", "failed"):
      return HandOffResult(kind="skipped", next_segment_id=first.segment_id)

    action = await self._record(course, first, context=None, session_id=session_id, source_key=f"start:{first.retry_count}")
    if action.status == "dispatched":
      return HandOffResult(kind="skipped", next_segment_id=first.segment_id, action_id=action.action_id)
    delivered, error = await self.dispatch_action(action)
    return HandOffResult(kind="dispatched" if delivered else "queued", next_segment_id=first.segment_id, action_id=action.action_id, error=error)

  async def dispatch_action(self, action: NextActionRecord) -> tuple[bool, str | None]:
    """Deliver a recorded hand-off; failures leave it queued and are never raised."""
    try:
      await self._enqueuer.enqueue(action.action_id, action.payload)
    except Exception as exc:  # noqa: BLE001
      logger.error("Hand-off %s to segment %d failed: %s", action.action_id, action.segment_index, exc, exc_info=True)
      try:
        await self._repo.mark_action(action.action_id, status="queued", from_statuses=("queued",), last_error=str(exc), count_attempt=True)
      except Exception:  # noqa: BLE001
        logger.warning("Could not record hand-off failure for %s.", action.action_id, exc_info=True)
      return False, str(exc)

    await self._repo.mark_action(action.action_id, status="dispatched", from_statuses=("queued",), count_attempt=True)
    logger.info("Dispatched segment %d via %s.", action.segment_index, action.action_id)
    return True, None

  async def orchestrate_course(self, course_id: str, *, check_only: bool = False) -> OrchestrationStatus:
    """
    Recover a course that stalled: expire dead leases, retry queued hand-offs and
    start the earliest runnable segment. With `check_only` nothing is written.
    """
    course = await self._repo.get_course(course_id)
    if course is None:
      return OrchestrationStatus(status="not_found")

    segments = await self._repo.list_segments(course_id)
    expired: list[int] = []
    if not check_only:
      for segment in segments:
        if segment.status == "processing" and await self._claims.expire_if_stale(segment.segment_id):
          expired.append(segment.segment_index)
      if expired:
        segments = await self._repo.list_segments(course_id)

    breakdown = dict(Counter(segment.status for segment in segments))
    completed = breakdown.get("completed", 0)
    status = OrchestrationStatus(status="in_progress", segments_total=len(segments), segments_completed=completed, status_breakdown=breakdown, expired_segments=expired)

    if segments and completed == len(segments):
      status.status = "completed"
      if not check_only:
        status.completion = await self._gate.check(course_id)
      return status
    if check_only:
      return status

    by_index = {segment.segment_index: segment for segment in segments}
    for action in await self._repo.list_actions(course_id, status="queued"):
      target = by_index.get(action.segment_index)
      if target is None or target.status not in ("pending", "failed"):
        await self._repo.mark_action(action.action_id, status="dispatched", from_statuses=("queued",), last_error="target segment no longer runnable")
        continue
      delivered, _ = await self.dispatch_action(action)
      if delivered:
        status.redispatched_actions.append(action.action_id)
    if status.redispatched_actions:
      status.status = "processing"
      return status

    runnable = self._first_runnable(segments)
    if runnable is None:
      status.status = "waiting"
      return status

    predecessor = by_index.get(runnable.segment_index - 1)
    inherited = load_context(predecessor.cumulative_context) if predecessor is not None else None
    source_key = f"sweep:{self._claims.now().isoformat()}"
    action = await self._record(course, runnable, context=inherited, session_id=None, source_key=source_key)
    delivered, _ = await self.dispatch_action(action)
    status.status = "processing" if delivered else "waiting"
    status.triggered_segment = runnable.segment_index if delivered else None
    return status

  def _first_runnable(self, segments: list[SegmentRecord]) -> SegmentRecord | None:
    previous_completed = True
    for segment in segments:
      if segment.status == "completed":
        previous_completed = True
        continue
      if previous_completed and segment.status in ("pending", "failed"):
        return segment
      previous_completed = False
    return None

  async def _require_course(self, course_id: str) -> CourseRecord:
    course = await self._repo.get_course(course_id)
    if course is None:
      raise SegmentIntegrityError(f"Course {course_id} not found")
    return course

  async def _record(self, course: CourseRecord, segment: SegmentRecord, *, context: MergedContext | None, session_id: str | None, source_key: str) -> NextActionRecord:
    action_id = next_action_id(segment.segment_id, source_key)
    task = build_task(segment, total_segments=course.total_segments, inherited_context=context, session_id=session_id, action_id=action_id)
    payload: dict[str, Any] = task.model_dump(mode="json")
    record = NextActionRecord(action_id=action_id, course_id=segment.course_id, segment_id=segment.segment_id, segment_index=segment.segment_index, payload=payload)
    if await self._repo.record_action(record):
      return record
    existing = await self._repo.get_action(action_id)
    return existing or record

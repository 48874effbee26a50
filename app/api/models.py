from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from app.pipeline.completion import CompletionStatus
from app.pipeline.dispatch import HandOffResult, OrchestrationStatus
from app.pipeline.models import SegmentRecord
from app.services.segments import CourseSegmentsResult, CourseStatusSnapshot


class CreateSegmentsRequest(BaseModel):
  """Request payload for decomposing a course video into segments."""

  model_config = ConfigDict(extra="forbid")

  video_ref: StrictStr = Field(min_length=1, description="YouTube URL or video id.", examples=["https://www.youtube.com/watch?v=dQw4w9WgXcQ"])
  title: StrictStr | None = Field(default=None, max_length=300)
  duration_seconds: float | None = Field(default=None, gt=0, description="Video duration; looked up on YouTube when omitted.")
  segment_duration: int | None = Field(default=None, gt=0, description="Segment length in seconds (default 300).")
  max_questions_per_segment: int | None = Field(default=None, gt=0, le=20)
  session_id: StrictStr | None = Field(default=None, min_length=1, description="Progress session to report into.")


class SegmentSummary(BaseModel):
  segment_id: str
  segment_index: int
  start_time: float
  end_time: float
  title: str | None = None
  status: str
  retry_count: int = 0
  questions_count: int = 0
  error_message: str | None = None
  completed_at: datetime | None = None

  @classmethod
  def from_record(cls, record: SegmentRecord) -> SegmentSummary:
    return cls(
      segment_id=record.segment_id,
      segment_index=record.segment_index,
      start_time=record.start_time,
      end_time=record.end_time,
      title=record.title,
      status=record.status,
      retry_count=record.retry_count,
      questions_count=record.questions_count,
      error_message=record.error_message,
      completed_at=record.completed_at,
    )


class HandOffResponse(BaseModel):
  kind: Literal["dispatched", "queued", "completion", "skipped"]
  next_segment_id: str | None = None
  action_id: str | None = None
  error: str | None = None

  @classmethod
  def from_result(cls, result: HandOffResult | None) -> HandOffResponse | None:
    if result is None:
      return None
    return cls(kind=result.kind, next_segment_id=result.next_segment_id, action_id=result.action_id, error=result.error)


class CreateSegmentsResponse(BaseModel):
  course_id: str
  created: bool
  total_segments: int
  duration_seconds: float
  segments: list[SegmentSummary]

  @classmethod
  def from_result(cls, result: CourseSegmentsResult) -> CreateSegmentsResponse:
    return cls(
      course_id=result.course.course_id,
      created=result.created,
      total_segments=len(result.segments),
      duration_seconds=result.duration_seconds,
      segments=[SegmentSummary.from_record(segment) for segment in result.segments],
    )


class ProgressResponse(BaseModel):
  session_id: str
  stage: str
  current_step: str
  overall_progress: float
  metadata: dict[str, Any] | None = None


class CourseStatusResponse(BaseModel):
  course_id: str
  published: bool
  total_segments: int
  segments_completed: int
  question_count: int
  plan_counts: dict[str, int]
  segments: list[SegmentSummary]
  progress: ProgressResponse | None = None

  @classmethod
  def from_snapshot(cls, snapshot: CourseStatusSnapshot) -> CourseStatusResponse:
    progress = snapshot.progress
    return cls(
      course_id=snapshot.course.course_id,
      published=snapshot.course.published,
      total_segments=len(snapshot.segments),
      segments_completed=sum(1 for segment in snapshot.segments if segment.status == "completed"),
      question_count=snapshot.question_count,
      plan_counts=snapshot.plan_counts,
      segments=[SegmentSummary.from_record(segment) for segment in snapshot.segments],
      progress=(
        ProgressResponse(session_id=progress.session_id, stage=progress.stage, current_step=progress.current_step, overall_progress=progress.overall_progress, metadata=progress.metadata) if progress is not None else None
      ),
    )


class CompletionResponse(BaseModel):
  done: bool
  published_now: bool = False
  question_count: int = 0
  reasons: list[str] = Field(default_factory=list)

  @classmethod
  def from_status(cls, status: CompletionStatus | None) -> CompletionResponse | None:
    if status is None:
      return None
    return cls(done=status.done, published_now=status.published_now, question_count=status.question_count, reasons=list(status.reasons))


class OrchestrationResponse(BaseModel):
  status: str
  segments_total: int
  segments_completed: int
  status_breakdown: dict[str, int]
  expired_segments: list[int]
  redispatched_actions: list[str]
  triggered_segment: int | None = None
  completion: CompletionResponse | None = None

  @classmethod
  def from_status(cls, status: OrchestrationStatus) -> OrchestrationResponse:
    return cls(
      status=status.status,
      segments_total=status.segments_total,
      segments_completed=status.segments_completed,
      status_breakdown=status.status_breakdown,
      expired_segments=status.expired_segments,
      redispatched_actions=status.redispatched_actions,
      triggered_segment=status.triggered_segment,
      completion=CompletionResponse.from_status(status.completion),
    )

"""Domain records for segmented course processing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

SegmentStatus = Literal["pending", "processing", "completed", "failed"]
PlanStatus = Literal["planned", "generating", "completed", "failed"]
ActionStatus = Literal["queued", "dispatched", "failed"]
ProgressStage = Literal["planning", "generation", "storage", "completed", "failed"]

# Plan statuses that still count as in-flight work for the completion gate.
OPEN_PLAN_STATUSES: tuple[PlanStatus, ...] = ("planned", "generating")
# Statuses a later planning attempt may retire; a retired completed plan loses its question.
SUPERSEDABLE_PLAN_STATUSES: tuple[PlanStatus, ...] = ("planned", "generating", "completed")
# Allowed predecessor statuses for each plan transition; transitions never regress.
PLAN_TRANSITIONS: dict[PlanStatus, tuple[PlanStatus, ...]] = {
  "planned": (),
  "generating": ("planned",),
  "completed": ("generating",),
  "failed": ("planned", "generating"),
}


@dataclass
class CourseRecord:
  """A course built from one source video."""

  course_id: str
  video_ref: str
  total_segments: int = 0
  segment_duration: int | None = None
  published: bool = False
  title: str | None = None
  created_at: datetime | None = None
  updated_at: datetime | None = None


@dataclass
class SegmentRecord:
  """One contiguous time slice of the course video."""

  segment_id: str
  course_id: str
  segment_index: int
  start_time: float
  end_time: float
  status: SegmentStatus = "pending"
  title: str | None = None
  lease_owner: str | None = None
  lease_started_at: datetime | None = None
  retry_count: int = 0
  cumulative_context: dict[str, Any] | None = None
  questions_count: int = 0
  error_message: str | None = None
  completed_at: datetime | None = None

  @property
  def duration(self) -> float:
    return max(self.end_time - self.start_time, 0.0)


@dataclass
class QuestionPlanRecord:
  """Persisted plan row; `payload` holds the validated plan and later the artifact."""

  plan_id: str
  course_id: str
  segment_id: str
  question_id: str
  archetype: str
  target_timestamp: float
  status: PlanStatus = "planned"
  payload: dict[str, Any] = field(default_factory=dict)
  error_message: str | None = None


@dataclass
class GeneratedQuestionRecord:
  """Persisted question artifact, keyed 1:1 by its plan id."""

  plan_id: str
  course_id: str
  segment_id: str
  segment_index: int
  timestamp: int
  archetype: str
  question: str
  explanation: str
  options: list[str] | None = None
  correct_answer: int | None = None
  has_visual_asset: bool = False
  frame_timestamp: int | None = None
  metadata: dict[str, Any] | None = None


@dataclass
class HotspotBoxRecord:
  """Bounding-box sub-record of a hotspot question."""

  plan_id: str
  label: str
  x: float
  y: float
  width: float
  height: float
  is_correct_answer: bool = False
  confidence_score: float = 0.9


@dataclass
class ProgressRecord:
  """Progress snapshot keyed by (course_id, session_id)."""

  course_id: str
  session_id: str
  stage: ProgressStage
  current_step: str
  stage_progress: float
  overall_progress: float
  metadata: dict[str, Any] | None = None
  updated_at: datetime | None = None


@dataclass
class NextActionRecord:
  """Durable hand-off telling a worker to start a segment."""

  action_id: str
  course_id: str
  segment_id: str
  segment_index: int
  payload: dict[str, Any]
  status: ActionStatus = "queued"
  attempts: int = 0
  last_error: str | None = None
  created_at: datetime | None = None

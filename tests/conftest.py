"""Shared fixtures: an in-memory conditional-write repository and scripted providers."""

from __future__ import annotations

import asyncio
import itertools
from collections import Counter
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from app.ai.analysis import normalize_transcript_payload
from app.config import Settings, get_settings
from app.pipeline.claims import ClaimManager
from app.pipeline.contracts import QUESTION_ARTIFACT_ADAPTER, AnalysisRequest, AnalysisResult, GenerationRequest, QuestionArtifact, TimeRange, VideoTranscript
from app.pipeline.dispatch import SegmentDispatcher, build_task
from app.pipeline.generation import GeneratorRegistry
from app.pipeline.models import (
  SUPERSEDABLE_PLAN_STATUSES,
  ActionStatus,
  CourseRecord,
  GeneratedQuestionRecord,
  HotspotBoxRecord,
  NextActionRecord,
  PlanStatus,
  ProgressRecord,
  QuestionPlanRecord,
  SegmentRecord,
)
from app.pipeline.errors import ProviderError
from app.pipeline.runner import RunnerOptions, SegmentRunner
from app.pipeline.segmentation import build_segment_records, plan_segments
from app.utils.timestamps import format_seconds


class InMemoryPipelineRepository:
  """Dict-backed repository whose conditional writes check and set without yielding."""

  def __init__(self) -> None:
    self.courses: dict[str, CourseRecord] = {}
    self.segments: dict[str, SegmentRecord] = {}
    self.plans: dict[str, QuestionPlanRecord] = {}
    self.questions: dict[str, GeneratedQuestionRecord] = {}
    self.boxes: dict[str, list[HotspotBoxRecord]] = {}
    self.progress: dict[tuple[str, str], ProgressRecord] = {}
    self.actions: dict[str, NextActionRecord] = {}
    self._sequence = itertools.count()
    self._progress_order: dict[tuple[str, str], int] = {}

  async def _yield(self) -> None:
    # Lets racing coroutines interleave between repository calls.
    await asyncio.sleep(0)

  # Courses

  async def create_course(self, record: CourseRecord) -> None:
    await self._yield()
    self.courses[record.course_id] = replace(record)

  async def get_course(self, course_id: str) -> CourseRecord | None:
    await self._yield()
    course = self.courses.get(course_id)
    return replace(course) if course else None

  async def update_course(self, course_id: str, *, total_segments: int | None = None, segment_duration: int | None = None, title: str | None = None) -> CourseRecord | None:
    await self._yield()
    course = self.courses.get(course_id)
    if course is None:
      return None
    if total_segments is not None:
      course.total_segments = total_segments
    if segment_duration is not None:
      course.segment_duration = segment_duration
    if title is not None:
      course.title = title
    return replace(course)

  async def publish_course(self, course_id: str) -> int:
    await self._yield()
    course = self.courses.get(course_id)
    if course is None or course.published:
      return 0
    course.published = True
    return 1

  # Segments

  async def create_segments(self, records: list[SegmentRecord]) -> None:
    await self._yield()
    for record in records:
      self.segments[record.segment_id] = replace(record)

  async def get_segment(self, segment_id: str) -> SegmentRecord | None:
    await self._yield()
    segment = self.segments.get(segment_id)
    return replace(segment) if segment else None

  async def get_segment_by_index(self, course_id: str, segment_index: int) -> SegmentRecord | None:
    await self._yield()
    for segment in self.segments.values():
      if segment.course_id == course_id and segment.segment_index == segment_index:
        return replace(segment)
    return None

  async def list_segments(self, course_id: str) -> list[SegmentRecord]:
    await self._yield()
    return sorted((replace(segment) for segment in self.segments.values() if segment.course_id == course_id), key=lambda segment: segment.segment_index)

  async def claim_segment(self, segment_id: str, *, worker_id: str, now: datetime, stale_before: datetime) -> int:
    await self._yield()
    segment = self.segments.get(segment_id)
    if segment is None:
      return 0
    stale = segment.status == "processing" and segment.lease_started_at is not None and segment.lease_started_at < stale_before
    if segment.status not in ("pending", "failed") and not stale:
      return 0
    if segment.status == "failed":
      segment.retry_count += 1
    segment.status = "processing"
    segment.lease_owner = worker_id
    segment.lease_started_at = now
    segment.error_message = None
    return 1

  def _owned(self, segment_id: str, worker_id: str) -> SegmentRecord | None:
    segment = self.segments.get(segment_id)
    if segment is None or segment.status != "processing" or segment.lease_owner != worker_id:
      return None
    return segment

  async def renew_segment_lease(self, segment_id: str, *, worker_id: str, now: datetime) -> int:
    await self._yield()
    segment = self._owned(segment_id, worker_id)
    if segment is None:
      return 0
    segment.lease_started_at = now
    return 1

  async def release_segment(self, segment_id: str, *, worker_id: str) -> int:
    await self._yield()
    segment = self._owned(segment_id, worker_id)
    if segment is None:
      return 0
    segment.status = "pending"
    segment.lease_owner = None
    segment.lease_started_at = None
    return 1

  async def complete_segment(self, segment_id: str, *, worker_id: str, cumulative_context: dict[str, Any] | None, questions_count: int, note: str | None, now: datetime) -> int:
    await self._yield()
    segment = self._owned(segment_id, worker_id)
    if segment is None:
      return 0
    segment.status = "completed"
    segment.cumulative_context = cumulative_context
    segment.questions_count = questions_count
    segment.error_message = note
    segment.completed_at = now
    segment.lease_owner = None
    segment.lease_started_at = None
    return 1

  async def fail_segment(self, segment_id: str, *, worker_id: str, error_message: str, now: datetime) -> int:
    await self._yield()
    segment = self._owned(segment_id, worker_id)
    if segment is None:
      return 0
    segment.status = "failed"
    segment.error_message = error_message
    segment.retry_count += 1
    segment.lease_owner = None
    segment.lease_started_at = None
    return 1

  async def expire_stale_segment(self, segment_id: str, *, stale_before: datetime, error_message: str) -> int:
    await self._yield()
    segment = self.segments.get(segment_id)
    if segment is None or segment.status != "processing" or segment.lease_started_at is None or segment.lease_started_at >= stale_before:
      return 0
    segment.status = "failed"
    segment.error_message = error_message
    segment.lease_owner = None
    segment.lease_started_at = None
    return 1

  # Plans

  async def upsert_plans(self, records: list[QuestionPlanRecord]) -> None:
    await self._yield()
    for record in records:
      self.plans.setdefault(record.plan_id, replace(record, payload=dict(record.payload)))

  async def list_plans(self, segment_id: str) -> list[QuestionPlanRecord]:
    await self._yield()
    rows = [replace(plan) for plan in self.plans.values() if plan.segment_id == segment_id]
    return sorted(rows, key=lambda plan: (plan.target_timestamp, plan.plan_id))

  async def transition_plan(self, plan_id: str, *, to_status: PlanStatus, from_statuses: tuple[PlanStatus, ...], payload: dict[str, Any] | None = None, error_message: str | None = None) -> int:
    await self._yield()
    plan = self.plans.get(plan_id)
    if plan is None or plan.status not in from_statuses:
      return 0
    plan.status = to_status
    if payload is not None:
      plan.payload = payload
    if error_message is not None:
      plan.error_message = error_message
    return 1

  async def supersede_plans(self, segment_id: str, *, keep_plan_ids: tuple[str, ...], error_message: str) -> int:
    await self._yield()
    affected = 0
    for plan in self.plans.values():
      if plan.segment_id == segment_id and plan.status in SUPERSEDABLE_PLAN_STATUSES and plan.plan_id not in keep_plan_ids:
        plan.status = "failed"
        plan.error_message = error_message
        self.questions.pop(plan.plan_id, None)
        self.boxes.pop(plan.plan_id, None)
        affected += 1
    return affected

  async def count_plans_by_status(self, course_id: str) -> dict[str, int]:
    await self._yield()
    return dict(Counter(plan.status for plan in self.plans.values() if plan.course_id == course_id))

  # Questions

  async def upsert_question(self, record: GeneratedQuestionRecord) -> None:
    await self._yield()
    self.questions[record.plan_id] = replace(record)

  async def replace_hotspot_boxes(self, plan_id: str, boxes: list[HotspotBoxRecord]) -> None:
    await self._yield()
    self.boxes[plan_id] = [replace(box) for box in boxes]

  async def count_questions(self, course_id: str, *, segment_id: str | None = None) -> int:
    await self._yield()
    return sum(1 for question in self.questions.values() if question.course_id == course_id and (segment_id is None or question.segment_id == segment_id))

  # Progress

  async def upsert_progress(self, record: ProgressRecord) -> None:
    await self._yield()
    key = (record.course_id, record.session_id)
    self.progress[key] = replace(record)
    self._progress_order[key] = next(self._sequence)

  async def get_progress(self, course_id: str, session_id: str) -> ProgressRecord | None:
    await self._yield()
    record = self.progress.get((course_id, session_id))
    return replace(record) if record else None

  async def latest_progress(self, course_id: str) -> ProgressRecord | None:
    await self._yield()
    keys = [key for key in self.progress if key[0] == course_id]
    if not keys:
      return None
    return replace(self.progress[max(keys, key=self._progress_order.__getitem__)])

  # Hand-offs

  async def record_action(self, record: NextActionRecord) -> bool:
    await self._yield()
    if record.action_id in self.actions:
      return False
    self.actions[record.action_id] = replace(record, created_at=datetime.now(UTC))
    return True

  async def get_action(self, action_id: str) -> NextActionRecord | None:
    await self._yield()
    action = self.actions.get(action_id)
    return replace(action) if action else None

  async def mark_action(self, action_id: str, *, status: ActionStatus, from_statuses: tuple[ActionStatus, ...], last_error: str | None = None, count_attempt: bool = False) -> int:
    await self._yield()
    action = self.actions.get(action_id)
    if action is None or action.status not in from_statuses:
      return 0
    action.status = status
    if last_error is not None:
      action.last_error = last_error
    if count_attempt:
      action.attempts += 1
    return 1

  async def list_actions(self, course_id: str, *, status: ActionStatus = "queued") -> list[NextActionRecord]:
    await self._yield()
    return [replace(action) for action in self.actions.values() if action.course_id == course_id and action.status == status]


class FakeClock:
  """Manually advanced UTC clock."""

  def __init__(self, start: datetime | None = None) -> None:
    self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

  def __call__(self) -> datetime:
    return self.current

  def advance(self, seconds: float) -> None:
    self.current += timedelta(seconds=seconds)


def transcript_for(time_range: TimeRange, *, text: str = "Photosynthesis turns light into chemical energy.") -> VideoTranscript:
  """A transcript with one spoken line every 20 seconds of the range."""
  lines = []
  cursor = time_range.start
  while cursor < time_range.end:
    lines.append({"timestamp": format_seconds(cursor), "end_timestamp": format_seconds(min(cursor + 20, time_range.end)), "text": f"{text} ({int(cursor)}s)", "visual_description": "Diagram of a leaf"})
    cursor += 20
  concepts = [{"concept": "Photosynthesis", "first_mentioned": format_seconds(time_range.start), "explanation_timestamps": [format_seconds(time_range.start + 10)]}]
  return VideoTranscript.model_validate(normalize_transcript_payload({"full_transcript": lines, "key_concepts_timeline": concepts, "video_summary": "How plants make food."}))


def plan_draft(timestamp: float, archetype: str = "multiple-choice", /, **overrides: Any) -> dict[str, Any]:
  draft: dict[str, Any] = {
    "archetype": archetype,
    "timestamp": format_seconds(timestamp),
    "learning_objective": "Learners will explain how chlorophyll captures light energy",
    "content_context": "The narrator explains the light reactions.",
    "key_concepts": ["Photosynthesis", "Chlorophyll"],
    "bloom_level": "understand",
    "educational_rationale": "Checks that learners connect the pigment to the energy conversion step.",
  }
  if archetype == "hotspot":
    draft.update({"visual_learning_objective": "Find the chloroplast", "target_objects": ["chloroplast"], "question_context": "Click the chloroplast."})
  draft.update(overrides)
  return draft


class ScriptedAnalyzer:
  """Returns a transcript and two plan drafts per segment unless told otherwise."""

  def __init__(self) -> None:
    self.requests: list[AnalysisRequest] = []
    self.fail_segments: set[int] = set()
    self.silent_segments: set[int] = set()
    self.drafts_by_segment: dict[int, list[dict[str, Any]]] = {}

  async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
    self.requests.append(request)
    index = request.segment_index
    if index in self.fail_segments:
      raise ProviderError(f"provider rejected segment {index}")
    if index in self.silent_segments:
      return AnalysisResult(transcript=VideoTranscript(), plan_drafts=[plan_draft(request.time_range.start + 5)])
    start = request.time_range.start
    drafts = self.drafts_by_segment.get(index, [plan_draft(start + 30), plan_draft(start + 90, "true-false")])
    return AnalysisResult(transcript=transcript_for(request.time_range), plan_drafts=drafts)


class StubGenerator:
  """Builds a valid artifact for its archetype straight from the plan."""

  def __init__(self, archetype: str, *, fail_ids: set[str] | None = None) -> None:
    self.archetype = archetype
    self.fail_ids = fail_ids or set()
    self.calls: list[str] = []

  async def generate(self, request: GenerationRequest) -> QuestionArtifact:
    plan = request.plan
    self.calls.append(plan.question_id or "")
    if plan.question_id in self.fail_ids:
      raise RuntimeError(f"generator exploded on {plan.question_id}")
    payload: dict[str, Any] = {"question_id": plan.question_id, "timestamp": plan.timestamp, "archetype": self.archetype, "question": f"What does the video say at {plan.timestamp:.0f}s?", "explanation": "Because the narrator says so.", "key_concepts": plan.key_concepts}
    if self.archetype == "multiple-choice":
      payload.update({"options": ["Light", "Sound", "Heat", "Wind"], "correct_answer": 0})
    elif self.archetype == "true-false":
      payload.update({"correct_answer": True})
    elif self.archetype == "matching":
      payload.update({"matching_pairs": [{"left": "Chlorophyll", "right": "Pigment"}, {"left": "Stomata", "right": "Pores"}]})
    elif self.archetype == "sequencing":
      payload.update({"sequence_items": ["Absorb light", "Split water", "Make sugar"]})
    elif self.archetype == "hotspot":
      payload.update({"target_objects": ["chloroplast"], "bounding_boxes": [{"label": "chloroplast", "x": 0.1, "y": 0.1, "width": 0.2, "height": 0.2, "is_correct_answer": True}]})
    return QUESTION_ARTIFACT_ADAPTER.validate_python(payload)


def stub_registry(*, fail_ids: set[str] | None = None) -> GeneratorRegistry:
  return GeneratorRegistry({archetype: StubGenerator(archetype, fail_ids=fail_ids) for archetype in ("multiple-choice", "true-false", "hotspot", "matching", "sequencing")})


class RecordingEnqueuer:
  """Collects hand-offs without delivering them; can be told to fail."""

  def __init__(self) -> None:
    self.sent: list[tuple[str, dict[str, Any]]] = []
    self.fail_with: Exception | None = None

  async def enqueue(self, action_id: str, payload: dict[str, Any]) -> None:
    if self.fail_with is not None:
      raise self.fail_with
    self.sent.append((action_id, payload))


async def seed_course(repo: InMemoryPipelineRepository, *, course_id: str = "course-1", duration: float = 900, segment_duration: int = 300) -> list[SegmentRecord]:
  """Create a course and its segments the way the service does."""
  layouts = plan_segments(duration, segment_duration=segment_duration)
  records = build_segment_records(course_id, layouts)
  await repo.create_course(CourseRecord(course_id=course_id, video_ref="https://www.youtube.com/watch?v=abc123def45", total_segments=len(records), segment_duration=segment_duration))
  await repo.create_segments(records)
  return await repo.list_segments(course_id)


def task_for(segment: SegmentRecord, *, total_segments: int = 3, session_id: str | None = None):
  return build_task(segment, total_segments=total_segments, inherited_context=None, session_id=session_id, action_id=None)


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def repo() -> InMemoryPipelineRepository:
  return InMemoryPipelineRepository()


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def claims(repo: InMemoryPipelineRepository, clock: FakeClock) -> ClaimManager:
  return ClaimManager(repo, lease_timeout_seconds=300, clock=clock)


@pytest.fixture
def enqueuer() -> RecordingEnqueuer:
  return RecordingEnqueuer()


@pytest.fixture
def dispatcher(repo: InMemoryPipelineRepository, claims: ClaimManager, enqueuer: RecordingEnqueuer) -> SegmentDispatcher:
  return SegmentDispatcher(repo=repo, enqueuer=enqueuer, claims=claims)


@pytest.fixture
def analyzer() -> ScriptedAnalyzer:
  return ScriptedAnalyzer()


@pytest.fixture
def runner(repo: InMemoryPipelineRepository, claims: ClaimManager, analyzer: ScriptedAnalyzer, dispatcher: SegmentDispatcher) -> SegmentRunner:
  return SegmentRunner(repo=repo, claims=claims, analyzer=analyzer, registry=stub_registry(), dispatcher=dispatcher, options=RunnerOptions())


@pytest.fixture
def settings() -> Settings:
  return replace(get_settings(), task_secret="test-task-secret", base_url="http://localhost:8000", gemini_api_key="test-key", youtube_api_key=None, task_service_provider="inline")

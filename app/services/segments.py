"""Wiring and entry points for segmented course processing."""

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status

from app.ai.analysis import GeminiContentAnalyzer
from app.ai.generators import build_registry
from app.ai.providers.gemini import GeminiModel
from app.config import Settings
from app.pipeline.claims import Clock, ClaimManager
from app.pipeline.dispatch import HandOffResult, OrchestrationStatus, SegmentDispatcher, SegmentTask
from app.pipeline.generation import GeneratorRegistry
from app.pipeline.models import CourseRecord, ProgressRecord, SegmentRecord
from app.pipeline.planning import ContentAnalyzer
from app.pipeline.runner import RunnerOptions, SegmentRunner, SegmentRunResult
from app.pipeline.segmentation import build_segment_records, plan_segments
from app.services.tasks.factory import get_task_enqueuer
from app.services.tasks.interface import TaskEnqueuer
from app.services.youtube import fetch_video_duration
from app.storage.pipeline_repo import PipelineRepository
from app.storage.postgres_pipeline_repo import PostgresPipelineRepository

logger = logging.getLogger(__name__)

_COURSE_NOT_FOUND_MSG = "Course not found."


@dataclass
class SegmentPipeline:
  """The collaborators one process needs to run and coordinate segments."""

  repo: PipelineRepository
  claims: ClaimManager
  dispatcher: SegmentDispatcher
  runner: SegmentRunner
  enqueuer: TaskEnqueuer

  async def handle_task(self, payload: dict[str, Any]) -> SegmentRunResult:
    task = SegmentTask.model_validate(payload)
    result = await self.runner.run(task)
    logger.info("Segment %d of course %s finished as %s.", task.segment_index, task.course_id, result.status)
    return result


@dataclass
class CourseSegmentsResult:
  course: CourseRecord
  segments: list[SegmentRecord]
  created: bool
  duration_seconds: float
  hand_off: HandOffResult | None = None


@dataclass
class CourseStatusSnapshot:
  course: CourseRecord
  segments: list[SegmentRecord]
  plan_counts: dict[str, int]
  question_count: int
  progress: ProgressRecord | None


def runner_options(settings: Settings) -> RunnerOptions:
  return RunnerOptions(
    max_questions_per_segment=settings.max_questions_per_segment,
    generation_concurrency=settings.generation_concurrency,
    storage_concurrency=settings.storage_concurrency,
    context_window_seconds=settings.context_window_seconds,
    context_question_count=settings.context_question_count,
  )


def build_pipeline(
  settings: Settings,
  *,
  repo: PipelineRepository | None = None,
  analyzer: ContentAnalyzer | None = None,
  registry: GeneratorRegistry | None = None,
  enqueuer: TaskEnqueuer | None = None,
  clock: Clock | None = None,
) -> SegmentPipeline:
  """Assemble the pipeline from settings; any collaborator can be supplied instead."""
  repo = repo or PostgresPipelineRepository()
  if analyzer is None or registry is None:
    analysis_model = GeminiModel(settings.analysis_model, api_key=settings.gemini_api_key)
    generation_model = analysis_model if settings.generation_model == settings.analysis_model else GeminiModel(settings.generation_model, api_key=settings.gemini_api_key)
    analyzer = analyzer or GeminiContentAnalyzer(analysis_model)
    registry = registry or build_registry(generation_model)

  claims = ClaimManager(repo, lease_timeout_seconds=settings.lease_timeout_seconds, clock=clock)
  holder: dict[str, SegmentPipeline] = {}

  async def _inline(payload: dict[str, Any]) -> None:
    await holder["pipeline"].handle_task(payload)

  enqueuer = enqueuer or get_task_enqueuer(settings, inline_handler=_inline)
  dispatcher = SegmentDispatcher(repo=repo, enqueuer=enqueuer, claims=claims)
  runner = SegmentRunner(repo=repo, claims=claims, analyzer=analyzer, registry=registry, dispatcher=dispatcher, options=runner_options(settings))
  pipeline = SegmentPipeline(repo=repo, claims=claims, dispatcher=dispatcher, runner=runner, enqueuer=enqueuer)
  holder["pipeline"] = pipeline
  return pipeline


async def create_course_segments(
  pipeline: SegmentPipeline,
  settings: Settings,
  *,
  course_id: str,
  video_ref: str,
  title: str | None = None,
  duration_seconds: float | None = None,
  segment_duration: int | None = None,
  max_questions_per_segment: int | None = None,
  session_id: str | None = None,
  dispatch: bool = True,
) -> CourseSegmentsResult:
  """Decompose the course video into segments and, unless told not to, dispatch the first one."""
  repo = pipeline.repo
  course = await repo.get_course(course_id)
  existing = await repo.list_segments(course_id) if course is not None else []
  if course is not None and existing:
    logger.info("Course %s already has %d segments; not re-creating.", course_id, len(existing))
    return CourseSegmentsResult(course=course, segments=existing, created=False, duration_seconds=existing[-1].end_time)

  if course is not None and course.video_ref != video_ref:
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Course exists with a different video.")

  if duration_seconds is None:
    duration_seconds = await fetch_video_duration(video_ref, api_key=settings.youtube_api_key)
  if duration_seconds is None:
    logger.warning("Unknown duration for %s; assuming %ss.", video_ref, settings.default_video_duration_seconds)
    duration_seconds = float(settings.default_video_duration_seconds)

  segment_duration = segment_duration or settings.segment_duration_seconds
  layouts = plan_segments(
    duration_seconds,
    segment_duration=segment_duration,
    min_tail_seconds=settings.min_tail_segment_seconds,
    max_questions_per_segment=max_questions_per_segment or settings.max_questions_per_segment,
  )

  if course is None:
    await repo.create_course(CourseRecord(course_id=course_id, video_ref=video_ref, title=title))
  records = build_segment_records(course_id, layouts)
  await repo.create_segments(records)
  course = await repo.update_course(course_id, total_segments=len(records), segment_duration=segment_duration, title=title) or course
  logger.info("Created %d segments for course %s (%.0fs video).", len(records), course_id, duration_seconds)

  hand_off = await pipeline.dispatcher.start(course_id, session_id=session_id) if dispatch else None
  segments = await repo.list_segments(course_id)
  refreshed = await repo.get_course(course_id)
  return CourseSegmentsResult(course=refreshed or course, segments=segments, created=True, duration_seconds=duration_seconds, hand_off=hand_off)


async def get_course_status(repo: PipelineRepository, course_id: str) -> CourseStatusSnapshot:
  course = await repo.get_course(course_id)
  if course is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_COURSE_NOT_FOUND_MSG)
  return CourseStatusSnapshot(
    course=course,
    segments=await repo.list_segments(course_id),
    plan_counts=await repo.count_plans_by_status(course_id),
    question_count=await repo.count_questions(course_id),
    progress=await repo.latest_progress(course_id),
  )


async def orchestrate(pipeline: SegmentPipeline, course_id: str, *, check_only: bool = False) -> OrchestrationStatus:
  result = await pipeline.dispatcher.orchestrate_course(course_id, check_only=check_only)
  if result.status == "not_found":
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_COURSE_NOT_FOUND_MSG)
  return result


async def run_segment_task(payload: dict[str, Any], settings: Settings) -> None:
  """Background entry point for the task endpoint."""
  pipeline = build_pipeline(settings)
  try:
    await pipeline.handle_task(payload)
  except Exception:  # noqa: BLE001
    logger.exception("Segment task for %s crashed.", payload.get("segment_id"))


async def run_orchestration(course_id: str, settings: Settings) -> None:
  """Background entry point for the sweep endpoint."""
  pipeline = build_pipeline(settings)
  try:
    status_ = await pipeline.dispatcher.orchestrate_course(course_id)
    logger.info("Sweep for course %s: %s.", course_id, status_.status)
  except Exception:  # noqa: BLE001
    logger.exception("Sweep for course %s crashed.", course_id)

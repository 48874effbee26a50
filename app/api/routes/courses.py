from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status

from app.api.deps import get_pipeline, get_pipeline_repo, require_task_secret
from app.api.models import CompletionResponse, CourseStatusResponse, CreateSegmentsRequest, CreateSegmentsResponse, OrchestrationResponse
from app.config import Settings, get_settings
from app.services.segments import SegmentPipeline, create_course_segments, get_course_status, orchestrate
from app.storage.pipeline_repo import PipelineRepository

router = APIRouter(dependencies=[Depends(require_task_secret)])
logger = logging.getLogger(__name__)


@router.post("/{course_id}/segments", response_model=CreateSegmentsResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_segments(
  course_id: str,
  request: CreateSegmentsRequest,
  background_tasks: BackgroundTasks,
  settings: Annotated[Settings, Depends(get_settings)],
  pipeline: Annotated[SegmentPipeline, Depends(get_pipeline)],
) -> CreateSegmentsResponse:
  """Split the course video into segments and start processing the first one."""
  result = await create_course_segments(
    pipeline,
    settings,
    course_id=course_id,
    video_ref=request.video_ref,
    title=request.title,
    duration_seconds=request.duration_seconds,
    segment_duration=request.segment_duration,
    max_questions_per_segment=request.max_questions_per_segment,
    session_id=request.session_id,
    dispatch=False,
  )
  if result.created:
    # Inline delivery runs the whole chain, so never do it inside the request.
    background_tasks.add_task(pipeline.dispatcher.start, course_id, session_id=request.session_id)
  return CreateSegmentsResponse.from_result(result)


@router.get("/{course_id}/status", response_model=CourseStatusResponse)
async def course_status(course_id: str, repo: Annotated[PipelineRepository, Depends(get_pipeline_repo)]) -> CourseStatusResponse:
  snapshot = await get_course_status(repo, course_id)
  return CourseStatusResponse.from_snapshot(snapshot)


@router.post("/{course_id}/orchestrate", response_model=OrchestrationResponse)
async def orchestrate_course(course_id: str, pipeline: Annotated[SegmentPipeline, Depends(get_pipeline)], check_only: bool = Query(default=False)) -> OrchestrationResponse:
  """Expire dead leases, retry queued hand-offs and restart a stalled course."""
  result = await orchestrate(pipeline, course_id, check_only=check_only)
  return OrchestrationResponse.from_status(result)


@router.post("/{course_id}/publish", response_model=CompletionResponse)
async def publish_course(course_id: str, pipeline: Annotated[SegmentPipeline, Depends(get_pipeline)]) -> CompletionResponse:
  """Run the completion gate; publishes the course when every segment has landed."""
  result = await pipeline.dispatcher.completion_gate.check(course_id)
  return CompletionResponse(done=result.done, published_now=result.published_now, question_count=result.question_count, reasons=list(result.reasons))

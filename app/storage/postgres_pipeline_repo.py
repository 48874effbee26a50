"""Postgres-backed pipeline repository using SQLAlchemy."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Update, and_, case, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import require_session_factory
from app.pipeline.models import ActionStatus, CourseRecord, GeneratedQuestionRecord, HotspotBoxRecord, NextActionRecord, PlanStatus, ProgressRecord, QuestionPlanRecord, SegmentRecord, SUPERSEDABLE_PLAN_STATUSES
from app.schema.pipeline import Course, CourseSegment, GenerationProgress, Question, QuestionHotspotBox, QuestionPlan, SegmentTask
from app.storage.pipeline_repo import PipelineRepository
from app.utils.db_retry import execute_with_retry


def build_claim_statement(segment_id: str, *, worker_id: str, now: datetime, stale_before: datetime) -> Update:
  """Build the single conditional UPDATE that grants a segment lease."""
  claimable = or_(
    CourseSegment.status.in_(("pending", "failed")),
    and_(CourseSegment.status == "processing", CourseSegment.lease_started_at < stale_before),
  )
  return (
    update(CourseSegment)
    .where(CourseSegment.segment_id == segment_id, claimable)
    .values(
      status="processing",
      lease_owner=worker_id,
      lease_started_at=now,
      error_message=None,
      retry_count=case((CourseSegment.status == "failed", CourseSegment.retry_count + 1), else_=CourseSegment.retry_count),
    )
    .execution_options(synchronize_session=False)
  )


class PostgresPipelineRepository(PipelineRepository):
  """Persist courses, segments, plans, questions and hand-offs to Postgres."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or require_session_factory()

  async def _execute_rowcount(self, operation_name: str, stmt: Any) -> int:
    async def _run() -> int:
      async with self._session_factory() as session:
        result = await session.execute(stmt)
        await session.commit()
        return int(result.rowcount or 0)

    return await execute_with_retry(operation_name=operation_name, func=_run)

  # Courses

  async def create_course(self, record: CourseRecord) -> None:
    async with self._session_factory() as session:
      session.add(Course(course_id=record.course_id, video_ref=record.video_ref, title=record.title, total_segments=record.total_segments, segment_duration=record.segment_duration, published=record.published))
      await session.commit()

  async def get_course(self, course_id: str) -> CourseRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Course, course_id)
      return None if row is None else self._course_to_record(row)

  async def update_course(self, course_id: str, *, total_segments: int | None = None, segment_duration: int | None = None, title: str | None = None) -> CourseRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Course, course_id)
      if row is None:
        return None
      if total_segments is not None:
        row.total_segments = total_segments
      if segment_duration is not None:
        row.segment_duration = segment_duration
      if title is not None:
        row.title = title
      session.add(row)
      await session.commit()
      await session.refresh(row)
      return self._course_to_record(row)

  async def publish_course(self, course_id: str) -> int:
    stmt = update(Course).where(Course.course_id == course_id, Course.published.is_(False)).values(published=True).execution_options(synchronize_session=False)
    return await self._execute_rowcount("publish_course", stmt)

  # Segments

  async def create_segments(self, records: list[SegmentRecord]) -> None:
    async with self._session_factory() as session:
      for record in records:
        session.add(
          CourseSegment(
            segment_id=record.segment_id,
            course_id=record.course_id,
            segment_index=record.segment_index,
            start_time=record.start_time,
            end_time=record.end_time,
            title=record.title,
            status=record.status,
          )
        )
      await session.commit()

  async def get_segment(self, segment_id: str) -> SegmentRecord | None:
    async with self._session_factory() as session:
      row = await session.get(CourseSegment, segment_id)
      return None if row is None else self._segment_to_record(row)

  async def get_segment_by_index(self, course_id: str, segment_index: int) -> SegmentRecord | None:
    async with self._session_factory() as session:
      stmt = select(CourseSegment).where(CourseSegment.course_id == course_id, CourseSegment.segment_index == segment_index).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      return None if row is None else self._segment_to_record(row)

  async def list_segments(self, course_id: str) -> list[SegmentRecord]:
    async with self._session_factory() as session:
      stmt = select(CourseSegment).where(CourseSegment.course_id == course_id).order_by(CourseSegment.segment_index.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self._segment_to_record(row) for row in rows]

  async def claim_segment(self, segment_id: str, *, worker_id: str, now: datetime, stale_before: datetime) -> int:
    stmt = build_claim_statement(segment_id, worker_id=worker_id, now=now, stale_before=stale_before)
    return await self._execute_rowcount("claim_segment", stmt)

  async def renew_segment_lease(self, segment_id: str, *, worker_id: str, now: datetime) -> int:
    stmt = self._owned(segment_id, worker_id).values(lease_started_at=now)
    return await self._execute_rowcount("renew_segment_lease", stmt)

  async def release_segment(self, segment_id: str, *, worker_id: str) -> int:
    stmt = self._owned(segment_id, worker_id).values(status="pending", lease_owner=None, lease_started_at=None)
    return await self._execute_rowcount("release_segment", stmt)

  async def complete_segment(self, segment_id: str, *, worker_id: str, cumulative_context: dict[str, Any] | None, questions_count: int, note: str | None, now: datetime) -> int:
    stmt = self._owned(segment_id, worker_id).values(
      status="completed",
      cumulative_context=cumulative_context,
      questions_count=questions_count,
      error_message=note,
      completed_at=now,
      lease_owner=None,
      lease_started_at=None,
    )
    return await self._execute_rowcount("complete_segment", stmt)

  async def fail_segment(self, segment_id: str, *, worker_id: str, error_message: str, now: datetime) -> int:
    _ = now
    stmt = self._owned(segment_id, worker_id).values(
      status="failed",
      error_message=error_message,
      retry_count=CourseSegment.retry_count + 1,
      lease_owner=None,
      lease_started_at=None,
    )
    return await self._execute_rowcount("fail_segment", stmt)

  async def expire_stale_segment(self, segment_id: str, *, stale_before: datetime, error_message: str) -> int:
    stmt = (
      update(CourseSegment)
      .where(CourseSegment.segment_id == segment_id, CourseSegment.status == "processing", CourseSegment.lease_started_at < stale_before)
      .values(status="failed", error_message=error_message, lease_owner=None, lease_started_at=None)
      .execution_options(synchronize_session=False)
    )
    return await self._execute_rowcount("expire_stale_segment", stmt)

  def _owned(self, segment_id: str, worker_id: str) -> Update:
    return update(CourseSegment).where(CourseSegment.segment_id == segment_id, CourseSegment.status == "processing", CourseSegment.lease_owner == worker_id).execution_options(synchronize_session=False)

  # Question plans

  async def upsert_plans(self, records: list[QuestionPlanRecord]) -> None:
    if not records:
      return
    values = [
      {
        "plan_id": record.plan_id,
        "course_id": record.course_id,
        "segment_id": record.segment_id,
        "question_id": record.question_id,
        "archetype": record.archetype,
        "target_timestamp": record.target_timestamp,
        "status": record.status,
        "payload": record.payload,
      }
      for record in records
    ]
    stmt = pg_insert(QuestionPlan).values(values).on_conflict_do_nothing(index_elements=[QuestionPlan.plan_id])
    await self._execute_rowcount("upsert_plans", stmt)

  async def list_plans(self, segment_id: str) -> list[QuestionPlanRecord]:
    async with self._session_factory() as session:
      stmt = select(QuestionPlan).where(QuestionPlan.segment_id == segment_id).order_by(QuestionPlan.target_timestamp.asc(), QuestionPlan.plan_id.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self._plan_to_record(row) for row in rows]

  async def transition_plan(self, plan_id: str, *, to_status: PlanStatus, from_statuses: tuple[PlanStatus, ...], payload: dict[str, Any] | None = None, error_message: str | None = None) -> int:
    values: dict[str, Any] = {"status": to_status}
    if payload is not None:
      values["payload"] = payload
    if error_message is not None:
      values["error_message"] = error_message
    stmt = update(QuestionPlan).where(QuestionPlan.plan_id == plan_id, QuestionPlan.status.in_(from_statuses)).values(**values).execution_options(synchronize_session=False)
    return await self._execute_rowcount("transition_plan", stmt)

  async def supersede_plans(self, segment_id: str, *, keep_plan_ids: tuple[str, ...], error_message: str) -> int:
    async def _run() -> int:
      async with self._session_factory() as session:
        stale = select(QuestionPlan.plan_id).where(QuestionPlan.segment_id == segment_id, QuestionPlan.status.in_(SUPERSEDABLE_PLAN_STATUSES))
        if keep_plan_ids:
          stale = stale.where(QuestionPlan.plan_id.not_in(keep_plan_ids))
        plan_ids = list((await session.execute(stale.with_for_update())).scalars().all())
        if not plan_ids:
          return 0
        # Hotspot boxes follow their question through the FK cascade.
        await session.execute(delete(Question).where(Question.plan_id.in_(plan_ids)).execution_options(synchronize_session=False))
        await session.execute(update(QuestionPlan).where(QuestionPlan.plan_id.in_(plan_ids)).values(status="failed", error_message=error_message).execution_options(synchronize_session=False))
        await session.commit()
        return len(plan_ids)

    return await execute_with_retry(operation_name="supersede_plans", func=_run)

  async def count_plans_by_status(self, course_id: str) -> dict[str, int]:
    async with self._session_factory() as session:
      stmt = select(QuestionPlan.status, func.count()).where(QuestionPlan.course_id == course_id).group_by(QuestionPlan.status)
      rows = (await session.execute(stmt)).all()
      return {str(status): int(count) for status, count in rows}

  # Questions

  async def upsert_question(self, record: GeneratedQuestionRecord) -> None:
    values = {
      "plan_id": record.plan_id,
      "course_id": record.course_id,
      "segment_id": record.segment_id,
      "segment_index": record.segment_index,
      "timestamp": record.timestamp,
      "archetype": record.archetype,
      "question": record.question,
      "explanation": record.explanation,
      "options": record.options,
      "correct_answer": record.correct_answer,
      "has_visual_asset": record.has_visual_asset,
      "frame_timestamp": record.frame_timestamp,
      "metadata": record.metadata,
    }
    insert_stmt = pg_insert(Question.__table__).values(**values)
    updatable = {column: insert_stmt.excluded[column] for column in ("timestamp", "archetype", "question", "explanation", "options", "correct_answer", "has_visual_asset", "frame_timestamp", "metadata")}
    updatable["updated_at"] = func.now()
    stmt = insert_stmt.on_conflict_do_update(index_elements=["plan_id"], set_=updatable)
    await self._execute_rowcount("upsert_question", stmt)

  async def replace_hotspot_boxes(self, plan_id: str, boxes: list[HotspotBoxRecord]) -> None:
    async def _run() -> None:
      async with self._session_factory() as session:
        await session.execute(delete(QuestionHotspotBox).where(QuestionHotspotBox.plan_id == plan_id))
        for box in boxes:
          session.add(
            QuestionHotspotBox(
              plan_id=plan_id,
              label=box.label,
              x=box.x,
              y=box.y,
              width=box.width,
              height=box.height,
              is_correct_answer=box.is_correct_answer,
              confidence_score=box.confidence_score,
            )
          )
        await session.commit()

    await execute_with_retry(operation_name="replace_hotspot_boxes", func=_run)

  async def count_questions(self, course_id: str, *, segment_id: str | None = None) -> int:
    async with self._session_factory() as session:
      stmt = select(func.count()).select_from(Question).where(Question.course_id == course_id)
      if segment_id is not None:
        stmt = stmt.where(Question.segment_id == segment_id)
      return int((await session.execute(stmt)).scalar_one())

  # Progress

  async def upsert_progress(self, record: ProgressRecord) -> None:
    insert_stmt = pg_insert(GenerationProgress.__table__).values(
      course_id=record.course_id,
      session_id=record.session_id,
      stage=record.stage,
      current_step=record.current_step,
      stage_progress=record.stage_progress,
      overall_progress=record.overall_progress,
      metadata=record.metadata,
    )
    stmt = insert_stmt.on_conflict_do_update(
      constraint="ux_generation_progress_course_session",
      set_={
        "stage": insert_stmt.excluded.stage,
        "current_step": insert_stmt.excluded.current_step,
        "stage_progress": insert_stmt.excluded.stage_progress,
        "overall_progress": insert_stmt.excluded.overall_progress,
        "metadata": insert_stmt.excluded["metadata"],
        "updated_at": func.now(),
      },
    )
    await self._execute_rowcount("upsert_progress", stmt)

  async def get_progress(self, course_id: str, session_id: str) -> ProgressRecord | None:
    async with self._session_factory() as session:
      stmt = select(GenerationProgress).where(GenerationProgress.course_id == course_id, GenerationProgress.session_id == session_id).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      return None if row is None else self._progress_to_record(row)

  async def latest_progress(self, course_id: str) -> ProgressRecord | None:
    async with self._session_factory() as session:
      stmt = select(GenerationProgress).where(GenerationProgress.course_id == course_id).order_by(GenerationProgress.updated_at.desc()).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      return None if row is None else self._progress_to_record(row)

  # Hand-offs

  async def record_action(self, record: NextActionRecord) -> bool:
    stmt = (
      pg_insert(SegmentTask)
      .values(
        action_id=record.action_id,
        course_id=record.course_id,
        segment_id=record.segment_id,
        segment_index=record.segment_index,
        payload=record.payload,
        status=record.status,
        attempts=record.attempts,
      )
      .on_conflict_do_nothing(index_elements=[SegmentTask.action_id])
    )
    return await self._execute_rowcount("record_action", stmt) > 0

  async def get_action(self, action_id: str) -> NextActionRecord | None:
    async with self._session_factory() as session:
      row = await session.get(SegmentTask, action_id)
      return None if row is None else self._action_to_record(row)

  async def mark_action(self, action_id: str, *, status: ActionStatus, from_statuses: tuple[ActionStatus, ...], last_error: str | None = None, count_attempt: bool = False) -> int:
    values: dict[str, Any] = {"status": status}
    if last_error is not None:
      values["last_error"] = last_error
    if count_attempt:
      values["attempts"] = SegmentTask.attempts + 1
    stmt = update(SegmentTask).where(SegmentTask.action_id == action_id, SegmentTask.status.in_(from_statuses)).values(**values).execution_options(synchronize_session=False)
    return await self._execute_rowcount("mark_action", stmt)

  async def list_actions(self, course_id: str, *, status: ActionStatus = "queued") -> list[NextActionRecord]:
    async with self._session_factory() as session:
      stmt = select(SegmentTask).where(SegmentTask.course_id == course_id, SegmentTask.status == status).order_by(SegmentTask.created_at.asc(), SegmentTask.segment_index.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self._action_to_record(row) for row in rows]

  # Row mapping

  def _course_to_record(self, row: Course) -> CourseRecord:
    return CourseRecord(
      course_id=row.course_id,
      video_ref=row.video_ref,
      total_segments=row.total_segments,
      segment_duration=row.segment_duration,
      published=row.published,
      title=row.title,
      created_at=row.created_at,
      updated_at=row.updated_at,
    )

  def _segment_to_record(self, row: CourseSegment) -> SegmentRecord:
    return SegmentRecord(
      segment_id=row.segment_id,
      course_id=row.course_id,
      segment_index=row.segment_index,
      start_time=row.start_time,
      end_time=row.end_time,
      status=row.status,  # type: ignore[arg-type]
      title=row.title,
      lease_owner=row.lease_owner,
      lease_started_at=row.lease_started_at,
      retry_count=row.retry_count,
      cumulative_context=row.cumulative_context,
      questions_count=row.questions_count,
      error_message=row.error_message,
      completed_at=row.completed_at,
    )

  def _plan_to_record(self, row: QuestionPlan) -> QuestionPlanRecord:
    return QuestionPlanRecord(
      plan_id=row.plan_id,
      course_id=row.course_id,
      segment_id=row.segment_id,
      question_id=row.question_id,
      archetype=row.archetype,
      target_timestamp=row.target_timestamp,
      status=row.status,  # type: ignore[arg-type]
      payload=dict(row.payload or {}),
      error_message=row.error_message,
    )

  def _progress_to_record(self, row: GenerationProgress) -> ProgressRecord:
    return ProgressRecord(
      course_id=row.course_id,
      session_id=row.session_id,
      stage=row.stage,  # type: ignore[arg-type]
      current_step=row.current_step,
      stage_progress=row.stage_progress,
      overall_progress=row.overall_progress,
      metadata=row.metadata_json,
      updated_at=row.updated_at,
    )

  def _action_to_record(self, row: SegmentTask) -> NextActionRecord:
    return NextActionRecord(
      action_id=row.action_id,
      course_id=row.course_id,
      segment_id=row.segment_id,
      segment_index=row.segment_index,
      payload=dict(row.payload or {}),
      status=row.status,  # type: ignore[arg-type]
      attempts=row.attempts,
      last_error=row.last_error,
      created_at=row.created_at,
    )

from __future__ import annotations

import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class Course(Base):
  __tablename__ = "courses"

  course_id: Mapped[str] = mapped_column(String, primary_key=True)
  video_ref: Mapped[str] = mapped_column(String, nullable=False)
  title: Mapped[str | None] = mapped_column(String, nullable=True)
  total_segments: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  segment_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
  published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class CourseSegment(Base):
  __tablename__ = "course_segments"
  __table_args__ = (
    UniqueConstraint("course_id", "segment_index", name="ux_course_segments_course_index"),
    Index("ix_course_segments_status_lease", "status", "lease_started_at"),
  )

  segment_id: Mapped[str] = mapped_column(String, primary_key=True)
  course_id: Mapped[str] = mapped_column(ForeignKey("courses.course_id", ondelete="CASCADE"), nullable=False, index=True)
  segment_index: Mapped[int] = mapped_column(Integer, nullable=False)
  start_time: Mapped[float] = mapped_column(Float, nullable=False)
  end_time: Mapped[float] = mapped_column(Float, nullable=False)
  title: Mapped[str | None] = mapped_column(String, nullable=True)
  status: Mapped[str] = mapped_column(String, nullable=False, default="pending", server_default="pending")
  lease_owner: Mapped[str | None] = mapped_column(String, nullable=True)
  lease_started_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  cumulative_context: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  questions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class QuestionPlan(Base):
  __tablename__ = "question_plans"
  __table_args__ = (Index("ix_question_plans_course_status", "course_id", "status"),)

  plan_id: Mapped[str] = mapped_column(String, primary_key=True)
  course_id: Mapped[str] = mapped_column(ForeignKey("courses.course_id", ondelete="CASCADE"), nullable=False)
  segment_id: Mapped[str] = mapped_column(ForeignKey("course_segments.segment_id", ondelete="CASCADE"), nullable=False, index=True)
  question_id: Mapped[str] = mapped_column(String, nullable=False)
  archetype: Mapped[str] = mapped_column(String, nullable=False)
  target_timestamp: Mapped[float] = mapped_column(Float, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, default="planned", server_default="planned")
  payload: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class Question(Base):
  __tablename__ = "questions"

  plan_id: Mapped[str] = mapped_column(ForeignKey("question_plans.plan_id", ondelete="CASCADE"), primary_key=True)
  course_id: Mapped[str] = mapped_column(ForeignKey("courses.course_id", ondelete="CASCADE"), nullable=False, index=True)
  segment_id: Mapped[str] = mapped_column(ForeignKey("course_segments.segment_id", ondelete="CASCADE"), nullable=False, index=True)
  segment_index: Mapped[int] = mapped_column(Integer, nullable=False)
  timestamp: Mapped[int] = mapped_column(Integer, nullable=False)
  archetype: Mapped[str] = mapped_column(String, nullable=False)
  question: Mapped[str] = mapped_column(Text, nullable=False)
  explanation: Mapped[str] = mapped_column(Text, nullable=False, server_default="")
  options: Mapped[list | None] = mapped_column(JSONB, nullable=True)
  correct_answer: Mapped[int | None] = mapped_column(Integer, nullable=True)
  has_visual_asset: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
  frame_timestamp: Mapped[int | None] = mapped_column(Integer, nullable=True)
  metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class QuestionHotspotBox(Base):
  __tablename__ = "question_hotspot_boxes"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  plan_id: Mapped[str] = mapped_column(ForeignKey("questions.plan_id", ondelete="CASCADE"), nullable=False, index=True)
  label: Mapped[str] = mapped_column(String, nullable=False)
  x: Mapped[float] = mapped_column(Float, nullable=False)
  y: Mapped[float] = mapped_column(Float, nullable=False)
  width: Mapped[float] = mapped_column(Float, nullable=False)
  height: Mapped[float] = mapped_column(Float, nullable=False)
  is_correct_answer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
  confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.9, server_default="0.9")


class GenerationProgress(Base):
  __tablename__ = "generation_progress"
  __table_args__ = (UniqueConstraint("course_id", "session_id", name="ux_generation_progress_course_session"),)

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  course_id: Mapped[str] = mapped_column(ForeignKey("courses.course_id", ondelete="CASCADE"), nullable=False, index=True)
  session_id: Mapped[str] = mapped_column(String, nullable=False)
  stage: Mapped[str] = mapped_column(String, nullable=False)
  current_step: Mapped[str] = mapped_column(Text, nullable=False)
  stage_progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
  overall_progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
  metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class SegmentTask(Base):
  __tablename__ = "segment_tasks"
  __table_args__ = (Index("ix_segment_tasks_course_status", "course_id", "status"),)

  action_id: Mapped[str] = mapped_column(String, primary_key=True)
  course_id: Mapped[str] = mapped_column(ForeignKey("courses.course_id", ondelete="CASCADE"), nullable=False)
  segment_id: Mapped[str] = mapped_column(ForeignKey("course_segments.segment_id", ondelete="CASCADE"), nullable=False, index=True)
  segment_index: Mapped[int] = mapped_column(Integer, nullable=False)
  payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, default="queued", server_default="queued")
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

"""Storage interface for segmented course processing.

Every mutation of a shared row is a single-row conditional update guarded by a
status predicate and returns the number of affected rows. Callers treat ``0`` as
"someone else got there first" rather than as an error.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from app.pipeline.models import ActionStatus, CourseRecord, GeneratedQuestionRecord, HotspotBoxRecord, NextActionRecord, PlanStatus, ProgressRecord, QuestionPlanRecord, SegmentRecord


class PipelineRepository(Protocol):
  """Repository contract for courses, segments, plans, questions and hand-offs."""

  # Courses

  async def create_course(self, record: CourseRecord) -> None:
    """Persist a new course row."""

  async def get_course(self, course_id: str) -> CourseRecord | None:
    """Fetch a course by identifier."""

  async def update_course(self, course_id: str, *, total_segments: int | None = None, segment_duration: int | None = None, title: str | None = None) -> CourseRecord | None:
    """Apply partial updates to a course."""

  async def publish_course(self, course_id: str) -> int:
    """Flip `published` to true where it is still false."""

  # Segments

  async def create_segments(self, records: list[SegmentRecord]) -> None:
    """Insert the decomposed segments of a course."""

  async def get_segment(self, segment_id: str) -> SegmentRecord | None:
    """Fetch a segment by identifier."""

  async def get_segment_by_index(self, course_id: str, segment_index: int) -> SegmentRecord | None:
    """Fetch a segment by its position in the course."""

  async def list_segments(self, course_id: str) -> list[SegmentRecord]:
    """List a course's segments ordered by index."""

  async def claim_segment(self, segment_id: str, *, worker_id: str, now: datetime, stale_before: datetime) -> int:
    """Take the lease when pending, failed, or processing with a lease older than `stale_before`."""

  async def renew_segment_lease(self, segment_id: str, *, worker_id: str, now: datetime) -> int:
    """Refresh `lease_started_at` while `worker_id` still owns a processing segment."""

  async def release_segment(self, segment_id: str, *, worker_id: str) -> int:
    """Return an owned processing segment to pending and clear the lease."""

  async def complete_segment(self, segment_id: str, *, worker_id: str, cumulative_context: dict[str, Any] | None, questions_count: int, note: str | None, now: datetime) -> int:
    """Mark an owned processing segment completed."""

  async def fail_segment(self, segment_id: str, *, worker_id: str, error_message: str, now: datetime) -> int:
    """Mark an owned processing segment failed and increment `retry_count`."""

  async def expire_stale_segment(self, segment_id: str, *, stale_before: datetime, error_message: str) -> int:
    """Mark a processing segment failed when its lease is older than `stale_before`."""

  # Question plans

  async def upsert_plans(self, records: list[QuestionPlanRecord]) -> None:
    """Insert plans that do not exist yet; existing rows keep their status."""

  async def list_plans(self, segment_id: str) -> list[QuestionPlanRecord]:
    """List the plans of a segment."""

  async def transition_plan(self, plan_id: str, *, to_status: PlanStatus, from_statuses: tuple[PlanStatus, ...], payload: dict[str, Any] | None = None, error_message: str | None = None) -> int:
    """Move a plan forward when its current status is one of `from_statuses`."""

  async def supersede_plans(self, segment_id: str, *, keep_plan_ids: tuple[str, ...], error_message: str) -> int:
    """Fail the segment's unfailed plans outside `keep_plan_ids` and delete their questions."""

  async def count_plans_by_status(self, course_id: str) -> dict[str, int]:
    """Return plan counts per status across the course."""

  # Questions

  async def upsert_question(self, record: GeneratedQuestionRecord) -> None:
    """Insert or overwrite the question for `record.plan_id`."""

  async def replace_hotspot_boxes(self, plan_id: str, boxes: list[HotspotBoxRecord]) -> None:
    """Replace the bounding-box sub-records of a hotspot question."""

  async def count_questions(self, course_id: str, *, segment_id: str | None = None) -> int:
    """Count persisted questions for a course or one of its segments."""

  # Progress

  async def upsert_progress(self, record: ProgressRecord) -> None:
    """Insert or update the progress row for (course_id, session_id)."""

  async def get_progress(self, course_id: str, session_id: str) -> ProgressRecord | None:
    """Fetch one progress row."""

  async def latest_progress(self, course_id: str) -> ProgressRecord | None:
    """Fetch the most recently updated progress row of a course."""

  # Hand-offs

  async def record_action(self, record: NextActionRecord) -> bool:
    """Insert a hand-off; return False when the action id already exists."""

  async def get_action(self, action_id: str) -> NextActionRecord | None:
    """Fetch a hand-off by identifier."""

  async def mark_action(self, action_id: str, *, status: ActionStatus, from_statuses: tuple[ActionStatus, ...], last_error: str | None = None, count_attempt: bool = False) -> int:
    """Move a hand-off to `status` when it is currently in `from_statuses`."""

  async def list_actions(self, course_id: str, *, status: ActionStatus = "queued") -> list[NextActionRecord]:
    """List hand-offs of a course in creation order."""

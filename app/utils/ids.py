"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_course_id() -> str:
  """Return a new course identifier."""
  return str(uuid.uuid4())


def generate_segment_id() -> str:
  """Return a new segment identifier."""
  return str(uuid.uuid4())


def generate_worker_id(prefix: str = "worker") -> str:
  """Return a unique lease owner id for one segment processing attempt."""
  return f"{prefix}-{uuid.uuid4().hex[:12]}"


def plan_record_id(segment_id: str, question_id: str) -> str:
  """Return the stable plan row id so re-runs upsert instead of duplicating."""
  return f"{segment_id}:{question_id}"


def next_action_id(segment_id: str, source_key: str) -> str:
  """Return the stable hand-off id for dispatching a segment from a given source."""
  return f"{segment_id}:{source_key}"

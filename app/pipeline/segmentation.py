"""Decompose a course video into ordered, contiguous segments."""

from __future__ import annotations

import math
from dataclasses import dataclass

from app.pipeline.contracts import TimeRange
from app.pipeline.models import SegmentRecord
from app.utils.ids import generate_segment_id
from app.utils.timestamps import format_seconds


@dataclass(frozen=True)
class SegmentLayout:
  index: int
  time_range: TimeRange
  expected_questions: int

  @property
  def title(self) -> str:
    return f"Part {self.index + 1}: {format_seconds(self.time_range.start)} - {format_seconds(self.time_range.end)}"


def plan_segments(total_duration: float, *, segment_duration: int = 300, min_tail_seconds: int = 20, max_questions_per_segment: int = 5) -> list[SegmentLayout]:
  """
  Slice `[0, total_duration)` into fixed windows.

  A trailing window shorter than `min_tail_seconds` is folded into its
  predecessor so no segment is too short to plan questions for.
  """
  if total_duration <= 0:
    raise ValueError("Video duration must be positive.")
  if segment_duration <= 0:
    raise ValueError("Segment duration must be positive.")

  count = math.ceil(total_duration / segment_duration)
  bounds = [[index * segment_duration, min((index + 1) * segment_duration, total_duration)] for index in range(count)]
  if len(bounds) > 1 and bounds[-1][1] - bounds[-1][0] < min_tail_seconds:
    bounds.pop()
    bounds[-1][1] = total_duration

  layouts = []
  for index, (start, end) in enumerate(bounds):
    expected = min(math.ceil((end - start) / 60), max_questions_per_segment)
    layouts.append(SegmentLayout(index=index, time_range=TimeRange(start=start, end=end), expected_questions=expected))
  return layouts


def build_segment_records(course_id: str, layouts: list[SegmentLayout]) -> list[SegmentRecord]:
  return [
    SegmentRecord(
      segment_id=generate_segment_id(),
      course_id=course_id,
      segment_index=layout.index,
      start_time=layout.time_range.start,
      end_time=layout.time_range.end,
      title=layout.title,
    )
    for layout in layouts
  ]

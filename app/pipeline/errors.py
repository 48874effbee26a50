"""Error taxonomy for the segment pipeline.

Segment-level errors (`ProviderError`, `SegmentIntegrityError`) fail the whole
segment. Plan-level errors (`GenerationError`, `StorageError`) are recorded on the
plan and never abort sibling work. `DependencyNotReadyError` is retriable and never
fails anything.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
  """Base class for expected pipeline failures."""


class ClaimConflict(PipelineError):
  """Raised by callers that need an exception when a claim is refused."""

  def __init__(self, segment_id: str, reason: str) -> None:
    super().__init__(f"Segment {segment_id} could not be claimed: {reason}")
    self.segment_id = segment_id
    self.reason = reason


class DependencyNotReadyError(PipelineError):
  """The predecessor segment has not completed yet."""

  def __init__(self, segment_index: int, predecessor_status: str) -> None:
    super().__init__(f"Segment {segment_index - 1} is {predecessor_status}; segment {segment_index} cannot start planning.")
    self.segment_index = segment_index
    self.predecessor_status = predecessor_status


class ProviderError(PipelineError):
  """The content-analysis provider failed or returned unusable output."""


class SegmentIntegrityError(PipelineError):
  """The stored course/segment rows are inconsistent (e.g. missing predecessor)."""


class GenerationError(PipelineError):
  """One archetype generator failed for one plan."""

  def __init__(self, question_id: str, message: str) -> None:
    super().__init__(message)
    self.question_id = question_id


class StorageError(PipelineError):
  """Persisting one artifact failed."""

  def __init__(self, question_id: str, message: str) -> None:
    super().__init__(message)
    self.question_id = question_id


class LeaseLostError(PipelineError):
  """The worker no longer owns the segment lease."""

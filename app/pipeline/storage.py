"""Idempotent persistence of generated question artifacts."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from app.pipeline.contracts import VISUAL_ARCHETYPES, ChoiceArtifact, HotspotArtifact, MatchingArtifact, QuestionArtifact, SequencingArtifact, TrueFalseArtifact
from app.pipeline.errors import StorageError
from app.pipeline.generation import bounded_gather
from app.pipeline.models import GeneratedQuestionRecord, HotspotBoxRecord, SegmentRecord
from app.storage.pipeline_repo import PipelineRepository
from app.utils.ids import plan_record_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageOutcome:
  plan_id: str
  artifact: QuestionArtifact
  error: str | None = None

  @property
  def ok(self) -> bool:
    return self.error is None


def _common_metadata(artifact: QuestionArtifact) -> dict[str, Any]:
  metadata: dict[str, Any] = {}
  if artifact.bloom_level:
    metadata["bloom_level"] = artifact.bloom_level
  if artifact.educational_rationale:
    metadata["educational_rationale"] = artifact.educational_rationale
  if artifact.key_concepts:
    metadata["key_concepts"] = list(artifact.key_concepts)
  return metadata


def to_question_record(artifact: QuestionArtifact, *, segment: SegmentRecord) -> GeneratedQuestionRecord:
  """Map a typed artifact onto the flat `questions` row."""
  options: list[str] | None = None
  correct_answer: int | None
  frame_timestamp: int | None = None
  metadata = _common_metadata(artifact)

  match artifact:
    case ChoiceArtifact():
      options = list(artifact.options)
      correct_answer = artifact.correct_answer
      if artifact.misconception_analysis:
        metadata["misconception_analysis"] = artifact.misconception_analysis
    case TrueFalseArtifact():
      # Answer is stored as the index into ("True", "False").
      correct_answer = 0 if artifact.correct_answer else 1
      if artifact.concept_analysis:
        metadata["concept_analysis"] = artifact.concept_analysis
      if artifact.misconception_addressed:
        metadata["misconception_addressed"] = artifact.misconception_addressed
    case HotspotArtifact():
      correct_answer = 1
      if artifact.frame_timestamp is not None:
        frame_timestamp = int(round(artifact.frame_timestamp))
      metadata.update(
        target_objects=list(artifact.target_objects),
        frame_timestamp=artifact.frame_timestamp,
        question_context=artifact.question_context,
        visual_learning_objective=artifact.visual_learning_objective,
        video_overlay=True,
      )
    case MatchingArtifact():
      correct_answer = 1
      metadata.update(matching_pairs=[pair.model_dump() for pair in artifact.matching_pairs], relationship_type=artifact.relationship_type, video_overlay=True)
    case SequencingArtifact():
      correct_answer = 1
      metadata.update(sequence_items=list(artifact.sequence_items), sequence_type=artifact.sequence_type, video_overlay=True)
    case _:
      raise StorageError(artifact.question_id, f"Unsupported artifact type: {type(artifact).__name__}")

  return GeneratedQuestionRecord(
    plan_id=plan_record_id(segment.segment_id, artifact.question_id),
    course_id=segment.course_id,
    segment_id=segment.segment_id,
    segment_index=segment.segment_index,
    timestamp=int(round(artifact.timestamp)),
    archetype=artifact.archetype,
    question=artifact.question,
    explanation=artifact.explanation,
    options=options,
    correct_answer=correct_answer,
    has_visual_asset=artifact.archetype in VISUAL_ARCHETYPES,
    frame_timestamp=frame_timestamp,
    metadata=metadata or None,
  )


def hotspot_boxes(plan_id: str, artifact: HotspotArtifact) -> list[HotspotBoxRecord]:
  return [
    HotspotBoxRecord(
      plan_id=plan_id,
      label=box.label,
      x=box.x,
      y=box.y,
      width=box.width,
      height=box.height,
      is_correct_answer=box.is_correct_answer,
      confidence_score=box.confidence_score,
    )
    for box in artifact.bounding_boxes
  ]


async def store_one(repo: PipelineRepository, artifact: QuestionArtifact, *, segment: SegmentRecord) -> str:
  """Upsert one artifact and its sub-records; returns the plan id."""
  record = to_question_record(artifact, segment=segment)
  try:
    await repo.upsert_question(record)
  except StorageError:
    raise
  except Exception as exc:  # noqa: BLE001
    raise StorageError(artifact.question_id, f"Failed to persist question: {exc}") from exc

  if isinstance(artifact, HotspotArtifact) and artifact.bounding_boxes:
    # The question row is already durable; box failures are logged only.
    try:
      await repo.replace_hotspot_boxes(record.plan_id, hotspot_boxes(record.plan_id, artifact))
    except Exception:  # noqa: BLE001
      logger.exception("Failed to store %d bounding boxes for %s.", len(artifact.bounding_boxes), record.plan_id)
  return record.plan_id


async def store_all(
  repo: PipelineRepository,
  artifacts: Sequence[QuestionArtifact],
  *,
  segment: SegmentRecord,
  concurrency: int = 8,
  on_finished: Callable[[StorageOutcome], Awaitable[None]] | None = None,
) -> list[StorageOutcome]:
  """Persist artifacts concurrently; a failed upsert only affects its own plan."""

  async def _run(artifact: QuestionArtifact) -> StorageOutcome:
    plan_id = plan_record_id(segment.segment_id, artifact.question_id)
    try:
      await store_one(repo, artifact, segment=segment)
      outcome = StorageOutcome(plan_id=plan_id, artifact=artifact)
    except StorageError as exc:
      logger.warning("Storage failed for %s: %s", plan_id, exc)
      outcome = StorageOutcome(plan_id=plan_id, artifact=artifact, error=str(exc))
    if on_finished is not None:
      await on_finished(outcome)
    return outcome

  return await bounded_gather(artifacts, _run, concurrency=concurrency)

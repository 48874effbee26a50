"""Carry-forward teaching context between consecutive segments."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from app.pipeline.contracts import ConceptMention, ContextDelta, MergedContext, QuestionArtifact, QuestionSummary, TimeRange, VideoTranscript
from app.pipeline.models import SegmentRecord
from app.utils.timestamps import format_seconds

_TOPIC_LIMIT = 100
_SYNOPSIS_CONCEPTS = 5
_SYNOPSIS_LINES = 3
_SYNOPSIS_TEXT_LIMIT = 200
_PROMPT_TRANSCRIPT_LINES = 5


def normalize_label(label: str) -> str:
  """Collapse whitespace and casefold so concept labels compare by meaning."""
  return " ".join(label.split()).casefold()


def question_topic(question: str) -> str:
  """Return the question stem up to its first '?' (inclusive), capped at 100 chars."""
  mark = question.find("?")
  end = min(mark + 1, _TOPIC_LIMIT) if mark > 0 else _TOPIC_LIMIT
  return question[:end].strip()


def _synopsis(transcript: VideoTranscript, trailing_text: list[str]) -> str:
  concepts = ", ".join(item.concept for item in transcript.key_concepts_timeline[:_SYNOPSIS_CONCEPTS])
  recent = " ".join(trailing_text[-_SYNOPSIS_LINES:])[:_SYNOPSIS_TEXT_LIMIT]
  return f"Covered topics: {concepts or 'general content'}. Recent focus: {recent}..."


def extract(segment: SegmentRecord, transcript: VideoTranscript, generated_questions: Sequence[QuestionArtifact], *, window_seconds: int = 120, question_count: int = 3) -> ContextDelta:
  """Derive the context a completed segment hands to its successor."""
  first_timestamp = transcript.full_transcript[0].timestamp if transcript.full_transcript else 0.0
  window_start = max(segment.end_time - window_seconds, first_timestamp)
  trailing = [line for line in transcript.full_transcript if line.timestamp >= window_start]

  concepts = [
    ConceptMention(
      label=item.concept,
      first_mentioned=item.first_mentioned,
      mention_timestamps=sorted({item.first_mentioned, *item.explanation_timestamps}),
    )
    for item in transcript.key_concepts_timeline
  ]

  ordered = sorted(generated_questions, key=lambda artifact: artifact.timestamp)
  summaries = [
    QuestionSummary(archetype=artifact.archetype, topic=question_topic(artifact.question), concepts=list(artifact.key_concepts), timestamp=artifact.timestamp)
    for artifact in ordered[-question_count:]
  ] if question_count > 0 else []

  return ContextDelta(
    segment_index=segment.segment_index,
    trailing_transcript=trailing,
    key_concepts=concepts,
    last_question_summaries=summaries,
    synopsis=_synopsis(transcript, [line.text for line in trailing]),
    segment_end=segment.end_time,
  )


def _merge_concepts(existing: Sequence[ConceptMention], incoming: Sequence[ConceptMention]) -> list[ConceptMention]:
  merged: dict[str, ConceptMention] = {}
  for concept in [*existing, *incoming]:
    key = normalize_label(concept.label)
    if not key:
      continue
    current = merged.get(key)
    if current is None:
      merged[key] = ConceptMention(label=concept.label, first_mentioned=concept.first_mentioned, mention_timestamps=sorted(set(concept.mention_timestamps)))
      continue
    # Earliest mention wins the label as well as the timestamp.
    earliest = current if current.first_mentioned <= concept.first_mentioned else concept
    merged[key] = ConceptMention(
      label=earliest.label,
      first_mentioned=earliest.first_mentioned,
      mention_timestamps=sorted(set(current.mention_timestamps) | set(concept.mention_timestamps)),
    )
  return list(merged.values())


def merge(previous: MergedContext | None, delta: ContextDelta) -> MergedContext:
  """
  Fold one segment's delta into the inherited context.

  Concepts accumulate across the course; the transcript window and question
  summaries are replaced so they stay bounded.
  """
  base = previous or MergedContext()
  return MergedContext(
    segment_index=max(base.segment_index, delta.segment_index),
    trailing_transcript=list(delta.trailing_transcript),
    key_concepts=_merge_concepts(base.key_concepts, delta.key_concepts),
    last_question_summaries=list(delta.last_question_summaries),
    synopsis=delta.synopsis,
    total_processed_duration=max(base.total_processed_duration, delta.segment_end),
  )


def load_context(raw: dict[str, Any] | None) -> MergedContext | None:
  """Rehydrate a stored `cumulative_context` payload."""
  if not raw:
    return None
  return MergedContext.model_validate(raw)


def dump_context(context: MergedContext) -> dict[str, Any]:
  return context.model_dump(mode="json")


def render_context_prompt(context: MergedContext | None, *, segment_index: int, total_segments: int, time_range: TimeRange) -> str:
  """Render the inherited context as the planning prompt preamble."""
  span = f"{format_seconds(time_range.start)} to {format_seconds(time_range.end)}"
  if context is None or context.segment_index < 0:
    return "\n".join(
      [
        "## SEGMENT INFORMATION:",
        f"This is the FIRST segment of a {total_segments}-part video.",
        f"Time range: {span}",
        "",
        "## INSTRUCTIONS:",
        "- This is the beginning of the course, so introduce concepts clearly",
        "- Don't assume prior knowledge beyond general prerequisites",
        "- Generate questions that establish foundational understanding",
      ]
    )

  concept_lines = [f"- {concept.label} (introduced at {format_seconds(concept.first_mentioned)})" for concept in context.key_concepts]
  transcript_lines = [f"[{format_seconds(line.timestamp)}] {line.text}" for line in context.trailing_transcript[-_PROMPT_TRANSCRIPT_LINES:]]
  question_lines = [f"- {summary.archetype} at {format_seconds(summary.timestamp)}: {summary.topic}" for summary in context.last_question_summaries]
  return "\n".join(
    [
      "## PREVIOUS SEGMENT CONTEXT",
      "",
      f"This is segment {segment_index + 1} of {total_segments}.",
      f"The learner has already watched {format_seconds(context.total_processed_duration)} of content.",
      "",
      "### Summary of Previous Segment:",
      context.synopsis,
      "",
      "### Key Concepts Already Introduced:",
      *(concept_lines or ["- (none recorded)"]),
      "",
      "### Last Few Transcript Lines from Previous Part:",
      *(transcript_lines or ["(none)"]),
      "",
      "### Recent Questions Asked:",
      *(question_lines or ["- (none)"]),
      "",
      "## CURRENT SEGMENT:",
      f"Time range: {span}",
      "",
      "## INSTRUCTIONS FOR CONTINUITY:",
      "1. Assume learners have understood the concepts listed above",
      "2. Reference previous concepts when relevant but focus on NEW content in this segment",
      "3. Build upon previous knowledge; questions can require understanding from earlier segments",
      "4. Avoid re-introducing basic concepts already covered",
    ]
  )

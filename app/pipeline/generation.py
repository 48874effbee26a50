"""Bounded, failure-isolated question generation for one segment."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Protocol, TypeVar

from app.pipeline.contracts import GenerationRequest, QuestionArtifact, QuestionPlan, TranscriptContext, TranscriptLine, VideoTranscript
from app.pipeline.errors import GenerationError
from app.utils.timestamps import format_seconds

T = TypeVar("T")
R = TypeVar("R")

logger = logging.getLogger(__name__)

# Lines without an end timestamp are assumed to last this long.
_DEFAULT_LINE_SECONDS = 5.0


class ArchetypeGenerator(Protocol):
  """Produces one question artifact from one plan."""

  async def generate(self, request: GenerationRequest) -> QuestionArtifact:
    """Generate the artifact or raise."""


class GeneratorRegistry:
  """Registry mapping archetype tags to generators."""

  def __init__(self, handlers: dict[str, ArchetypeGenerator]) -> None:
    self._handlers = dict(handlers)

  def resolve(self, archetype: str) -> ArchetypeGenerator:
    """Resolve the generator for an archetype."""
    handler = self._handlers.get(archetype)
    if handler is None:
      raise ValueError(f"Unsupported archetype: {archetype}")
    return handler

  @property
  def archetypes(self) -> tuple[str, ...]:
    return tuple(self._handlers)


@dataclass(frozen=True)
class GenerationOutcome:
  plan: QuestionPlan
  artifact: QuestionArtifact | None = None
  error: str | None = None

  @property
  def ok(self) -> bool:
    return self.artifact is not None


def _line_end(lines: Sequence[TranscriptLine], index: int) -> float:
  line = lines[index]
  if line.end_timestamp is not None:
    return line.end_timestamp
  if index + 1 < len(lines):
    return lines[index + 1].timestamp
  return line.timestamp + _DEFAULT_LINE_SECONDS


def _format_window(lines: Sequence[TranscriptLine]) -> str:
  if not lines:
    return "No transcript context available for this timestamp."
  blocks = []
  for line in lines:
    span = format_seconds(line.timestamp)
    if line.end_timestamp is not None:
      span = f"{span} - {format_seconds(line.end_timestamp)}"
    block = [f"[{span}]:", f"Text: {line.text}"]
    if line.visual_description:
      block.append(f"Visual: {line.visual_description}")
    if line.is_salient_event:
      block.append(f"[SALIENT EVENT: {line.event_type or 'Key moment'}]")
    blocks.append("\n".join(block))
  return "Transcript lines with timestamps:\n\n" + "\n\n".join(blocks)


def build_transcript_context(transcript: VideoTranscript, target: float, *, window_seconds: float = 30.0) -> TranscriptContext:
  """Collect the transcript lines and concepts within `window_seconds` of `target`."""
  start = max(0.0, target - window_seconds)
  end = target + window_seconds
  lines = transcript.full_transcript

  window: list[TranscriptLine] = []
  at_target: TranscriptLine | None = None
  for index, line in enumerate(lines):
    line_end = _line_end(lines, index)
    if line.timestamp <= end and line_end >= start:
      window.append(line)
    if at_target is None and line.timestamp <= target < line_end:
      at_target = line

  nearby = [
    concept.concept
    for concept in transcript.key_concepts_timeline
    if start <= concept.first_mentioned <= end or any(start <= ts <= end for ts in concept.explanation_timestamps)
  ]

  return TranscriptContext(
    lines=window,
    nearby_concepts=nearby,
    visual_context=at_target.visual_description if at_target is not None else None,
    is_salient_moment=bool(at_target and at_target.is_salient_event),
    formatted=_format_window(window),
  )


async def bounded_gather(items: Sequence[T], worker: Callable[[T], Awaitable[R]], *, concurrency: int) -> list[R]:
  """Run `worker` over `items` with at most `concurrency` in flight; results keep input order."""
  semaphore = asyncio.Semaphore(max(1, concurrency))

  async def _guarded(item: T) -> R:
    async with semaphore:
      return await worker(item)

  return list(await asyncio.gather(*(_guarded(item) for item in items)))


async def generate_one(plan: QuestionPlan, *, registry: GeneratorRegistry, transcript: VideoTranscript, video_ref: str, window_seconds: float = 30.0) -> QuestionArtifact:
  """Generate one artifact, raising `GenerationError` on any failure."""
  question_id = plan.question_id or ""
  try:
    generator = registry.resolve(plan.archetype)
  except ValueError as exc:
    raise GenerationError(question_id, str(exc)) from exc

  request = GenerationRequest(plan=plan, transcript_context=build_transcript_context(transcript, plan.timestamp, window_seconds=window_seconds), video_ref=video_ref)
  try:
    artifact = await generator.generate(request)
  except GenerationError:
    raise
  except Exception as exc:  # noqa: BLE001
    raise GenerationError(question_id, f"{plan.archetype} generator failed: {exc}") from exc

  if artifact.archetype != plan.archetype:
    raise GenerationError(question_id, f"Generator returned {artifact.archetype} for a {plan.archetype} plan")
  # The plan owns identity and placement.
  return artifact.model_copy(update={"question_id": question_id, "timestamp": plan.timestamp})


async def generate_all(
  plans: Sequence[QuestionPlan],
  *,
  registry: GeneratorRegistry,
  transcript: VideoTranscript,
  video_ref: str,
  concurrency: int = 8,
  window_seconds: float = 30.0,
  on_started: Callable[[QuestionPlan], Awaitable[None]] | None = None,
  on_finished: Callable[[GenerationOutcome], Awaitable[None]] | None = None,
) -> list[GenerationOutcome]:
  """Fan out generation; one plan's failure never affects its siblings."""

  async def _run(plan: QuestionPlan) -> GenerationOutcome:
    if on_started is not None:
      await on_started(plan)
    try:
      artifact = await generate_one(plan, registry=registry, transcript=transcript, video_ref=video_ref, window_seconds=window_seconds)
      outcome = GenerationOutcome(plan=plan, artifact=artifact)
    except GenerationError as exc:
      logger.warning("Generation failed for %s: %s", plan.question_id, exc)
      outcome = GenerationOutcome(plan=plan, error=str(exc))
    if on_finished is not None:
      await on_finished(outcome)
    return outcome

  return await bounded_gather(plans, _run, concurrency=concurrency)

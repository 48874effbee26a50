"""Plan validation, ranking and id assignment for one segment."""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import ValidationError

from app.pipeline.contracts import BLOOM_LEVELS, QUESTION_PLAN_ADAPTER, SUPPORTED_ARCHETYPES, AnalysisRequest, AnalysisResult, QuestionPlan, TimeRange, VideoTranscript
from app.utils.timestamps import normalize_clock_fields

logger = logging.getLogger(__name__)


class ContentAnalyzer(Protocol):
  """Produces the transcript and raw plan drafts for one segment."""

  async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
    """Analyze the segment or raise `ProviderError`."""


@dataclass
class PlanningOutcome:
  plans: list[QuestionPlan] = field(default_factory=list)
  discarded: list[str] = field(default_factory=list)


def max_plans_for(duration_seconds: float, max_questions: int) -> int:
  """One question per started minute, capped per segment."""
  if duration_seconds <= 0:
    return 0
  return min(math.ceil(duration_seconds / 60), max_questions)


def score_plan(plan: QuestionPlan) -> int:
  """Deterministic educational-value score used when drafts exceed the budget."""
  score = (BLOOM_LEVELS.index(plan.bloom_level) + 1) * 2
  score += 3 if len(plan.educational_rationale) > 50 else 1
  objective = plan.learning_objective
  score += 3 if "will" in objective and len(objective) > 30 else 1
  score += 1 if plan.archetype == "multiple-choice" else 2
  return score


def _draft_label(index: int, draft: Any) -> str:
  if isinstance(draft, dict) and draft.get("question_id"):
    return str(draft["question_id"])
  return f"draft[{index}]"


def normalize_draft(draft: dict[str, Any]) -> dict[str, Any]:
  """Map a raw provider draft onto plan fields, with its timestamps in seconds."""
  normalized = normalize_clock_fields(draft, "timestamp", "frame_timestamp")
  # Providers sometimes tag plans with `question_type` instead of `archetype`.
  if "archetype" not in normalized and "question_type" in normalized:
    normalized["archetype"] = normalized.pop("question_type")
  return normalized


def validate_drafts(drafts: Sequence[Any], *, time_range: TimeRange, transcript: VideoTranscript | None = None) -> PlanningOutcome:
  """Keep the drafts that parse as a supported archetype and sit inside the segment."""
  outcome = PlanningOutcome()
  last_timestamp = transcript.last_timestamp() if transcript is not None else None

  for index, draft in enumerate(drafts):
    label = _draft_label(index, draft)
    if not isinstance(draft, dict):
      logger.warning("Discarding plan %s: not an object.", label)
      outcome.discarded.append(label)
      continue

    try:
      normalized = normalize_draft(draft)
    except (TypeError, ValueError) as exc:
      logger.warning("Discarding plan %s: %s", label, exc)
      outcome.discarded.append(label)
      continue

    archetype = normalized.get("archetype")
    if archetype not in SUPPORTED_ARCHETYPES:
      logger.warning("Discarding plan %s: unsupported archetype %r.", label, archetype)
      outcome.discarded.append(label)
      continue

    try:
      plan = QUESTION_PLAN_ADAPTER.validate_python(normalized)
    except ValidationError as exc:
      logger.warning("Discarding plan %s: %d validation error(s): %s", label, exc.error_count(), exc.errors(include_url=False)[:3])
      outcome.discarded.append(label)
      continue

    if plan.timestamp < time_range.start or plan.timestamp > time_range.end:
      logger.warning("Discarding plan %s: timestamp %.1fs outside segment %.1f-%.1f.", label, plan.timestamp, time_range.start, time_range.end)
      outcome.discarded.append(label)
      continue
    if last_timestamp is not None and plan.timestamp > last_timestamp:
      logger.warning("Discarding plan %s: timestamp %.1fs exceeds transcript end %.1fs.", label, plan.timestamp, last_timestamp)
      outcome.discarded.append(label)
      continue

    outcome.plans.append(plan)

  return outcome


def rank_and_truncate(plans: Sequence[QuestionPlan], max_plans: int) -> list[QuestionPlan]:
  """Keep the top `max_plans` by score; `sorted` is stable so ties keep input order."""
  if len(plans) <= max_plans:
    return list(plans)
  logger.info("Limiting plans from %d to %d by educational value.", len(plans), max_plans)
  return sorted(plans, key=score_plan, reverse=True)[:max_plans]


def stable_question_id(index: int, plan: QuestionPlan) -> str:
  return f"q{index + 1}_{plan.archetype}_{int(round(plan.timestamp))}"


def assign_ids(plans: Sequence[QuestionPlan]) -> list[QuestionPlan]:
  """Sort by target timestamp and give each plan a deterministic id."""
  ordered = sorted(plans, key=lambda plan: plan.timestamp)
  return [plan.model_copy(update={"question_id": stable_question_id(index, plan)}) for index, plan in enumerate(ordered)]


def build_plans(drafts: Sequence[Any], *, time_range: TimeRange, max_plans: int, transcript: VideoTranscript | None = None) -> PlanningOutcome:
  """Validate, rank, truncate, order and id the provider's drafts."""
  outcome = validate_drafts(drafts, time_range=time_range, transcript=transcript)
  if outcome.discarded:
    logger.info("Discarded %d of %d plan drafts.", len(outcome.discarded), len(drafts))
  outcome.plans = assign_ids(rank_and_truncate(outcome.plans, max_plans))
  return outcome

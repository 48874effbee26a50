"""Prompt rendering for content analysis and question generation."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path

from app.pipeline.context import render_context_prompt
from app.pipeline.contracts import SUPPORTED_ARCHETYPES, AnalysisRequest, GenerationRequest, HotspotPlan
from app.utils.timestamps import format_seconds

_ARCHETYPE_LABELS = {"multiple-choice": "multiple-choice", "true-false": "true/false", "hotspot": "hotspot", "matching": "matching", "sequencing": "sequencing"}

_ARCHETYPE_RULES = {
  "multiple-choice": "\n".join(
    [
      "Multiple-choice rules:",
      "- Give exactly 4 options and set `correct_answer` to the 0-based index of the right one.",
      "- Each distractor reflects a plausible misconception; explain each in `misconception_analysis`.",
      "- Avoid 'all of the above' and 'none of the above'.",
    ]
  ),
  "true-false": "\n".join(["True/false rules:", "- Write `question` as a single statement that is clearly true or clearly false.", "- Name the misconception a false statement targets in `misconception_addressed`."]),
  "matching": "\n".join(["Matching rules:", "- Give 3 to 5 `matching_pairs` with distinct left and right items.", "- Every pair reflects a relationship the video states."]),
  "sequencing": "\n".join(["Sequencing rules:", "- Give 3 to 6 `sequence_items`, each with its correct 1-based `position`.", "- The order follows a process or chronology the video presents."]),
}


@lru_cache(maxsize=16)
def _load_prompt(name: str) -> str:
  try:
    path = Path(__file__).parent / "prompts" / name
    return path.read_text(encoding="utf-8").strip()
  except (FileNotFoundError, PermissionError, UnicodeDecodeError) as exc:
    raise RuntimeError(f"Failed to load prompt '{name}': {exc}") from exc


def _replace_placeholders(template: str, values: dict[str, str]) -> str:
  """Substitute {{PLACEHOLDER}} markers."""
  rendered = template
  for key, value in values.items():
    rendered = rendered.replace(f"{{{{{key}}}}}", value)
  return rendered


def _format_range(start: float, end: float) -> str:
  return f"{format_seconds(start)} - {format_seconds(end)}"


def render_planning_prompt(request: AnalysisRequest) -> str:
  time_range = request.time_range
  context = render_context_prompt(request.inherited_context, segment_index=request.segment_index, total_segments=request.total_segments, time_range=time_range)
  values = {"TIME_RANGE": _format_range(time_range.start, time_range.end), "CONTEXT": context, "MAX_PLANS": str(request.max_plans), "ARCHETYPES": ", ".join(SUPPORTED_ARCHETYPES)}
  return _replace_placeholders(_load_prompt("planning.md"), values)


def render_question_prompt(request: GenerationRequest) -> str:
  plan = request.plan
  values = {
    "ARCHETYPE_LABEL": _ARCHETYPE_LABELS[plan.archetype],
    "TIMESTAMP": format_seconds(plan.timestamp),
    "PLAN_JSON": json.dumps(plan.model_dump(mode="json", exclude={"planning_notes"}), indent=2, ensure_ascii=True),
    "TRANSCRIPT_CONTEXT": request.transcript_context.formatted,
    "ARCHETYPE_RULES": _ARCHETYPE_RULES.get(plan.archetype, ""),
  }
  return _replace_placeholders(_load_prompt("question.md"), values)


def render_hotspot_prompt(plan: HotspotPlan, frame_timestamp: float) -> str:
  values = {"TIMESTAMP": format_seconds(frame_timestamp), "QUESTION": plan.question_context, "TARGET_OBJECTS": ", ".join(plan.target_objects)}
  return _replace_placeholders(_load_prompt("hotspot_boxes.md"), values)

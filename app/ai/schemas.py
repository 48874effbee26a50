"""Response schemas passed to Gemini's JSON mode."""

from __future__ import annotations

from typing import Any

from app.pipeline.contracts import BLOOM_LEVELS, SUPPORTED_ARCHETYPES

JsonSchema = dict[str, Any]

_STRING: JsonSchema = {"type": "string"}
_NUMBER: JsonSchema = {"type": "number"}
# Clock readings from the start of the full video, e.g. "4:05" or "1:02:30".
_CLOCK: JsonSchema = {"type": "string", "description": "M:SS or H:MM:SS from the start of the full video"}
_STRINGS: JsonSchema = {"type": "array", "items": _STRING}


def _object(properties: dict[str, JsonSchema], required: list[str]) -> JsonSchema:
  return {"type": "object", "properties": properties, "required": required}


TRANSCRIPT_LINE_SCHEMA = _object(
  {
    "timestamp": _CLOCK,
    "end_timestamp": _CLOCK,
    "text": _STRING,
    "visual_description": _STRING,
    "is_salient_event": {"type": "boolean"},
    "event_type": _STRING,
  },
  ["timestamp", "text"],
)

KEY_CONCEPT_SCHEMA = _object({"concept": _STRING, "first_mentioned": _CLOCK, "explanation_timestamps": {"type": "array", "items": _CLOCK}}, ["concept", "first_mentioned"])

PLAN_SCHEMA = _object(
  {
    "archetype": {"type": "string", "enum": list(SUPPORTED_ARCHETYPES)},
    "timestamp": _CLOCK,
    "learning_objective": _STRING,
    "content_context": _STRING,
    "key_concepts": _STRINGS,
    "bloom_level": {"type": "string", "enum": list(BLOOM_LEVELS)},
    "educational_rationale": _STRING,
    "difficulty_level": {"type": "string", "enum": ["beginner", "intermediate", "advanced"]},
    "planning_notes": _STRING,
    "visual_learning_objective": _STRING,
    "target_objects": _STRINGS,
    "question_context": _STRING,
    "frame_timestamp": _CLOCK,
  },
  ["archetype", "timestamp", "learning_objective", "content_context", "key_concepts", "bloom_level", "educational_rationale"],
)

ANALYSIS_SCHEMA = _object(
  {
    "full_transcript": {"type": "array", "items": TRANSCRIPT_LINE_SCHEMA},
    "key_concepts_timeline": {"type": "array", "items": KEY_CONCEPT_SCHEMA},
    "video_summary": _STRING,
    "question_plans": {"type": "array", "items": PLAN_SCHEMA},
  },
  ["full_transcript", "key_concepts_timeline", "video_summary", "question_plans"],
)

MULTIPLE_CHOICE_SCHEMA = _object(
  {
    "question": _STRING,
    "options": {**_STRINGS, "description": "Exactly 4 answer options"},
    "correct_answer": {"type": "integer", "description": "Index of the correct option (0-3)"},
    "explanation": _STRING,
    "misconception_analysis": _object({"option_1": _STRING, "option_2": _STRING, "option_3": _STRING}, ["option_1", "option_2", "option_3"]),
    "educational_rationale": _STRING,
  },
  ["question", "options", "correct_answer", "explanation", "educational_rationale"],
)

TRUE_FALSE_SCHEMA = _object(
  {"question": {**_STRING, "description": "The statement to evaluate"}, "correct_answer": {"type": "boolean"}, "explanation": _STRING, "concept_analysis": _STRING, "misconception_addressed": _STRING, "educational_rationale": _STRING},
  ["question", "correct_answer", "explanation"],
)

MATCHING_SCHEMA = _object(
  {
    "question": _STRING,
    "matching_pairs": {"type": "array", "items": _object({"left": _STRING, "right": _STRING}, ["left", "right"]), "description": "3-5 pairs"},
    "explanation": _STRING,
    "relationship_type": _STRING,
    "educational_rationale": _STRING,
  },
  ["question", "matching_pairs", "explanation"],
)

SEQUENCING_SCHEMA = _object(
  {
    "question": _STRING,
    "sequence_items": {"type": "array", "items": _object({"content": _STRING, "position": {"type": "integer", "description": "Correct 1-based position"}}, ["content", "position"]), "description": "3-6 items"},
    "explanation": _STRING,
    "sequence_type": _STRING,
    "educational_rationale": _STRING,
  },
  ["question", "sequence_items", "explanation"],
)

HOTSPOT_BOXES_SCHEMA = _object(
  {"boxes": {"type": "array", "items": _object({"label": _STRING, "box_2d": {"type": "array", "items": _NUMBER, "description": "[y_min, x_min, y_max, x_max] normalized to 0-1000"}}, ["label", "box_2d"])}},
  ["boxes"],
)

GENERATION_SCHEMAS: dict[str, JsonSchema] = {
  "multiple-choice": MULTIPLE_CHOICE_SCHEMA,
  "true-false": TRUE_FALSE_SCHEMA,
  "matching": MATCHING_SCHEMA,
  "sequencing": SEQUENCING_SCHEMA,
}

# Sampling temperature per archetype; hotspot detection runs colder.
GENERATION_TEMPERATURES: dict[str, float] = {"multiple-choice": 0.6, "true-false": 0.5, "matching": 0.6, "sequencing": 0.5, "hotspot": 0.2}

"""LLM-backed archetype generators."""

from __future__ import annotations

import logging
from typing import Any

from app.ai.prompt_builder import render_hotspot_prompt, render_question_prompt
from app.ai.providers.base import AIModel, VideoClip
from app.ai.schemas import GENERATION_SCHEMAS, GENERATION_TEMPERATURES, HOTSPOT_BOXES_SCHEMA
from app.pipeline.contracts import QUESTION_ARTIFACT_ADAPTER, BoundingBox, GenerationRequest, HotspotArtifact, HotspotPlan, QuestionArtifact
from app.pipeline.context import normalize_label
from app.pipeline.generation import GeneratorRegistry
from app.services.youtube import watch_url

logger = logging.getLogger(__name__)

# Provider boxes use [y_min, x_min, y_max, x_max] on a 0-1000 grid.
_BOX_SCALE = 1000.0
_MIN_HOTSPOT_BOXES = 2


def _plan_fields(request: GenerationRequest) -> dict[str, Any]:
  plan = request.plan
  return {"question_id": plan.question_id, "timestamp": plan.timestamp, "archetype": plan.archetype, "bloom_level": plan.bloom_level, "key_concepts": plan.key_concepts}


def _ordered_sequence(items: Any) -> Any:
  """Flatten positioned sequence items into their correct order."""
  if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
    return items
  ordered = sorted(items, key=lambda item: item.get("position", 0))
  return [str(item.get("content", "")).strip() for item in ordered]


class StructuredQuestionGenerator:
  """Writes text-only archetypes from the plan and its transcript window."""

  def __init__(self, model: AIModel, archetype: str) -> None:
    self._model = model
    self._archetype = archetype
    self._schema = GENERATION_SCHEMAS[archetype]

  async def generate(self, request: GenerationRequest) -> QuestionArtifact:
    prompt = render_question_prompt(request)
    response = await self._model.generate_structured(prompt, self._schema, temperature=GENERATION_TEMPERATURES.get(self._archetype))
    payload = dict(response.content)
    if "sequence_items" in payload:
      payload["sequence_items"] = _ordered_sequence(payload["sequence_items"])
    payload.setdefault("educational_rationale", request.plan.educational_rationale)
    payload.update(_plan_fields(request))
    return QUESTION_ARTIFACT_ADAPTER.validate_python(payload)


def to_bounding_box(raw: dict[str, Any], targets: set[str]) -> BoundingBox | None:
  coords = raw.get("box_2d")
  if not isinstance(coords, list) or len(coords) != 4:
    return None
  y_min, x_min, y_max, x_max = (min(max(float(value) / _BOX_SCALE, 0.0), 1.0) for value in coords)
  if x_max <= x_min or y_max <= y_min:
    return None
  label = str(raw.get("label", "")).strip()
  return BoundingBox(label=label, x=x_min, y=y_min, width=x_max - x_min, height=y_max - y_min, is_correct_answer=normalize_label(label) in targets)


class HotspotGenerator:
  """Locates the plan's target objects on the frame the question points at."""

  def __init__(self, model: AIModel) -> None:
    self._model = model

  async def generate(self, request: GenerationRequest) -> QuestionArtifact:
    plan = request.plan
    if not isinstance(plan, HotspotPlan):
      raise ValueError(f"Hotspot generator received a {plan.archetype} plan")

    frame = plan.frame_timestamp if plan.frame_timestamp is not None else plan.timestamp
    clip = VideoClip(uri=watch_url(request.video_ref), start_seconds=frame, end_seconds=frame + 1)
    response = await self._model.generate_structured(render_hotspot_prompt(plan, frame), HOTSPOT_BOXES_SCHEMA, video=clip, temperature=GENERATION_TEMPERATURES["hotspot"])

    targets = {normalize_label(name) for name in plan.target_objects}
    boxes = [box for box in (to_bounding_box(raw, targets) for raw in response.content.get("boxes", []) if isinstance(raw, dict)) if box is not None]
    if len(boxes) < _MIN_HOTSPOT_BOXES:
      raise ValueError(f"Only {len(boxes)} usable bounding boxes detected")
    if not any(box.is_correct_answer for box in boxes):
      raise ValueError("No bounding box matched the target objects")

    logger.info("Hotspot %s: %d boxes at %.1fs.", plan.question_id, len(boxes), frame)
    return HotspotArtifact(
      question_id=plan.question_id or "",
      timestamp=plan.timestamp,
      question=plan.question_context,
      explanation=plan.educational_rationale,
      bloom_level=plan.bloom_level,
      educational_rationale=plan.educational_rationale,
      key_concepts=plan.key_concepts,
      target_objects=plan.target_objects,
      frame_timestamp=frame,
      question_context=plan.question_context,
      visual_learning_objective=plan.visual_learning_objective,
      bounding_boxes=boxes,
    )


def build_registry(model: AIModel) -> GeneratorRegistry:
  """Register a generator for every supported archetype."""
  handlers: dict[str, Any] = {archetype: StructuredQuestionGenerator(model, archetype) for archetype in GENERATION_SCHEMAS}
  handlers["hotspot"] = HotspotGenerator(model)
  return GeneratorRegistry(handlers)

from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.ai.analysis import GeminiContentAnalyzer, parse_analysis
from app.ai.backoff import retry_with_backoff
from app.ai.generators import HotspotGenerator, StructuredQuestionGenerator, build_registry, to_bounding_box
from app.ai.json_parser import parse_json_with_fallback
from app.ai.providers.base import AIModel, SimpleModelResponse, StructuredModelResponse, VideoClip
from app.ai.providers.gemini import GeminiModel, GeminiProvider, build_contents, build_video_part
from app.ai.schemas import ANALYSIS_SCHEMA, HOTSPOT_BOXES_SCHEMA
from app.pipeline.contracts import QUESTION_PLAN_ADAPTER, AnalysisRequest, GenerationRequest, TimeRange, TranscriptContext
from app.pipeline.errors import ProviderError
from app.pipeline.planning import normalize_draft

from tests.conftest import plan_draft


class FakeModel(AIModel):
  """Replays canned structured responses and records every call."""

  def __init__(self, *responses: dict[str, Any] | Exception) -> None:
    self.name = "fake-model"
    self.supports_structured_output = True
    self._responses = list(responses)
    self.calls: list[dict[str, Any]] = []

  async def generate(self, prompt: str, *, video: VideoClip | None = None) -> SimpleModelResponse:
    return SimpleModelResponse(content="")

  async def generate_structured(self, prompt, schema, *, video=None, temperature=None) -> StructuredModelResponse:
    self.calls.append({"prompt": prompt, "schema": schema, "video": video, "temperature": temperature})
    response = self._responses.pop(0)
    if isinstance(response, Exception):
      raise response
    return StructuredModelResponse(content=response)


def _request(draft: dict[str, Any]) -> GenerationRequest:
  plan = QUESTION_PLAN_ADAPTER.validate_python(normalize_draft(draft))
  return GenerationRequest(plan=plan, transcript_context=TranscriptContext(formatted="[0:25]: Text: Chlorophyll absorbs light."), video_ref="abc123def45")


ANALYSIS_PAYLOAD = {
  "full_transcript": [{"timestamp": "0:05", "end_timestamp": "0:20", "text": "Plants capture light.", "visual_description": "A leaf"}],
  "key_concepts_timeline": [{"concept": "Photosynthesis", "first_mentioned": "0:05", "explanation_timestamps": ["0:10"]}],
  "video_summary": "Light capture.",
  "question_plans": [plan_draft(15)],
}


def test_parse_analysis_splits_transcript_and_drafts() -> None:
  result = parse_analysis(ANALYSIS_PAYLOAD)

  assert result.transcript.full_transcript[0].timestamp == 5
  assert result.transcript.key_concepts_timeline[0].explanation_timestamps == [10]
  assert len(result.plan_drafts) == 1


def test_parse_analysis_rejects_malformed_output() -> None:
  with pytest.raises(ProviderError):
    parse_analysis({**ANALYSIS_PAYLOAD, "question_plans": {"not": "a list"}})
  with pytest.raises(ProviderError):
    parse_analysis({**ANALYSIS_PAYLOAD, "full_transcript": [{"timestamp": "whenever", "text": "x"}]})


def test_parse_analysis_tolerates_missing_plans() -> None:
  result = parse_analysis({"full_transcript": [], "video_summary": ""})

  assert result.plan_drafts == []
  assert not result.transcript.has_spoken_content()


@pytest.mark.anyio
async def test_analyzer_sends_the_segment_clip() -> None:
  model = FakeModel(ANALYSIS_PAYLOAD)
  request = AnalysisRequest(video_ref="abc123def45", time_range=TimeRange(start=300, end=600), max_plans=5, segment_index=1, total_segments=3)

  result = await GeminiContentAnalyzer(model).analyze(request)

  [call] = model.calls
  assert call["schema"] is ANALYSIS_SCHEMA
  assert call["temperature"] == 0.2
  assert call["video"] == VideoClip(uri="https://www.youtube.com/watch?v=abc123def45", start_seconds=300, end_seconds=600)
  assert "5:00 - 10:00" in call["prompt"]
  assert "Plan at most 5 questions" in call["prompt"]
  assert "{{" not in call["prompt"]
  assert len(result.plan_drafts) == 1


@pytest.mark.anyio
async def test_analyzer_wraps_model_errors() -> None:
  model = FakeModel(RuntimeError("Gemini request failed: 500"))
  request = AnalysisRequest(video_ref="abc123def45", time_range=TimeRange(start=0, end=300), max_plans=5)

  with pytest.raises(ProviderError, match="segment 0"):
    await GeminiContentAnalyzer(model).analyze(request)


@pytest.mark.anyio
async def test_choice_generator_keeps_plan_identity() -> None:
  model = FakeModel({"question": "What does chlorophyll absorb?", "options": ["Light", "Water", "Soil", "Air"], "correct_answer": 0, "explanation": "It absorbs light.", "question_id": "ignored"})

  artifact = await StructuredQuestionGenerator(model, "multiple-choice").generate(_request(plan_draft(30, question_id="q1_multiple-choice_30")))

  assert artifact.archetype == "multiple-choice"
  assert artifact.question_id == "q1_multiple-choice_30"
  assert artifact.timestamp == 30
  assert artifact.bloom_level == "understand"
  assert artifact.educational_rationale.startswith("Checks that learners")
  [call] = model.calls
  assert call["video"] is None
  assert call["temperature"] == 0.6
  assert "Chlorophyll absorbs light." in call["prompt"]


@pytest.mark.anyio
async def test_sequencing_items_are_put_in_order() -> None:
  model = FakeModel({"question": "Order the steps.", "sequence_items": [{"content": "Make sugar", "position": 3}, {"content": "Absorb light", "position": 1}, {"content": "Split water", "position": 2}]})

  artifact = await StructuredQuestionGenerator(model, "sequencing").generate(_request(plan_draft(30, "sequencing", question_id="q1_sequencing_30")))

  assert artifact.sequence_items == ["Absorb light", "Split water", "Make sugar"]


@pytest.mark.anyio
async def test_invalid_generator_output_raises() -> None:
  model = FakeModel({"question": "Pick one", "options": ["only"], "correct_answer": 3})

  with pytest.raises(ValueError):
    await StructuredQuestionGenerator(model, "multiple-choice").generate(_request(plan_draft(30, question_id="q1")))


def _hotspot_request() -> GenerationRequest:
  return _request(plan_draft(60, "hotspot", question_id="q1_hotspot_60", frame_timestamp=65))


@pytest.mark.anyio
async def test_hotspot_boxes_are_normalized() -> None:
  model = FakeModel(
    {
      "boxes": [
        {"label": "Chloroplast", "box_2d": [100, 200, 300, 500]},
        {"label": "nucleus", "box_2d": [400, 400, 600, 600]},
        {"label": "broken", "box_2d": [1, 2, 3]},
      ]
    }
  )

  artifact = await HotspotGenerator(model).generate(_hotspot_request())

  assert artifact.question == "Click the chloroplast."
  assert artifact.frame_timestamp == 65
  assert [box.label for box in artifact.bounding_boxes] == ["Chloroplast", "nucleus"]
  first = artifact.bounding_boxes[0]
  assert (first.x, first.y, first.width, first.height) == pytest.approx((0.2, 0.1, 0.3, 0.2))
  assert [box.is_correct_answer for box in artifact.bounding_boxes] == [True, False]
  [call] = model.calls
  assert call["schema"] is HOTSPOT_BOXES_SCHEMA
  assert call["video"] == VideoClip(uri="https://www.youtube.com/watch?v=abc123def45", start_seconds=65, end_seconds=66)


@pytest.mark.anyio
async def test_hotspot_needs_two_boxes_and_a_target() -> None:
  too_few = FakeModel({"boxes": [{"label": "chloroplast", "box_2d": [100, 100, 200, 200]}]})
  no_target = FakeModel({"boxes": [{"label": "nucleus", "box_2d": [100, 100, 200, 200]}, {"label": "wall", "box_2d": [300, 300, 400, 400]}]})

  with pytest.raises(ValueError, match="usable bounding boxes"):
    await HotspotGenerator(too_few).generate(_hotspot_request())
  with pytest.raises(ValueError, match="matched the target"):
    await HotspotGenerator(no_target).generate(_hotspot_request())


def test_degenerate_boxes_are_dropped() -> None:
  assert to_bounding_box({"label": "x", "box_2d": [500, 500, 400, 600]}, set()) is None
  assert to_bounding_box({"label": "x"}, set()) is None
  clamped = to_bounding_box({"label": "x", "box_2d": [-50, 0, 1200, 1000]}, {"x"})
  assert (clamped.y, clamped.height, clamped.is_correct_answer) == (0.0, 1.0, True)


def test_registry_covers_every_archetype() -> None:
  registry = build_registry(FakeModel())

  assert set(registry.archetypes) == {"multiple-choice", "true-false", "hotspot", "matching", "sequencing"}
  assert isinstance(registry.resolve("hotspot"), HotspotGenerator)


def test_video_part_carries_clip_offsets() -> None:
  part = build_video_part(VideoClip(uri="https://www.youtube.com/watch?v=abc123def45", start_seconds=299.6, end_seconds=600))

  assert part.file_data.file_uri == "https://www.youtube.com/watch?v=abc123def45"
  assert part.video_metadata.start_offset == "300s"
  assert part.video_metadata.end_offset == "600s"


def test_contents_without_video_is_plain_prompt() -> None:
  assert build_contents("hello", None) == "hello"
  [content] = build_contents("hello", VideoClip(uri="u", start_seconds=0, end_seconds=5))
  assert content.parts[1].text == "hello"


def _gemini(text: str) -> tuple[GeminiModel, AsyncMock]:
  generate = AsyncMock(return_value=SimpleNamespace(text=text, usage_metadata=None))
  client = MagicMock()
  client.aio.models.generate_content = generate
  return GeminiModel("gemini-2.5-flash", client=client), generate


@pytest.mark.anyio
async def test_gemini_structured_output_uses_json_mode() -> None:
  model, generate = _gemini('```json\n{"boxes": [],}\n```')

  response = await model.generate_structured("prompt", HOTSPOT_BOXES_SCHEMA, temperature=0.4)

  assert response.content == {"boxes": []}
  config = generate.await_args.kwargs["config"]
  assert config["response_mime_type"] == "application/json"
  assert config["response_schema"] is HOTSPOT_BOXES_SCHEMA
  assert config["temperature"] == 0.4


@pytest.mark.anyio
async def test_gemini_rejects_non_object_json() -> None:
  model, _ = _gemini("[1, 2]")

  with pytest.raises(RuntimeError, match="not an object"):
    await model.generate_structured("prompt", HOTSPOT_BOXES_SCHEMA)


@pytest.mark.anyio
async def test_gemini_wraps_request_errors() -> None:
  model, generate = _gemini("{}")
  generate.side_effect = ConnectionError("reset")

  with pytest.raises(RuntimeError, match="Gemini request failed"):
    await model.generate_structured("prompt", HOTSPOT_BOXES_SCHEMA)


def test_gemini_model_requires_credentials() -> None:
  with pytest.raises(ValueError):
    GeminiModel("gemini-2.5-flash")
  with pytest.raises(ValueError):
    GeminiProvider(api_key="key").get_model("gpt-4")


@pytest.mark.anyio
async def test_backoff_retries_rate_limits_only() -> None:
  flaky = AsyncMock(side_effect=[RuntimeError("429 Too Many Requests"), "ok"])
  broken = AsyncMock(side_effect=RuntimeError("400 Bad Request"))

  assert await retry_with_backoff(flaky, delays=(0,)) == "ok"
  assert flaky.await_count == 2
  with pytest.raises(RuntimeError, match="400"):
    await retry_with_backoff(broken, delays=(0, 0))
  assert broken.await_count == 1


def test_json_fallback_recovers_from_prose() -> None:
  assert parse_json_with_fallback('Here you go: {"a": [1, 2,],} thanks') == {"a": [1, 2]}

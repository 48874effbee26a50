"""Content analysis: transcribe a segment and draft its question plans."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from app.ai.prompt_builder import render_planning_prompt
from app.ai.providers.base import AIModel, VideoClip
from app.ai.schemas import ANALYSIS_SCHEMA
from app.pipeline.contracts import AnalysisRequest, AnalysisResult, VideoTranscript
from app.pipeline.errors import ProviderError
from app.services.youtube import watch_url
from app.utils.timestamps import normalize_clock_fields

logger = logging.getLogger(__name__)

ANALYSIS_TEMPERATURE = 0.2


class GeminiContentAnalyzer:
  """Runs one multimodal request per segment against the clip's time window."""

  def __init__(self, model: AIModel) -> None:
    self._model = model

  async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
    prompt = render_planning_prompt(request)
    clip = VideoClip(uri=watch_url(request.video_ref), start_seconds=request.time_range.start, end_seconds=request.time_range.end)
    logger.info("Analyzing segment %d (%.0fs-%.0fs) with %s.", request.segment_index, clip.start_seconds, clip.end_seconds, self._model.name)

    try:
      response = await self._model.generate_structured(prompt, ANALYSIS_SCHEMA, video=clip, temperature=ANALYSIS_TEMPERATURE)
    except Exception as exc:
      raise ProviderError(f"Content analysis failed for segment {request.segment_index}: {exc}") from exc

    return parse_analysis(response.content)


def normalize_transcript_payload(content: dict[str, Any]) -> dict[str, Any]:
  """Convert the provider's transcript and concept timestamps to seconds."""
  normalized = dict(content)
  lines = content.get("full_transcript")
  if isinstance(lines, list):
    normalized["full_transcript"] = [normalize_clock_fields(line, "timestamp", "end_timestamp") for line in lines]
  concepts = content.get("key_concepts_timeline")
  if isinstance(concepts, list):
    normalized["key_concepts_timeline"] = [normalize_clock_fields(concept, "first_mentioned", "explanation_timestamps") for concept in concepts]
  return normalized


def parse_analysis(content: dict[str, Any]) -> AnalysisResult:
  """Validate the provider payload; malformed output raises `ProviderError`."""
  drafts = content.get("question_plans") or []
  if not isinstance(drafts, list):
    raise ProviderError("Content analysis returned `question_plans` that is not a list.")

  try:
    transcript = VideoTranscript.model_validate(normalize_transcript_payload(content))
  except ValidationError as exc:
    raise ProviderError(f"Content analysis returned a malformed transcript: {exc.error_count()} validation error(s)") from exc
  except (TypeError, ValueError) as exc:
    raise ProviderError(f"Content analysis returned an unreadable timestamp: {exc}") from exc

  return AnalysisResult(transcript=transcript, plan_drafts=drafts)

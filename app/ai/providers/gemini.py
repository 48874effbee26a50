"""Gemini provider implementation using the google-genai SDK."""

from __future__ import annotations

import json
import logging
from typing import Any, Final, cast

from google import genai
from google.genai import types

from app.ai.backoff import retry_with_backoff
from app.ai.json_parser import parse_json_with_fallback
from app.ai.providers.base import AIModel, ModelResponse, SimpleModelResponse, StructuredModelResponse, VideoClip

logger = logging.getLogger("app.ai.providers.gemini")

DEFAULT_TEMPERATURE: Final[float] = 0.2


def _offset(seconds: float) -> str:
  return f"{max(int(round(seconds)), 0)}s"


def build_video_part(video: VideoClip) -> types.Part:
  """Attach a hosted video restricted to the clip's time window."""
  return types.Part(file_data=types.FileData(file_uri=video.uri), video_metadata=types.VideoMetadata(start_offset=_offset(video.start_seconds), end_offset=_offset(video.end_seconds)))


def build_contents(prompt: str, video: VideoClip | None) -> Any:
  if video is None:
    return prompt
  return [types.Content(role="user", parts=[build_video_part(video), types.Part(text=prompt)])]


def _usage(response: Any) -> dict[str, int] | None:
  if not response.usage_metadata:
    return None
  meta = response.usage_metadata
  return {"prompt_tokens": meta.prompt_token_count, "completion_tokens": meta.candidates_token_count, "total_tokens": meta.total_token_count}


class GeminiModel(AIModel):
  """Gemini model client with structured output and video clip support."""

  def __init__(self, name: str, api_key: str | None = None, *, client: Any | None = None) -> None:
    self.name: str = name
    self.supports_structured_output = True
    if client is not None:
      self._client = client
      return
    if not api_key:
      raise ValueError("GEMINI_API_KEY environment variable is required")
    self._client = genai.Client(api_key=api_key)

  async def generate(self, prompt: str, *, video: VideoClip | None = None) -> ModelResponse:
    """Generate a text response from Gemini."""
    response = await retry_with_backoff(self._client.aio.models.generate_content, model=self.name, contents=build_contents(prompt, video))
    logger.debug("Gemini response:\n%s", response.text)
    return SimpleModelResponse(content=response.text or "", usage=_usage(response))

  async def generate_structured(self, prompt: str, schema: dict[str, Any], *, video: VideoClip | None = None, temperature: float | None = None) -> StructuredModelResponse:
    """Generate JSON output using Gemini's JSON mode."""
    config: dict[str, Any] = {"response_mime_type": "application/json", "response_schema": schema, "temperature": DEFAULT_TEMPERATURE if temperature is None else temperature}
    try:
      response = await retry_with_backoff(self._client.aio.models.generate_content, model=self.name, contents=build_contents(prompt, video), config=config)
    except Exception as e:
      raise RuntimeError(f"Gemini request failed: {e}") from e

    logger.debug("Gemini structured response (raw):\n%s", response.text)
    try:
      parsed = cast(dict[str, Any], parse_json_with_fallback(self.strip_json_fences(response.text or "")))
    except json.JSONDecodeError as e:
      raise RuntimeError(f"Gemini returned invalid JSON: {e}") from e
    if not isinstance(parsed, dict):
      raise RuntimeError("Gemini returned JSON that is not an object.")
    return StructuredModelResponse(content=parsed, usage=_usage(response))


class GeminiProvider:
  """Gemini provider."""

  _DEFAULT_MODEL: Final[str] = "gemini-2.5-flash"
  _AVAILABLE_MODELS: Final[set[str]] = {"gemini-2.5-pro", "gemini-2.5-flash", "gemini-2.5-flash-lite", "gemini-2.0-flash"}

  def __init__(self, api_key: str | None = None) -> None:
    self.name: str = "gemini"
    self._api_key = api_key

  def get_model(self, model: str | None = None) -> AIModel:
    """Return a Gemini model client."""
    model_name = model or self._DEFAULT_MODEL
    if model_name not in self._AVAILABLE_MODELS:
      raise ValueError(f"Unsupported Gemini model '{model_name}'.")
    return GeminiModel(model_name, api_key=self._api_key)

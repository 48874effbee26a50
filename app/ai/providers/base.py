"""Base interfaces for AI models."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol


class ModelResponse(Protocol):
  """Response contract for model outputs."""

  content: str
  usage: dict[str, int] | None


@dataclass
class SimpleModelResponse:
  """Minimal model response structure."""

  content: str
  usage: dict[str, int] | None = None


@dataclass
class StructuredModelResponse:
  """Structured model response structure."""

  content: dict[str, Any]
  usage: dict[str, int] | None = None


@dataclass(frozen=True)
class VideoClip:
  """A time slice of a hosted video attached to a prompt."""

  uri: str
  start_seconds: float
  end_seconds: float


class AIModel(ABC):
  """Abstract base class for AI models."""

  name: str
  supports_structured_output: bool = False

  @abstractmethod
  async def generate(self, prompt: str, *, video: VideoClip | None = None) -> ModelResponse:
    """Generate a response for the given prompt."""

  async def generate_structured(self, prompt: str, schema: dict[str, Any], *, video: VideoClip | None = None, temperature: float | None = None) -> StructuredModelResponse:
    """Generate structured output that conforms to the provided JSON schema."""
    raise RuntimeError("Structured output is not supported by this model.")

  @staticmethod
  def strip_json_fences(text: str) -> str:
    """Remove ```json fences some models wrap around JSON output."""
    stripped = text.strip()
    if stripped.startswith("```"):
      stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
      if stripped.rstrip().endswith("```"):
        stripped = stripped.rstrip()[:-3]
    return stripped.strip()

"""Provider implementations."""

from app.ai.providers.base import AIModel, ModelResponse, SimpleModelResponse, StructuredModelResponse, VideoClip
from app.ai.providers.gemini import GeminiModel, GeminiProvider

__all__ = ["AIModel", "ModelResponse", "SimpleModelResponse", "StructuredModelResponse", "VideoClip", "GeminiModel", "GeminiProvider"]

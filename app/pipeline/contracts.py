"""Shared data contracts for the segment pipeline and its providers."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

Archetype = Literal["multiple-choice", "true-false", "hotspot", "matching", "sequencing"]
BloomLevel = Literal["remember", "understand", "apply", "analyze", "evaluate", "create"]

SUPPORTED_ARCHETYPES: tuple[str, ...] = ("multiple-choice", "true-false", "hotspot", "matching", "sequencing")
BLOOM_LEVELS: tuple[str, ...] = ("remember", "understand", "apply", "analyze", "evaluate", "create")
VISUAL_ARCHETYPES: frozenset[str] = frozenset({"hotspot", "matching", "sequencing"})


class TimeRange(BaseModel):
  """Closed-open time slice of the source video, in seconds."""

  start: float = Field(ge=0)
  end: float = Field(ge=0)

  @model_validator(mode="after")
  def _ordered(self) -> TimeRange:
    if self.end < self.start:
      raise ValueError("Time range end must not precede start.")
    return self

  @property
  def duration(self) -> float:
    return self.end - self.start


class TranscriptLine(BaseModel):
  """One timestamped line of the provider transcript."""

  model_config = ConfigDict(extra="ignore")

  timestamp: float
  end_timestamp: float | None = None
  text: str = ""
  visual_description: str = ""
  is_salient_event: bool = False
  event_type: str | None = None


class KeyConcept(BaseModel):
  """A concept the provider saw introduced in the transcript."""

  model_config = ConfigDict(extra="ignore")

  concept: str = Field(min_length=1)
  first_mentioned: float
  explanation_timestamps: list[float] = Field(default_factory=list)

  @field_validator("explanation_timestamps", mode="before")
  @classmethod
  def _default_mentions(cls, value: Any) -> Any:
    if value is None:
      return []
    return value


class VideoTranscript(BaseModel):
  """Transcript and concept timeline for one segment."""

  model_config = ConfigDict(extra="ignore")

  full_transcript: list[TranscriptLine] = Field(default_factory=list)
  key_concepts_timeline: list[KeyConcept] = Field(default_factory=list)
  video_summary: str = ""

  def has_spoken_content(self) -> bool:
    """Return True when at least one transcript line carries non-blank text."""
    return any(line.text.strip() for line in self.full_transcript)

  def last_timestamp(self) -> float | None:
    if not self.full_transcript:
      return None
    last = self.full_transcript[-1]
    return last.end_timestamp or last.timestamp


# Plans ------------------------------------------------------------------------


class BasePlan(BaseModel):
  """Fields every archetype plan carries."""

  model_config = ConfigDict(extra="ignore")

  question_id: str | None = None
  timestamp: float = Field(ge=0)
  learning_objective: str = Field(min_length=1)
  content_context: str = Field(min_length=1)
  key_concepts: list[str] = Field(min_length=1)
  bloom_level: BloomLevel
  educational_rationale: str = Field(min_length=1)
  difficulty_level: Literal["beginner", "intermediate", "advanced"] = "intermediate"
  planning_notes: str = ""

  @field_validator("learning_objective", "content_context", "educational_rationale", mode="before")
  @classmethod
  def _strip_text(cls, value: Any) -> Any:
    if isinstance(value, str):
      return value.strip()
    return value


class ChoicePlan(BasePlan):
  archetype: Literal["multiple-choice"] = "multiple-choice"


class TrueFalsePlan(BasePlan):
  archetype: Literal["true-false"] = "true-false"


class HotspotPlan(BasePlan):
  archetype: Literal["hotspot"] = "hotspot"
  visual_learning_objective: str = Field(min_length=1)
  target_objects: list[str] = Field(min_length=1)
  question_context: str = Field(min_length=1)
  frame_timestamp: float | None = None


class MatchingPlan(BasePlan):
  archetype: Literal["matching"] = "matching"


class SequencingPlan(BasePlan):
  archetype: Literal["sequencing"] = "sequencing"


QuestionPlan = Annotated[ChoicePlan | TrueFalsePlan | HotspotPlan | MatchingPlan | SequencingPlan, Field(discriminator="archetype")]
QUESTION_PLAN_ADAPTER: TypeAdapter[QuestionPlan] = TypeAdapter(QuestionPlan)


# Artifacts --------------------------------------------------------------------


class BaseArtifact(BaseModel):
  """Fields every generated question carries."""

  model_config = ConfigDict(extra="ignore")

  question_id: str
  timestamp: float = Field(ge=0)
  question: str = Field(min_length=1)
  explanation: str = ""
  bloom_level: BloomLevel | None = None
  educational_rationale: str | None = None
  key_concepts: list[str] = Field(default_factory=list)


class ChoiceArtifact(BaseArtifact):
  archetype: Literal["multiple-choice"] = "multiple-choice"
  options: list[str] = Field(min_length=2)
  correct_answer: int = Field(ge=0)
  misconception_analysis: dict[str, str] | None = None

  @model_validator(mode="after")
  def _answer_in_range(self) -> ChoiceArtifact:
    if self.correct_answer >= len(self.options):
      raise ValueError("correct_answer must index into options.")
    return self


class TrueFalseArtifact(BaseArtifact):
  archetype: Literal["true-false"] = "true-false"
  correct_answer: bool
  concept_analysis: str | None = None
  misconception_addressed: str | None = None

  @field_validator("correct_answer", mode="before")
  @classmethod
  def _coerce_answer(cls, value: Any) -> Any:
    # Older generator prompts answer with "true"/"false" strings.
    if isinstance(value, str):
      return value.strip().lower() == "true"
    return value


class BoundingBox(BaseModel):
  label: str
  x: float
  y: float
  width: float = Field(gt=0)
  height: float = Field(gt=0)
  is_correct_answer: bool = False
  confidence_score: float = Field(default=0.9, ge=0, le=1)


class HotspotArtifact(BaseArtifact):
  archetype: Literal["hotspot"] = "hotspot"
  target_objects: list[str] = Field(min_length=1)
  frame_timestamp: float | None = None
  question_context: str | None = None
  visual_learning_objective: str | None = None
  bounding_boxes: list[BoundingBox] = Field(default_factory=list)


class MatchingPair(BaseModel):
  left: str = Field(min_length=1)
  right: str = Field(min_length=1)


class MatchingArtifact(BaseArtifact):
  archetype: Literal["matching"] = "matching"
  matching_pairs: list[MatchingPair] = Field(min_length=2)
  relationship_type: str | None = None


class SequencingArtifact(BaseArtifact):
  archetype: Literal["sequencing"] = "sequencing"
  sequence_items: list[str] = Field(min_length=2)
  sequence_type: str | None = None


QuestionArtifact = Annotated[ChoiceArtifact | TrueFalseArtifact | HotspotArtifact | MatchingArtifact | SequencingArtifact, Field(discriminator="archetype")]
QUESTION_ARTIFACT_ADAPTER: TypeAdapter[QuestionArtifact] = TypeAdapter(QuestionArtifact)


# Context ----------------------------------------------------------------------


class ConceptMention(BaseModel):
  """A concept carried across segments."""

  label: str
  first_mentioned: float
  mention_timestamps: list[float] = Field(default_factory=list)


class QuestionSummary(BaseModel):
  archetype: str
  topic: str
  concepts: list[str] = Field(default_factory=list)
  timestamp: float = 0.0


class ContextDelta(BaseModel):
  """Context extracted from one completed segment."""

  segment_index: int
  trailing_transcript: list[TranscriptLine] = Field(default_factory=list)
  key_concepts: list[ConceptMention] = Field(default_factory=list)
  last_question_summaries: list[QuestionSummary] = Field(default_factory=list)
  synopsis: str = ""
  segment_end: float = 0.0


class MergedContext(BaseModel):
  """Teaching context inherited by the next segment."""

  segment_index: int = -1
  trailing_transcript: list[TranscriptLine] = Field(default_factory=list)
  key_concepts: list[ConceptMention] = Field(default_factory=list)
  last_question_summaries: list[QuestionSummary] = Field(default_factory=list)
  synopsis: str = ""
  total_processed_duration: float = 0.0


# Provider calls ---------------------------------------------------------------


class AnalysisRequest(BaseModel):
  """Input to the content-analysis provider for one segment."""

  video_ref: str
  time_range: TimeRange
  max_plans: int = Field(ge=0)
  inherited_context: MergedContext | None = None
  segment_index: int = 0
  total_segments: int = 1


class AnalysisResult(BaseModel):
  """Provider output before plan validation."""

  transcript: VideoTranscript
  plan_drafts: list[dict[str, Any]] = Field(default_factory=list)


class TranscriptContext(BaseModel):
  """Transcript window handed to an archetype generator."""

  lines: list[TranscriptLine] = Field(default_factory=list)
  nearby_concepts: list[str] = Field(default_factory=list)
  visual_context: str | None = None
  is_salient_moment: bool = False
  formatted: str = ""


class GenerationRequest(BaseModel):
  """Input to an archetype generator."""

  plan: QuestionPlan
  transcript_context: TranscriptContext
  video_ref: str

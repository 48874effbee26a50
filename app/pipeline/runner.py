"""Per-segment state machine: claim, plan, generate, store, hand off."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

from pydantic import ValidationError

from app.pipeline.claims import ClaimManager
from app.pipeline.context import dump_context, extract, load_context, merge
from app.pipeline.contracts import QUESTION_ARTIFACT_ADAPTER, AnalysisRequest, AnalysisResult, MergedContext, QuestionArtifact, QuestionPlan, TimeRange, VideoTranscript
from app.pipeline.dispatch import HandOffResult, SegmentDispatcher, SegmentTask
from app.pipeline.errors import DependencyNotReadyError, LeaseLostError, ProviderError, SegmentIntegrityError
from app.pipeline.generation import GenerationOutcome, GeneratorRegistry, generate_all
from app.pipeline.models import OPEN_PLAN_STATUSES, PLAN_TRANSITIONS, CourseRecord, QuestionPlanRecord, SegmentRecord
from app.pipeline.planning import ContentAnalyzer, build_plans, max_plans_for
from app.pipeline.progress import SegmentProgressTracker
from app.pipeline.storage import StorageOutcome, store_all
from app.storage.pipeline_repo import PipelineRepository
from app.utils.ids import generate_worker_id, plan_record_id

logger = logging.getLogger(__name__)

RunStatus = Literal["completed", "skipped", "dependency_not_ready", "failed", "lease_lost"]

NO_TRANSCRIPT_NOTE = "No transcript content available for this segment"
SUPERSEDED_NOTE = "Superseded by a later planning attempt"


@dataclass(frozen=True)
class RunnerOptions:
  max_questions_per_segment: int = 5
  generation_concurrency: int = 8
  storage_concurrency: int = 8
  context_window_seconds: int = 120
  context_question_count: int = 3
  transcript_window_seconds: float = 30.0


@dataclass
class SegmentRunResult:
  status: RunStatus
  segment_id: str
  reason: str | None = None
  questions_count: int = 0
  plans_total: int = 0
  plans_failed: list[str] = field(default_factory=list)
  context: MergedContext | None = None
  hand_off: HandOffResult | None = None


class SegmentRunner:
  """Drive one segment through Planning, Generation and Storage under a lease."""

  def __init__(
    self,
    *,
    repo: PipelineRepository,
    claims: ClaimManager,
    analyzer: ContentAnalyzer,
    registry: GeneratorRegistry,
    dispatcher: SegmentDispatcher,
    options: RunnerOptions | None = None,
  ) -> None:
    self._repo = repo
    self._claims = claims
    self._analyzer = analyzer
    self._registry = registry
    self._dispatcher = dispatcher
    self._options = options or RunnerOptions()

  async def run(self, task: SegmentTask, *, worker_id: str | None = None) -> SegmentRunResult:
    """Process one segment; expected failures come back as results, not exceptions."""
    worker_id = worker_id or generate_worker_id()
    claim = await self._claims.attempt_claim(task.segment_id, worker_id)
    if not claim.granted or claim.segment is None:
      logger.info("Segment %s not claimed by %s: %s.", task.segment_id, worker_id, claim.reason)
      return SegmentRunResult(status="skipped", segment_id=task.segment_id, reason=claim.reason)

    segment = claim.segment
    progress = SegmentProgressTracker(repo=self._repo, course_id=segment.course_id, session_id=task.session_id, segment_index=segment.segment_index, total_segments=task.total_segments)
    try:
      return await self._process(segment, task, worker_id=worker_id, progress=progress)
    except DependencyNotReadyError as exc:
      return SegmentRunResult(status="dependency_not_ready", segment_id=segment.segment_id, reason=str(exc))
    except LeaseLostError as exc:
      logger.warning("Worker %s lost the lease on segment %s: %s", worker_id, segment.segment_id, exc)
      return SegmentRunResult(status="lease_lost", segment_id=segment.segment_id, reason=str(exc))
    except (ProviderError, SegmentIntegrityError) as exc:
      logger.error("Segment %s failed: %s", segment.segment_id, exc)
      await self._fail(segment, worker_id, str(exc), progress)
      return SegmentRunResult(status="failed", segment_id=segment.segment_id, reason=str(exc))
    except Exception as exc:
      logger.exception("Unexpected error processing segment %s.", segment.segment_id)
      try:
        await self._fail(segment, worker_id, f"Unexpected error: {exc}", progress)
      except Exception:  # noqa: BLE001
        logger.warning("Could not mark segment %s failed.", segment.segment_id, exc_info=True)
      raise

  async def _process(self, segment: SegmentRecord, task: SegmentTask, *, worker_id: str, progress: SegmentProgressTracker) -> SegmentRunResult:
    course = await self._repo.get_course(segment.course_id)
    if course is None:
      raise SegmentIntegrityError(f"Course {segment.course_id} not found for segment {segment.segment_id}")

    predecessor = await self._dispatcher.ensure_dependency_ready(segment, worker_id)
    inherited = load_context(predecessor.cumulative_context) if predecessor is not None else None
    if inherited is None:
      inherited = task.inherited_context

    # Planning
    await progress.update("planning", step="Analyzing segment content")
    time_range = TimeRange(start=segment.start_time, end=segment.end_time)
    max_plans = max_plans_for(segment.duration, self._options.max_questions_per_segment)
    analysis = await self._analyze(course, segment, time_range=time_range, max_plans=max_plans, inherited=inherited)
    await self._renew(segment, worker_id)

    if not analysis.transcript.has_spoken_content():
      logger.info("Segment %s has no spoken content; completing with zero questions.", segment.segment_id)
      await self._repo.supersede_plans(segment.segment_id, keep_plan_ids=(), error_message=SUPERSEDED_NOTE)
      context = merge(inherited, extract(segment, analysis.transcript, [], window_seconds=self._options.context_window_seconds, question_count=self._options.context_question_count))
      return await self._complete(segment, worker_id=worker_id, context=context, questions_count=0, note=NO_TRANSCRIPT_NOTE, plans_total=0, plans_failed=[], task=task, progress=progress)

    outcome = build_plans(analysis.plan_drafts, time_range=time_range, max_plans=max_plans, transcript=analysis.transcript)
    plans = outcome.plans
    plan_ids = tuple(plan_record_id(segment.segment_id, plan.question_id or "") for plan in plans)
    await self._repo.supersede_plans(segment.segment_id, keep_plan_ids=plan_ids, error_message=SUPERSEDED_NOTE)
    await self._repo.upsert_plans([self._plan_record(segment, plan) for plan in plans])
    await progress.update("planning", step=f"Planned {len(plans)} questions", stage_progress=1.0, metadata={"plans": len(plans), "discarded": len(outcome.discarded)})

    stored_rows = {record.plan_id: record for record in await self._repo.list_plans(segment.segment_id)}
    runnable, reused = self._split_by_status(segment, plans, stored_rows)

    # Generation
    failed: list[str] = []
    generated = await self._generate(segment, runnable, transcript=analysis.transcript, video_ref=course.video_ref, failed=failed, progress=progress)
    await self._renew(segment, worker_id)

    # Storage
    stored = await self._store(segment, generated, failed=failed, progress=progress)
    await self._renew(segment, worker_id)

    questions_count = await self._repo.count_questions(segment.course_id, segment_id=segment.segment_id)
    artifacts = [*reused, *(item.artifact for item in stored if item.ok)]
    delta = extract(segment, analysis.transcript, artifacts, window_seconds=self._options.context_window_seconds, question_count=self._options.context_question_count)
    return await self._complete(segment, worker_id=worker_id, context=merge(inherited, delta), questions_count=questions_count, note=None, plans_total=len(plans), plans_failed=failed, task=task, progress=progress)

  async def _analyze(self, course: CourseRecord, segment: SegmentRecord, *, time_range: TimeRange, max_plans: int, inherited: MergedContext | None) -> AnalysisResult:
    request = AnalysisRequest(
      video_ref=course.video_ref,
      time_range=time_range,
      max_plans=max_plans,
      inherited_context=inherited,
      segment_index=segment.segment_index,
      total_segments=max(course.total_segments, segment.segment_index + 1),
    )
    try:
      return await self._analyzer.analyze(request)
    except ProviderError:
      raise
    except ValidationError as exc:
      raise ProviderError(f"Content analysis returned malformed output: {exc.error_count()} validation error(s)") from exc
    except Exception as exc:  # noqa: BLE001
      raise ProviderError(f"Content analysis failed: {exc}") from exc

  def _plan_record(self, segment: SegmentRecord, plan: QuestionPlan) -> QuestionPlanRecord:
    question_id = plan.question_id or ""
    return QuestionPlanRecord(
      plan_id=plan_record_id(segment.segment_id, question_id),
      course_id=segment.course_id,
      segment_id=segment.segment_id,
      question_id=question_id,
      archetype=plan.archetype,
      target_timestamp=plan.timestamp,
      payload={"plan": plan.model_dump(mode="json")},
    )

  def _split_by_status(self, segment: SegmentRecord, plans: list[QuestionPlan], stored_rows: dict[str, QuestionPlanRecord]) -> tuple[list[QuestionPlan], list[QuestionArtifact]]:
    """Separate plans that still need work from plans an earlier attempt already finished."""
    runnable: list[QuestionPlan] = []
    reused: list[QuestionArtifact] = []
    for plan in plans:
      row = stored_rows.get(plan_record_id(segment.segment_id, plan.question_id or ""))
      if row is None or row.status in OPEN_PLAN_STATUSES:
        runnable.append(plan)
        continue
      if row.status == "completed" and row.payload.get("artifact"):
        reused.append(QUESTION_ARTIFACT_ADAPTER.validate_python(row.payload["artifact"]))
    return runnable, reused

  async def _generate(self, segment: SegmentRecord, plans: list[QuestionPlan], *, transcript: VideoTranscript, video_ref: str, failed: list[str], progress: SegmentProgressTracker) -> list[GenerationOutcome]:
    total = len(plans)
    finished = 0
    await progress.update("generation", step=f"Generating {total} questions")

    async def _started(plan: QuestionPlan) -> None:
      await self._repo.transition_plan(plan_record_id(segment.segment_id, plan.question_id or ""), to_status="generating", from_statuses=PLAN_TRANSITIONS["generating"])

    async def _finished(outcome: GenerationOutcome) -> None:
      nonlocal finished
      finished += 1
      if not outcome.ok:
        plan_id = plan_record_id(segment.segment_id, outcome.plan.question_id or "")
        failed.append(plan_id)
        await self._repo.transition_plan(plan_id, to_status="failed", from_statuses=PLAN_TRANSITIONS["failed"], error_message=outcome.error)
      await progress.update("generation", step=f"Generated {finished} of {total} questions", stage_progress=finished / max(total, 1))

    return await generate_all(
      plans,
      registry=self._registry,
      transcript=transcript,
      video_ref=video_ref,
      concurrency=self._options.generation_concurrency,
      window_seconds=self._options.transcript_window_seconds,
      on_started=_started,
      on_finished=_finished,
    )

  async def _store(self, segment: SegmentRecord, generated: list[GenerationOutcome], *, failed: list[str], progress: SegmentProgressTracker) -> list[StorageOutcome]:
    by_question = {item.plan.question_id: item.plan for item in generated if item.ok}
    artifacts = [item.artifact for item in generated if item.artifact is not None]
    total = len(artifacts)
    finished = 0
    await progress.update("storage", step=f"Saving {total} questions")

    async def _finished(outcome: StorageOutcome) -> None:
      nonlocal finished
      finished += 1
      if outcome.ok:
        plan = by_question[outcome.artifact.question_id]
        payload = {"plan": plan.model_dump(mode="json"), "artifact": outcome.artifact.model_dump(mode="json")}
        await self._repo.transition_plan(outcome.plan_id, to_status="completed", from_statuses=PLAN_TRANSITIONS["completed"], payload=payload)
      else:
        failed.append(outcome.plan_id)
        await self._repo.transition_plan(outcome.plan_id, to_status="failed", from_statuses=PLAN_TRANSITIONS["failed"], error_message=outcome.error)
      await progress.update("storage", step=f"Saved {finished} of {total} questions", stage_progress=finished / max(total, 1))

    return await store_all(self._repo, artifacts, segment=segment, concurrency=self._options.storage_concurrency, on_finished=_finished)

  async def _renew(self, segment: SegmentRecord, worker_id: str) -> None:
    if not await self._claims.try_renew(segment.segment_id, worker_id):
      raise LeaseLostError(f"Lease on segment {segment.segment_id} is no longer held by {worker_id}")

  async def _complete(
    self,
    segment: SegmentRecord,
    *,
    worker_id: str,
    context: MergedContext,
    questions_count: int,
    note: str | None,
    plans_total: int,
    plans_failed: list[str],
    task: SegmentTask,
    progress: SegmentProgressTracker,
  ) -> SegmentRunResult:
    affected = await self._repo.complete_segment(
      segment.segment_id,
      worker_id=worker_id,
      cumulative_context=dump_context(context),
      questions_count=questions_count,
      note=note,
      now=self._claims.now(),
    )
    if affected == 0:
      raise LeaseLostError(f"Segment {segment.segment_id} could not be completed by {worker_id}")

    logger.info("Segment %d of course %s completed with %d questions (%d plans failed).", segment.segment_index, segment.course_id, questions_count, len(plans_failed))
    await progress.update("storage", step="Segment completed", stage_progress=1.0, metadata={"questions": questions_count})

    result = SegmentRunResult(status="completed", segment_id=segment.segment_id, reason=note, questions_count=questions_count, plans_total=plans_total, plans_failed=plans_failed, context=context)
    try:
      result.hand_off = await self._dispatcher.hand_off(segment, context, session_id=task.session_id)
    except Exception as exc:  # noqa: BLE001
      # The segment is already durable; a broken hand-off is left for the sweep.
      logger.error("Hand-off after segment %s failed: %s", segment.segment_id, exc, exc_info=True)
      result.hand_off = HandOffResult(kind="queued", error=str(exc))
    return result

  async def _fail(self, segment: SegmentRecord, worker_id: str, message: str, progress: SegmentProgressTracker) -> None:
    # Open plans stay open so a retry with the same stable ids resumes them.
    await self._repo.fail_segment(segment.segment_id, worker_id=worker_id, error_message=message, now=self._claims.now())
    await progress.update("failed", step=message)

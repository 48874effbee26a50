"""End-to-end segment chains against the in-memory repository."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from app.pipeline.dispatch import SegmentTask
from app.pipeline.models import QuestionPlanRecord
from app.pipeline.progress import SegmentProgressTracker
from app.pipeline.runner import NO_TRANSCRIPT_NOTE, RunnerOptions, SegmentRunner
from app.utils.ids import plan_record_id

from tests.conftest import ScriptedAnalyzer, plan_draft, seed_course, stub_registry, task_for


async def _drain(runner: SegmentRunner, enqueuer, *, start: int = 0) -> list:
  """Run every queued hand-off in order, the way a task queue would."""
  results = []
  while start < len(enqueuer.sent):
    _, payload = enqueuer.sent[start]
    start += 1
    results.append(await runner.run(SegmentTask.model_validate(payload)))
  return results


@pytest.mark.anyio
async def test_three_segment_chain_publishes_course(repo, runner, enqueuer, analyzer) -> None:
  segments = await seed_course(repo)

  first = await runner.run(task_for(segments[0], session_id="sess-1"))
  rest = await _drain(runner, enqueuer)

  assert first.status == "completed"
  assert [plan.question_id for plan in await repo.list_plans(segments[0].segment_id)] == ["q1_multiple-choice_30", "q2_true-false_90"]
  assert [result.status for result in rest] == ["completed", "completed"]
  assert rest[-1].hand_off.kind == "completion"
  assert rest[-1].hand_off.completion.published_now

  assert all(segment.status == "completed" for segment in await repo.list_segments("course-1"))
  assert repo.courses["course-1"].published
  assert await repo.count_questions("course-1") == 6
  assert await repo.count_plans_by_status("course-1") == {"completed": 6}
  # Each worker starts planning from its predecessor's context.
  assert [request.inherited_context is None for request in analyzer.requests] == [True, False, False]
  assert analyzer.requests[2].inherited_context.segment_index == 1
  assert analyzer.requests[2].inherited_context.total_processed_duration == 600

  progress = await repo.get_progress("course-1", "sess-1")
  assert progress.stage == "completed"
  assert progress.overall_progress == 1.0


@pytest.mark.anyio
async def test_provider_failure_stops_the_chain(repo, runner, enqueuer, analyzer) -> None:
  segments = await seed_course(repo)
  analyzer.fail_segments = {1}

  await runner.run(task_for(segments[0]))
  [failed] = await _drain(runner, enqueuer)

  assert failed.status == "failed"
  assert "provider rejected segment 1" in failed.reason
  stored = await repo.get_segment(segments[1].segment_id)
  assert stored.status == "failed"
  assert stored.retry_count == 1
  assert stored.lease_owner is None
  assert (await repo.get_segment(segments[2].segment_id)).status == "pending"
  assert len(enqueuer.sent) == 1

  gate = await runner._dispatcher.completion_gate.check("course-1")
  assert not gate.done
  assert not repo.courses["course-1"].published


@pytest.mark.anyio
async def test_failed_segment_can_be_retried(repo, runner, enqueuer, analyzer) -> None:
  segments = await seed_course(repo)
  analyzer.fail_segments = {1}
  await runner.run(task_for(segments[0]))
  await _drain(runner, enqueuer)

  analyzer.fail_segments.clear()
  _, payload = enqueuer.sent[0]
  retried = await runner.run(SegmentTask.model_validate(payload))
  await _drain(runner, enqueuer, start=1)

  assert retried.status == "completed"
  assert (await repo.get_segment(segments[1].segment_id)).retry_count == 2
  assert repo.courses["course-1"].published


@pytest.mark.anyio
async def test_silent_segment_completes_without_questions(repo, runner, enqueuer, analyzer) -> None:
  segments = await seed_course(repo)
  analyzer.silent_segments = {0}

  first = await runner.run(task_for(segments[0]))
  await _drain(runner, enqueuer)

  assert first.status == "completed"
  assert first.questions_count == 0
  stored = await repo.get_segment(segments[0].segment_id)
  assert stored.questions_count == 0
  assert stored.error_message == NO_TRANSCRIPT_NOTE
  assert await repo.list_plans(segments[0].segment_id) == []
  assert repo.courses["course-1"].published
  assert await repo.count_questions("course-1") == 4


@pytest.mark.anyio
async def test_dependency_not_ready_releases_claim(repo, runner, analyzer) -> None:
  segments = await seed_course(repo)

  result = await runner.run(task_for(segments[1]))

  assert result.status == "dependency_not_ready"
  stored = await repo.get_segment(segments[1].segment_id)
  assert stored.status == "pending"
  assert stored.lease_owner is None
  assert stored.retry_count == 0
  assert analyzer.requests == []


@pytest.mark.anyio
async def test_completed_segment_is_skipped(repo, runner, enqueuer) -> None:
  segments = await seed_course(repo)
  await runner.run(task_for(segments[0]))

  again = await runner.run(task_for(segments[0]))

  assert again.status == "skipped"
  assert again.reason == "already_done"
  assert len(enqueuer.sent) == 1


@pytest.mark.anyio
async def test_lost_lease_stops_the_worker(repo, claims, dispatcher, enqueuer) -> None:
  segments = await seed_course(repo)

  class _Stolen(ScriptedAnalyzer):
    async def analyze(self, request):
      repo.segments[segments[0].segment_id].lease_owner = "worker-thief"
      return await super().analyze(request)

  runner = SegmentRunner(repo=repo, claims=claims, analyzer=_Stolen(), registry=stub_registry(), dispatcher=dispatcher)

  result = await runner.run(task_for(segments[0]), worker_id="worker-a")

  assert result.status == "lease_lost"
  stored = await repo.get_segment(segments[0].segment_id)
  assert stored.status == "processing"
  assert stored.lease_owner == "worker-thief"
  assert await repo.count_questions("course-1") == 0
  assert enqueuer.sent == []


@pytest.mark.anyio
async def test_failed_generation_does_not_block_segment_or_publish(repo, claims, dispatcher, enqueuer, analyzer) -> None:
  segments = await seed_course(repo)
  runner = SegmentRunner(repo=repo, claims=claims, analyzer=analyzer, registry=stub_registry(fail_ids={"q2_true-false_90"}), dispatcher=dispatcher)

  first = await runner.run(task_for(segments[0]))
  await _drain(runner, enqueuer)

  failed_id = plan_record_id(segments[0].segment_id, "q2_true-false_90")
  assert first.status == "completed"
  assert first.questions_count == 1
  assert first.plans_failed == [failed_id]
  assert repo.plans[failed_id].status == "failed"
  assert "generator exploded" in repo.plans[failed_id].error_message
  assert repo.courses["course-1"].published
  assert await repo.count_questions("course-1") == 5


@pytest.mark.anyio
async def test_rerun_reuses_completed_plans(repo, claims, dispatcher, analyzer) -> None:
  segments = await seed_course(repo)
  await SegmentRunner(repo=repo, claims=claims, analyzer=analyzer, registry=stub_registry(), dispatcher=dispatcher).run(task_for(segments[0]))
  repo.segments[segments[0].segment_id].status = "failed"

  registry = stub_registry()
  rerun = await SegmentRunner(repo=repo, claims=claims, analyzer=analyzer, registry=registry, dispatcher=dispatcher).run(task_for(segments[0]))

  assert rerun.status == "completed"
  assert rerun.questions_count == 2
  assert registry.resolve("multiple-choice").calls == []
  assert registry.resolve("true-false").calls == []
  assert [summary.archetype for summary in rerun.context.last_question_summaries] == ["multiple-choice", "true-false"]


@pytest.mark.anyio
async def test_replanning_supersedes_stale_plans(repo, claims, dispatcher, analyzer) -> None:
  segments = await seed_course(repo)
  seg_id = segments[0].segment_id
  runner = SegmentRunner(repo=repo, claims=claims, analyzer=analyzer, registry=stub_registry(), dispatcher=dispatcher, options=RunnerOptions(max_questions_per_segment=5))

  stale_id = plan_record_id(seg_id, "q1_matching_200")
  await repo.upsert_plans([QuestionPlanRecord(plan_id=stale_id, course_id="course-1", segment_id=seg_id, question_id="q1_matching_200", archetype="matching", target_timestamp=200)])

  result = await runner.run(task_for(segments[0]))

  assert result.status == "completed"
  assert repo.plans[stale_id].status == "failed"
  assert repo.plans[stale_id].error_message == "Superseded by a later planning attempt"


@pytest.mark.anyio
async def test_inherited_context_keeps_its_timestamps(repo, runner, enqueuer, analyzer) -> None:
  segments = await seed_course(repo)

  await runner.run(task_for(segments[0]))
  await _drain(runner, enqueuer)

  second = analyzer.requests[1].inherited_context
  assert [line.timestamp for line in second.trailing_transcript] == [180, 200, 220, 240, 260, 280]
  assert all(line.timestamp < line.end_timestamp <= 300 for line in second.trailing_transcript)
  assert [concept.first_mentioned for concept in second.key_concepts] == [0]
  third = analyzer.requests[2].inherited_context
  assert [line.timestamp for line in third.trailing_transcript] == [480, 500, 520, 540, 560, 580]
  assert third.key_concepts[0].mention_timestamps == [0, 10, 300, 310]


@pytest.mark.anyio
async def test_replanning_retires_questions_of_dropped_plans(repo, runner, analyzer) -> None:
  segments = await seed_course(repo)
  seg_id = segments[0].segment_id
  await runner.run(task_for(segments[0]))
  old_ids = [plan_record_id(seg_id, "q1_multiple-choice_30"), plan_record_id(seg_id, "q2_true-false_90")]
  assert all(plan_id in repo.questions for plan_id in old_ids)

  # An earlier attempt finished its plans but never completed the segment.
  repo.segments[seg_id].status = "failed"
  analyzer.drafts_by_segment[0] = [plan_draft(60, "true-false")]
  result = await runner.run(task_for(segments[0]))

  assert result.status == "completed"
  assert result.questions_count == 1
  assert await repo.count_questions("course-1", segment_id=seg_id) == 1
  assert plan_record_id(seg_id, "q1_true-false_60") in repo.questions
  assert all(plan_id not in repo.questions for plan_id in old_ids)
  assert {repo.plans[plan_id].status for plan_id in old_ids} == {"failed"}
  assert repo.plans[old_ids[0]].error_message == "Superseded by a later planning attempt"


@pytest.mark.anyio
async def test_gate_outage_after_last_segment_keeps_the_segment_completed(repo, runner) -> None:
  [segment] = await seed_course(repo, duration=300)
  repo.count_plans_by_status = AsyncMock(side_effect=ConnectionError("datastore unreachable"))

  result = await runner.run(task_for(segment, total_segments=1))

  assert result.status == "completed"
  assert result.hand_off.kind == "queued"
  assert result.hand_off.error == "datastore unreachable"
  assert (await repo.get_segment(segment.segment_id)).status == "completed"
  assert not repo.courses["course-1"].published


@pytest.mark.anyio
async def test_progress_is_written_only_for_a_session(repo, runner) -> None:
  segments = await seed_course(repo)

  await runner.run(task_for(segments[0]))
  tracker = SegmentProgressTracker(repo=repo, course_id="course-1", session_id="sess-2", segment_index=1, total_segments=3)
  await tracker.update("planning", step="Analyzing segment content")

  assert not SegmentProgressTracker(repo=repo, course_id="course-1", session_id=None, segment_index=0, total_segments=3).enabled
  assert list(repo.progress) == [("course-1", "sess-2")]
  assert (await repo.get_progress("course-1", "sess-2")).stage == "planning"

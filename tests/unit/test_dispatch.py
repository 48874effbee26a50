from __future__ import annotations

import pytest

from app.pipeline.contracts import MergedContext
from app.pipeline.errors import SegmentIntegrityError
from app.pipeline.models import CourseRecord

from tests.conftest import seed_course


@pytest.mark.anyio
async def test_hand_off_records_action_and_sends_payload(repo, dispatcher, enqueuer) -> None:
  segments = await seed_course(repo)
  context = MergedContext(segment_index=0, synopsis="Covered topics: light.", total_processed_duration=300)

  result = await dispatcher.hand_off(segments[0], context, session_id="sess-1")

  assert result.kind == "dispatched"
  assert result.next_segment_id == segments[1].segment_id
  [(action_id, payload)] = enqueuer.sent
  assert action_id == result.action_id == f"{segments[1].segment_id}:after:{segments[0].segment_id}:0"
  assert payload["segment_index"] == 1
  assert payload["time_range"] == {"start": 300.0, "end": 600.0}
  assert payload["total_segments"] == 3
  assert payload["session_id"] == "sess-1"
  assert payload["inherited_context"]["synopsis"] == "Covered topics: light."
  stored = repo.actions[action_id]
  assert stored.status == "dispatched"
  assert stored.attempts == 1


@pytest.mark.anyio
async def test_repeated_hand_off_is_not_resent(repo, dispatcher, enqueuer) -> None:
  segments = await seed_course(repo)

  await dispatcher.hand_off(segments[0], MergedContext(), session_id=None)
  again = await dispatcher.hand_off(segments[0], MergedContext(), session_id=None)

  assert again.kind == "skipped"
  assert len(enqueuer.sent) == 1


@pytest.mark.anyio
async def test_enqueue_failure_leaves_action_queued(repo, dispatcher, enqueuer) -> None:
  segments = await seed_course(repo)
  enqueuer.fail_with = RuntimeError("queue unavailable")

  result = await dispatcher.hand_off(segments[0], MergedContext(), session_id=None)

  assert result.kind == "queued"
  assert result.error == "queue unavailable"
  stored = repo.actions[result.action_id]
  assert stored.status == "queued"
  assert stored.attempts == 1
  assert stored.last_error == "queue unavailable"


@pytest.mark.anyio
async def test_busy_successor_is_not_dispatched(repo, dispatcher, claims, enqueuer) -> None:
  segments = await seed_course(repo)
  assert await claims.try_acquire(segments[1].segment_id, "worker-b")

  result = await dispatcher.hand_off(segments[0], MergedContext(), session_id=None)

  assert result.kind == "skipped"
  assert enqueuer.sent == []
  assert repo.actions == {}


@pytest.mark.anyio
async def test_last_segment_runs_completion_gate(repo, dispatcher, enqueuer) -> None:
  segments = await seed_course(repo)

  result = await dispatcher.hand_off(segments[2], MergedContext(), session_id=None)

  assert result.kind == "completion"
  assert not result.completion.done
  assert enqueuer.sent == []


@pytest.mark.anyio
async def test_start_dispatches_first_segment_once(repo, dispatcher, enqueuer) -> None:
  segments = await seed_course(repo)

  first = await dispatcher.start("course-1", session_id="sess-1")
  second = await dispatcher.start("course-1", session_id="sess-1")

  assert first.kind == "dispatched"
  assert first.action_id == f"{segments[0].segment_id}:start:0"
  assert second.kind == "skipped"
  [(_, payload)] = enqueuer.sent
  assert payload["inherited_context"] is None
  assert payload["segment_index"] == 0


@pytest.mark.anyio
async def test_start_without_segments_is_an_integrity_error(repo, dispatcher) -> None:
  await repo.create_course(CourseRecord(course_id="empty", video_ref="abc123def45"))

  with pytest.raises(SegmentIntegrityError):
    await dispatcher.start("empty", session_id=None)


@pytest.mark.anyio
async def test_missing_predecessor_row_is_an_integrity_error(repo, dispatcher) -> None:
  segments = await seed_course(repo)
  del repo.segments[segments[0].segment_id]

  with pytest.raises(SegmentIntegrityError):
    await dispatcher.ensure_dependency_ready(segments[1], "worker-a")


@pytest.mark.anyio
async def test_sweep_expires_dead_lease_and_restarts_segment(repo, dispatcher, claims, clock, enqueuer) -> None:
  segments = await seed_course(repo)
  assert await claims.try_acquire(segments[0].segment_id, "worker-dead")
  clock.advance(301)

  status = await dispatcher.orchestrate_course("course-1")

  assert status.expired_segments == [0]
  assert status.status == "processing"
  assert status.triggered_segment == 0
  [(action_id, payload)] = enqueuer.sent
  assert action_id.startswith(f"{segments[0].segment_id}:sweep:")
  assert payload["segment_index"] == 0
  stored = await repo.get_segment(segments[0].segment_id)
  assert stored.status == "failed"
  assert stored.error_message == "Processing timeout"


@pytest.mark.anyio
async def test_check_only_sweep_writes_nothing(repo, dispatcher, claims, clock, enqueuer) -> None:
  segments = await seed_course(repo)
  assert await claims.try_acquire(segments[0].segment_id, "worker-dead")
  clock.advance(301)

  status = await dispatcher.orchestrate_course("course-1", check_only=True)

  assert status.status == "in_progress"
  assert status.expired_segments == []
  assert status.status_breakdown == {"processing": 1, "pending": 2}
  assert (await repo.get_segment(segments[0].segment_id)).status == "processing"
  assert enqueuer.sent == []
  assert repo.actions == {}


@pytest.mark.anyio
async def test_sweep_redelivers_queued_hand_off(repo, dispatcher, enqueuer) -> None:
  segments = await seed_course(repo)
  enqueuer.fail_with = RuntimeError("queue unavailable")
  queued = await dispatcher.hand_off(segments[0], MergedContext(), session_id=None)
  enqueuer.fail_with = None

  status = await dispatcher.orchestrate_course("course-1")

  assert status.status == "processing"
  assert status.redispatched_actions == [queued.action_id]
  assert repo.actions[queued.action_id].status == "dispatched"
  assert repo.actions[queued.action_id].attempts == 2
  assert [action_id for action_id, _ in enqueuer.sent] == [queued.action_id]


@pytest.mark.anyio
async def test_sweep_waits_on_live_lease(repo, dispatcher, claims, clock, enqueuer) -> None:
  segments = await seed_course(repo)
  assert await claims.try_acquire(segments[0].segment_id, "worker-a")
  clock.advance(60)

  status = await dispatcher.orchestrate_course("course-1")

  assert status.status == "waiting"
  assert status.expired_segments == []
  assert enqueuer.sent == []


@pytest.mark.anyio
async def test_sweep_of_finished_course_runs_completion(repo, dispatcher) -> None:
  await seed_course(repo)
  for segment in repo.segments.values():
    segment.status = "completed"

  status = await dispatcher.orchestrate_course("course-1")

  assert status.status == "completed"
  assert status.segments_completed == 3
  assert not status.completion.done
  assert "no questions persisted" in status.completion.reasons


@pytest.mark.anyio
async def test_sweep_of_unknown_course(dispatcher) -> None:
  status = await dispatcher.orchestrate_course("missing")

  assert status.status == "not_found"

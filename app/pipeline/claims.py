"""Lease-based exclusive ownership of segments."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal

from app.pipeline.models import SegmentRecord
from app.storage.pipeline_repo import PipelineRepository

Clock = Callable[[], datetime]
ClaimReason = Literal["claimed", "already_done", "conflict", "not_found"]

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
  return datetime.now(UTC)


@dataclass(frozen=True)
class Lease:
  """Snapshot of who owns a segment and since when."""

  owner_id: str
  acquired_at: datetime
  ttl: timedelta

  def is_expired(self, now: datetime) -> bool:
    return now - self.acquired_at > self.ttl

  @classmethod
  def from_segment(cls, segment: SegmentRecord, ttl: timedelta) -> Lease | None:
    if segment.lease_owner is None or segment.lease_started_at is None:
      return None
    return cls(owner_id=segment.lease_owner, acquired_at=segment.lease_started_at, ttl=ttl)


@dataclass(frozen=True)
class ClaimResult:
  granted: bool
  reason: ClaimReason
  segment: SegmentRecord | None = None


class ClaimManager:
  """Grant, renew and release segment leases through conditional writes."""

  def __init__(self, repo: PipelineRepository, *, lease_timeout_seconds: int = 300, clock: Clock | None = None) -> None:
    self._repo = repo
    self._ttl = timedelta(seconds=lease_timeout_seconds)
    self._clock = clock or utc_now

  @property
  def ttl(self) -> timedelta:
    return self._ttl

  def now(self) -> datetime:
    return self._clock()

  async def attempt_claim(self, segment_id: str, worker_id: str) -> ClaimResult:
    """
    Try to take exclusive ownership of a segment.

    The status read only produces a helpful refusal reason. The grant itself is the
    conditional update, so at most one of any number of racing workers sees a row.
    """
    segment = await self._repo.get_segment(segment_id)
    if segment is None:
      return ClaimResult(granted=False, reason="not_found")
    if segment.status == "completed":
      return ClaimResult(granted=False, reason="already_done", segment=segment)

    now = self._clock()
    if segment.status == "processing":
      lease = Lease.from_segment(segment, self._ttl)
      if lease is not None and not lease.is_expired(now):
        return ClaimResult(granted=False, reason="conflict", segment=segment)
      logger.info("Taking over expired lease on segment %s (previous owner %s).", segment_id, segment.lease_owner)

    affected = await self._repo.claim_segment(segment_id, worker_id=worker_id, now=now, stale_before=now - self._ttl)
    if affected == 0:
      return ClaimResult(granted=False, reason="conflict", segment=segment)

    claimed = await self._repo.get_segment(segment_id)
    logger.info("Worker %s claimed segment %s.", worker_id, segment_id)
    return ClaimResult(granted=True, reason="claimed", segment=claimed)

  async def try_acquire(self, segment_id: str, worker_id: str) -> bool:
    result = await self.attempt_claim(segment_id, worker_id)
    return result.granted

  async def try_renew(self, segment_id: str, worker_id: str) -> bool:
    """Refresh the lease; False means the worker lost ownership."""
    affected = await self._repo.renew_segment_lease(segment_id, worker_id=worker_id, now=self._clock())
    return affected > 0

  async def release(self, segment_id: str, worker_id: str) -> bool:
    """Hand the segment back to pending without recording a failure."""
    affected = await self._repo.release_segment(segment_id, worker_id=worker_id)
    return affected > 0

  async def expire_if_stale(self, segment_id: str) -> bool:
    """Mark a segment failed when its owner stopped renewing past the timeout."""
    now = self._clock()
    affected = await self._repo.expire_stale_segment(segment_id, stale_before=now - self._ttl, error_message="Processing timeout")
    if affected:
      logger.warning("Segment %s lease expired; marked failed.", segment_id)
    return affected > 0

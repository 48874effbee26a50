"""Retry helper for conditional writes that hit transient Postgres failures."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

T = TypeVar("T")
logger = logging.getLogger(__name__)

# SQLSTATEs worth retrying: the statement itself was fine, the transaction lost a race.
_RETRYABLE_SQLSTATES = {"40001": "serialization_conflict", "40P01": "deadlock"}
_CONNECTIVITY_HINTS = ("connection", "timeout", "reset", "network", "broken pipe", "lost connection")


@dataclass(frozen=True)
class DBFailureClassification:
  """Classification result for a database failure."""

  retryable: bool
  category: str
  sqlstate: str | None


def _extract_sqlstate(exc: Exception) -> str | None:
  """Extract the Postgres SQLSTATE from a SQLAlchemy-wrapped driver error."""
  if isinstance(exc, DBAPIError) and exc.orig is not None:
    for attr in ("pgcode", "sqlstate"):
      code = getattr(exc.orig, attr, None)
      if code:
        return str(code)
  return None


def classify_db_failure(exc: Exception) -> DBFailureClassification:
  """Decide whether a failed statement can be re-run safely."""
  sqlstate = _extract_sqlstate(exc)

  if sqlstate in _RETRYABLE_SQLSTATES:
    return DBFailureClassification(retryable=True, category=_RETRYABLE_SQLSTATES[sqlstate], sqlstate=sqlstate)

  # Integrity violations never succeed on retry.
  if isinstance(exc, IntegrityError) or (sqlstate is not None and sqlstate.startswith("23")):
    return DBFailureClassification(retryable=False, category="integrity_error", sqlstate=sqlstate)

  if isinstance(exc, OperationalError):
    message = str(exc).lower()
    if any(hint in message for hint in _CONNECTIVITY_HINTS):
      return DBFailureClassification(retryable=True, category="connectivity_error", sqlstate=sqlstate)
    return DBFailureClassification(retryable=False, category="operational_error_unknown", sqlstate=sqlstate)

  return DBFailureClassification(retryable=False, category=f"unknown_error:{type(exc).__name__}", sqlstate=sqlstate)


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 3, initial_backoff_ms: int = 100, max_backoff_ms: int = 2000) -> T:
  """
  Run an idempotent database operation, retrying transient failures.

  Every conditional write in the pipeline is guarded by a status predicate, so a
  retried statement either applies once or affects zero rows.
  """
  attempt = 0
  while True:
    attempt += 1
    try:
      return await func()
    except (DBAPIError, OperationalError) as exc:
      classification = classify_db_failure(exc)
      logger.warning(
        "DB operation failed: operation=%s, attempt=%d/%d, category=%s, sqlstate=%s, retryable=%s",
        operation_name,
        attempt,
        max_attempts,
        classification.category,
        classification.sqlstate or "none",
        classification.retryable,
      )
      if not classification.retryable or attempt >= max_attempts:
        raise

      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      # +/-25% jitter so competing workers do not retry in lockstep.
      backoff_ms += random.uniform(-backoff_ms * 0.25, backoff_ms * 0.25)
      await asyncio.sleep(backoff_ms / 1000.0)

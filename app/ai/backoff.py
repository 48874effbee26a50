"""Retry logic for provider rate limits."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

DEFAULT_DELAYS: tuple[float, ...] = (5, 20, 50)


def is_rate_limited(exc: BaseException) -> bool:
  """Return True for 429 and quota errors, which are worth waiting out."""
  error_msg = str(exc)
  is_quota_error = "Resource Exhausted" in error_msg or "RESOURCE_EXHAUSTED" in error_msg or "Quota Exceeded" in error_msg
  is_rate_limit = "429" in error_msg or "Too Many Requests" in error_msg
  return is_quota_error or is_rate_limit


async def retry_with_backoff(func: Callable[..., Awaitable[T]], *args: Any, delays: Sequence[float] = DEFAULT_DELAYS, **kwargs: Any) -> T:
  """
  Execute a coroutine function, retrying only 429/quota errors.

  Delays: 5s, 20s, 50s, then one final attempt.
  """
  for attempt, delay in enumerate(delays):
    try:
      return await func(*args, **kwargs)
    except Exception as e:
      if not is_rate_limited(e):
        raise
      logger.warning("Retry attempt %d/%d needed. Error: %s. Retrying in %ss...", attempt + 1, len(delays), e, delay)
      await asyncio.sleep(delay)

  return await func(*args, **kwargs)

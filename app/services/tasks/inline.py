from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

TaskHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class InlineTaskEnqueuer:
  """Runs the segment task in the current process before returning."""

  def __init__(self, handler: TaskHandler) -> None:
    self._handler = handler
    self.delivered: list[str] = []

  async def enqueue(self, action_id: str, payload: dict[str, Any]) -> None:
    logger.info("Running %s inline.", action_id)
    self.delivered.append(action_id)
    await self._handler(payload)

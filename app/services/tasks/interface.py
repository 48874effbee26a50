from __future__ import annotations

from typing import Any, Protocol

TASK_SECRET_HEADER = "x-vidquiz-task-secret"
PROCESS_SEGMENT_PATH = "/internal/tasks/process-segment"


class TaskEnqueuer(Protocol):
  """Interface for handing a segment task to the next worker."""

  async def enqueue(self, action_id: str, payload: dict[str, Any]) -> None:
    """Deliver one segment task; raise when delivery fails."""
    ...

from __future__ import annotations

import json
import logging
import re
from typing import Any

from google.cloud import tasks_v2
from starlette.concurrency import run_in_threadpool

from app.config import Settings
from app.services.tasks.interface import TASK_SECRET_HEADER, PROCESS_SEGMENT_PATH

logger = logging.getLogger(__name__)

_TASK_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


def task_name(parent: str, action_id: str) -> str:
  """Cloud Tasks rejects a second task with the same name, which dedupes hand-offs."""
  return f"{parent}/tasks/{_TASK_NAME_UNSAFE.sub('-', action_id)[:500]}"


class CloudTasksEnqueuer:
  """Enqueues segment tasks to Google Cloud Tasks."""

  def __init__(self, settings: Settings, client: Any | None = None) -> None:
    if not settings.cloud_tasks_queue_path:
      raise RuntimeError("Cloud Tasks queue path not configured (VIDQUIZ_CLOUD_TASKS_QUEUE_PATH).")
    if not settings.base_url:
      raise RuntimeError("Base URL not configured (VIDQUIZ_BASE_URL).")
    if not settings.task_secret:
      raise RuntimeError("Task secret not configured (VIDQUIZ_TASK_SECRET).")
    self.settings = settings
    self.client = client or tasks_v2.CloudTasksClient()

  def build_task(self, action_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    parent = self.settings.cloud_tasks_queue_path or ""
    return {
      "name": task_name(parent, action_id),
      "http_request": {
        "http_method": tasks_v2.HttpMethod.POST,
        "url": f"{(self.settings.base_url or '').rstrip('/')}{PROCESS_SEGMENT_PATH}",
        "headers": {"Content-Type": "application/json", TASK_SECRET_HEADER: self.settings.task_secret or ""},
        "body": json.dumps(payload).encode(),
      },
    }

  async def enqueue(self, action_id: str, payload: dict[str, Any]) -> None:
    """Create the Cloud Task; errors propagate so the hand-off stays queued."""
    request = {"parent": self.settings.cloud_tasks_queue_path, "task": self.build_task(action_id, payload)}
    # The client is synchronous; keep it off the event loop.
    response = await run_in_threadpool(self.client.create_task, request=request)
    logger.info("Enqueued task %s for %s", response.name, action_id)

from __future__ import annotations

from app.config import Settings
from app.services.tasks.gcp import CloudTasksEnqueuer
from app.services.tasks.inline import InlineTaskEnqueuer, TaskHandler
from app.services.tasks.interface import TaskEnqueuer
from app.services.tasks.local import LocalHttpEnqueuer


def get_task_enqueuer(settings: Settings, *, inline_handler: TaskHandler | None = None) -> TaskEnqueuer:
  """Factory to get the configured task enqueuer."""
  if settings.task_service_provider == "gcp":
    return CloudTasksEnqueuer(settings)
  if settings.task_service_provider == "local-http":
    return LocalHttpEnqueuer(settings)
  if inline_handler is None:
    raise RuntimeError("Inline task delivery needs a handler.")
  return InlineTaskEnqueuer(inline_handler)

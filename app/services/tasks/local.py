from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse

import httpx

from app.config import Settings
from app.services.tasks.interface import TASK_SECRET_HEADER, PROCESS_SEGMENT_PATH

logger = logging.getLogger(__name__)


class LocalHttpEnqueuer:
  """Enqueues segment tasks via HTTP requests to simulate Cloud Tasks."""

  def __init__(self, settings: Settings) -> None:
    self.settings = settings

  def _should_use_asgi_transport(self, base_url: str) -> bool:
    """Decide if requests should be routed in-process via ASGITransport."""
    parsed = urlparse(base_url)
    hostname = (parsed.hostname or "").lower()
    return hostname in {"localhost", "127.0.0.1", "::1", "0.0.0.0"}

  def _build_client(self, base_url: str) -> httpx.AsyncClient:
    # Never trust environment proxy variables for internal task dispatch.
    if self._should_use_asgi_transport(base_url):
      from app.main import app

      transport = httpx.ASGITransport(app=app)
      return httpx.AsyncClient(transport=transport, base_url=base_url, trust_env=False)
    return httpx.AsyncClient(trust_env=False)

  def _task_headers(self) -> dict[str, str]:
    if not self.settings.task_secret:
      raise RuntimeError("Task secret not configured.")
    return {TASK_SECRET_HEADER: self.settings.task_secret}

  async def enqueue(self, action_id: str, payload: dict[str, Any]) -> None:
    """POST the segment task to the local worker endpoint."""
    if not self.settings.base_url:
      raise RuntimeError("Base URL not configured, strictly required for LocalHttpEnqueuer.")

    url = f"{self.settings.base_url.rstrip('/')}{PROCESS_SEGMENT_PATH}"
    try:
      async with self._build_client(self.settings.base_url) as client:
        logger.info("Dispatching %s locally to %s", action_id, url)
        # The endpoint accepts the task and processes it in the background.
        response = await client.post(url, json=payload, headers=self._task_headers(), timeout=60.0)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
      logger.error("Local task dispatch returned %s for %s: %s", e.response.status_code, action_id, e.response.text)
      raise
    except httpx.RequestError as e:
      logger.error("Failed to dispatch local task %s: %s", action_id, e)
      raise

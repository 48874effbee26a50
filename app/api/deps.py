"""Shared FastAPI dependencies for internal authentication and pipeline wiring."""

from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from app.config import Settings, get_settings
from app.services.segments import SegmentPipeline, build_pipeline
from app.storage.pipeline_repo import PipelineRepository
from app.storage.postgres_pipeline_repo import PostgresPipelineRepository

logger = logging.getLogger(__name__)


def require_task_secret(settings: Annotated[Settings, Depends(get_settings)], authorization: str | None = Header(default=None), x_vidquiz_task_secret: str | None = Header(default=None)) -> None:
  """Reject callers that do not present the shared task secret."""
  # Deny by default when no secret is configured.
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  # Cloud Tasks OIDC uses Authorization for Cloud Run invoker auth, so check the dedicated header first.
  shared_secret_valid = secrets.compare_digest((x_vidquiz_task_secret or ""), settings.task_secret)
  bearer_valid = secrets.compare_digest((authorization or ""), f"Bearer {settings.task_secret}")
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Rejected request with an invalid task secret.")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")


def get_pipeline_repo() -> PipelineRepository:
  return PostgresPipelineRepository()


def get_pipeline(settings: Annotated[Settings, Depends(get_settings)], repo: Annotated[PipelineRepository, Depends(get_pipeline_repo)]) -> SegmentPipeline:
  return build_pipeline(settings, repo=repo)

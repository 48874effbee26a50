from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, status
from pydantic import BaseModel

from app.api.deps import require_task_secret
from app.config import Settings, get_settings
from app.pipeline.dispatch import SegmentTask
from app.services.segments import run_orchestration, run_segment_task

router = APIRouter(prefix="/tasks", tags=["tasks"], dependencies=[Depends(require_task_secret)])
logger = logging.getLogger(__name__)


class OrchestratePayload(BaseModel):
  course_id: str


@router.post("/process-segment", status_code=status.HTTP_202_ACCEPTED)
async def process_segment_task(payload: SegmentTask, background_tasks: BackgroundTasks, settings: Annotated[Settings, Depends(get_settings)]) -> dict[str, str]:
  """
  Handler for Cloud Tasks (and local simulation).
  Accepts the segment quickly and processes it in the background so dispatchers get a fast 2xx.
  """
  logger.info("Received segment %d of course %s (%s).", payload.segment_index, payload.course_id, payload.action_id)
  background_tasks.add_task(run_segment_task, payload.model_dump(mode="json"), settings)
  return {"status": "accepted", "segment_id": payload.segment_id}


@router.post("/orchestrate", status_code=status.HTTP_202_ACCEPTED)
async def orchestrate_task(payload: OrchestratePayload, background_tasks: BackgroundTasks, settings: Annotated[Settings, Depends(get_settings)]) -> dict[str, str]:
  """Scheduled recovery sweep for one course."""
  background_tasks.add_task(run_orchestration, payload.course_id, settings)
  return {"status": "accepted", "course_id": payload.course_id}

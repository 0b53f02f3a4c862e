"""Admin routes for the background reminder processor."""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from event_reminders.deps import get_admin_user, get_reminder_processor

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(get_admin_user)])


class ProcessorConfigUpdate(BaseModel):
    batch_size: Optional[int] = Field(default=None, gt=0, le=1000)
    tick_interval_ms: Optional[int] = Field(default=None, ge=1000)
    max_retries: Optional[int] = Field(default=None, gt=0, le=20)
    look_ahead_days: Optional[int] = Field(default=None, gt=0, le=365)
    batch_window_seconds: Optional[int] = Field(default=None, gt=0)
    retention_days: Optional[int] = Field(default=None, gt=0)


@router.get("/status")
def get_status(processor=Depends(get_reminder_processor)):
    return processor.get_stats()


@router.post("/process-now")
async def process_now(processor=Depends(get_reminder_processor)):
    """Run materialize, dispatch and cleanup immediately."""
    return await processor.process_now()


@router.patch("/config")
async def update_config(payload: ProcessorConfigUpdate, processor=Depends(get_reminder_processor)):
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No configuration changes supplied")
    processor.update_config(**changes)
    return await run_in_threadpool(processor.get_stats)


@router.post("/start")
async def start(processor=Depends(get_reminder_processor)):
    await processor.start()
    return await run_in_threadpool(processor.get_stats)


@router.post("/stop")
async def stop(processor=Depends(get_reminder_processor)):
    await processor.stop()
    return await run_in_threadpool(processor.get_stats)

"""
Sync control endpoints: manual triggers, run history, task schedule, cache
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from api.dependencies import get_db, get_scheduler, require_api_key
from core.exceptions import TaskAlreadyRunningError, UnknownPipelineError
from models.base import EntityType, SyncMode, SyncStatus
from models.scheduled_task import ScheduledTask
from models.sync_run import SyncRun
from schemas.api import (
    SyncRunResponse,
    SyncRunListResponse,
    ScheduledTaskResponse,
    TaskUpdateRequest,
    CacheRebuildResponse,
)
from schemas.sync import RunSummary
from sync.runner import resolve_entity_type
from sync.scheduler import SyncScheduler
from typing import List, Optional
import time
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["Sync"])


@router.get("/runs", response_model=SyncRunListResponse)
async def list_runs(
    entity_type: Optional[EntityType] = Query(None, description="Filter by entity type"),
    status: Optional[SyncStatus] = Query(None, description="Filter by run status"),
    limit: int = Query(20, ge=1, le=200, description="Number of recent runs to return"),
    db: AsyncSession = Depends(get_db)
):
    """Most recent pipeline runs, newest first."""
    query = select(SyncRun)
    filters_applied = {}

    if entity_type:
        query = query.where(SyncRun.entity_type == entity_type)
        filters_applied["entity_type"] = entity_type.value
    if status:
        query = query.where(SyncRun.status == status)
        filters_applied["status"] = status.value

    result = await db.execute(query.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit))
    runs = [SyncRunResponse.from_orm(run) for run in result.scalars().all()]

    return SyncRunListResponse(runs=runs, total=len(runs), filters_applied=filters_applied)


@router.get("/tasks", response_model=List[ScheduledTaskResponse])
async def list_tasks(
    db: AsyncSession = Depends(get_db),
    scheduler: SyncScheduler = Depends(get_scheduler)
):
    result = await db.execute(select(ScheduledTask).order_by(ScheduledTask.task_type))
    return [
        ScheduledTaskResponse.from_orm(task, running=scheduler.is_running(task.task_type))
        for task in result.scalars().all()
    ]


@router.patch("/tasks/{task_type}", response_model=ScheduledTaskResponse, dependencies=[Depends(require_api_key)])
async def update_task(
    task_type: str,
    update: TaskUpdateRequest,
    db: AsyncSession = Depends(get_db),
    scheduler: SyncScheduler = Depends(get_scheduler)
):
    """Enable or disable a task, or change its interval or mode."""
    try:
        entity_type = resolve_entity_type(task_type)
    except UnknownPipelineError as e:
        raise HTTPException(status_code=404, detail=e.message)

    result = await db.execute(select(ScheduledTask).where(ScheduledTask.task_type == entity_type))
    task = result.scalar_one_or_none()
    if task is None:
        raise HTTPException(status_code=404, detail=f"No schedule configured for {entity_type.value}")

    if update.enabled is not None:
        task.enabled = update.enabled
    if update.interval_minutes is not None:
        task.interval_minutes = update.interval_minutes
    if update.mode is not None:
        # Reassign so the JSON column is flagged dirty
        task.config = {**(task.config or {}), "mode": SyncMode(update.mode).value}

    await db.commit()
    logger.info(f"Updated schedule for {entity_type.value}: {update.dict(exclude_none=True)}")
    return ScheduledTaskResponse.from_orm(task, running=scheduler.is_running(entity_type))


@router.post("/cache/rebuild", response_model=CacheRebuildResponse, dependencies=[Depends(require_api_key)])
async def rebuild_cache(scheduler: SyncScheduler = Depends(get_scheduler)):
    start_time = time.time()
    rows = await scheduler.runner.rebuild_cache()
    return CacheRebuildResponse(
        rows=rows,
        attribution=scheduler.runner.attribution,
        duration_seconds=round(time.time() - start_time, 3)
    )


@router.post("/{entity_type}", response_model=RunSummary, dependencies=[Depends(require_api_key)])
async def trigger_sync(
    request: Request,
    entity_type: str,
    mode: SyncMode = Query(SyncMode.INCREMENTAL, description="full or incremental"),
    dry_run: bool = Query(False, description="Fetch and classify without writing"),
    scheduler: SyncScheduler = Depends(get_scheduler)
):
    """
    Run one pipeline now and return its summary.

    - 404 when entity_type is unknown
    - 409 when that entity type is already running
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] POST /sync/{entity_type} - mode={mode.value}, dry_run={dry_run}")

    try:
        return await scheduler.trigger(entity_type, mode=mode, dry_run=dry_run)
    except UnknownPipelineError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except TaskAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=e.message)

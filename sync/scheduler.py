import logging
import asyncio
from typing import Dict, List, Optional, Union
from datetime import datetime, timedelta
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.config import settings
from core.database import async_session_maker
from core.exceptions import TaskAlreadyRunningError
from models.base import EntityType, SyncMode, SyncStatus
from models.scheduled_task import ScheduledTask, TaskRunHistory
from schemas.sync import RunSummary
from sync.runner import SyncRunner, resolve_entity_type
from sync.supervisor import RecoverySupervisor

logger = logging.getLogger(__name__)


def next_run_after(finished_at: datetime, interval_minutes: int, succeeded: bool) -> datetime:
    """Failed runs retry after min(interval, FAILURE_RETRY_MINUTES)."""
    minutes = interval_minutes if succeeded else min(interval_minutes, settings.FAILURE_RETRY_MINUTES)
    return finished_at + timedelta(minutes=minutes)


class SyncScheduler:
    """
    Periodic task dispatcher.

    Every tick sweeps stale runs, then starts each enabled task whose
    next_run_at has passed (or was never set) and that is not already
    running. Every
    execution, scheduled or manual, is written to the task audit log.
    """

    def __init__(self, session_maker: Optional[async_sessionmaker] = None, runner: Optional[SyncRunner] = None):
        self.scheduler = AsyncIOScheduler()
        self.SessionLocal = session_maker or async_session_maker
        self.runner = runner or SyncRunner(self.SessionLocal)
        self._tasks: Dict[EntityType, asyncio.Task] = {}

    def is_running(self, entity_type: EntityType) -> bool:
        task = self._tasks.get(entity_type)
        return (task is not None and not task.done()) or self.runner.is_active(entity_type)

    def running(self) -> List[EntityType]:
        return [entity_type for entity_type in EntityType if self.is_running(entity_type)]

    async def startup(self):
        """Seed task configs and cancel runs orphaned by the previous process."""
        async with self.SessionLocal() as session:
            supervisor = RecoverySupervisor(session)
            await supervisor.ensure_task_configs()
            await supervisor.recover_on_startup()

    async def tick(self):
        """Job: recover, then dispatch due tasks"""
        now = datetime.utcnow()
        async with self.SessionLocal() as session:
            try:
                supervisor = RecoverySupervisor(session)
                await supervisor.sweep_stale_runs(now)
                await supervisor.dedupe_run_records()

                result = await session.execute(
                    select(ScheduledTask.task_type, ScheduledTask.config).where(
                        ScheduledTask.enabled.is_(True),
                        or_(ScheduledTask.next_run_at.is_(None), ScheduledTask.next_run_at <= now),
                    )
                )
                due = result.all()
            except Exception as e:
                logger.error(f"Scheduler: tick failed - {e}")
                return

        for task_type, config in due:
            if self.is_running(task_type):
                logger.info(f"Scheduler: {task_type.value} still running, skipping")
                continue
            mode = (config or {}).get("mode", SyncMode.INCREMENTAL.value)
            self.dispatch(task_type, mode=mode)

    async def cleanup_job(self):
        """Job: prune the task audit log"""
        async with self.SessionLocal() as session:
            try:
                await RecoverySupervisor(session).cleanup_history()
            except Exception as e:
                logger.error(f"Scheduler: history cleanup failed - {e}")

    def dispatch(self, entity_type: EntityType, mode: Union[str, SyncMode, None] = None) -> asyncio.Task:
        """Start a scheduled run in the background."""
        task = asyncio.create_task(self._run_scheduled(entity_type, mode))
        self._tasks[entity_type] = task
        task.add_done_callback(lambda t: self._forget(entity_type, t))
        return task

    def _forget(self, entity_type: EntityType, task: asyncio.Task):
        if self._tasks.get(entity_type) is task:
            del self._tasks[entity_type]

    async def _run_scheduled(self, entity_type: EntityType, mode):
        try:
            await self.execute(entity_type, mode=mode, triggered_by="scheduler")
        except TaskAlreadyRunningError:
            logger.info(f"Scheduler: {entity_type.value} already running")
        except Exception as e:
            logger.error(f"Scheduler: {entity_type.value} job failed - {e}")

    async def trigger(
        self,
        name: Union[str, EntityType],
        mode: Union[str, SyncMode, None] = None,
        dry_run: bool = False,
    ) -> RunSummary:
        """
        Run a task now and wait for its summary.

        Raises:
            UnknownPipelineError: name is not an entity type
            TaskAlreadyRunningError: the task is already running
        """
        entity_type = resolve_entity_type(name)
        if self.is_running(entity_type):
            raise TaskAlreadyRunningError(
                f"{entity_type.value} sync is already running",
                context={"entity_type": entity_type.value}
            )
        return await self.execute(entity_type, mode=mode, dry_run=dry_run, triggered_by="manual")

    async def execute(
        self,
        entity_type: EntityType,
        mode: Union[str, SyncMode, None] = None,
        dry_run: bool = False,
        triggered_by: str = "manual",
    ) -> RunSummary:
        """Run through the runner, recording the audit entry and schedule state."""
        started_at = datetime.utcnow()
        async with self.SessionLocal() as session:
            history = TaskRunHistory(
                task_type=entity_type,
                status=SyncStatus.RUNNING,
                triggered_by=triggered_by,
                started_at=started_at,
            )
            session.add(history)
            await session.commit()
            history_id = history.id

        summary: Optional[RunSummary] = None
        error: Optional[Exception] = None
        try:
            summary = await self.runner.run_pipeline(entity_type, mode=mode, dry_run=dry_run)
        except TaskAlreadyRunningError as e:
            await self._finish_history(history_id, SyncStatus.CANCELLED, started_at, error_message=e.message)
            raise
        except Exception as e:
            error = e
            raise
        finally:
            if summary is not None or error is not None:
                await self._record(entity_type, history_id, started_at, summary, error, dry_run)

        return summary

    async def _finish_history(
        self,
        history_id: int,
        status: SyncStatus,
        started_at: datetime,
        result: Optional[dict] = None,
        error_message: Optional[str] = None,
    ) -> datetime:
        completed_at = datetime.utcnow()
        async with self.SessionLocal() as session:
            await session.execute(
                update(TaskRunHistory)
                .where(TaskRunHistory.id == history_id)
                .values(
                    status=status,
                    completed_at=completed_at,
                    duration_seconds=(completed_at - started_at).total_seconds(),
                    result=result,
                    error_message=error_message,
                )
            )
            await session.commit()
        return completed_at

    async def _record(
        self,
        entity_type: EntityType,
        history_id: int,
        started_at: datetime,
        summary: Optional[RunSummary],
        error: Optional[Exception],
        dry_run: bool,
    ):
        if summary is not None:
            status = SyncStatus(summary.status)
            message = summary.error_message
            result = summary.dict()
        else:
            status = SyncStatus.FAILED
            message = str(error)
            result = None

        try:
            completed_at = await self._finish_history(history_id, status, started_at, result, message)
            if dry_run:
                return

            async with self.SessionLocal() as session:
                task = (
                    await session.execute(select(ScheduledTask).where(ScheduledTask.task_type == entity_type))
                ).scalar_one_or_none()
                if task is None:
                    return
                succeeded = status == SyncStatus.COMPLETED
                task.last_run_at = started_at
                task.last_status = status
                task.last_error = None if succeeded else message
                task.last_duration_seconds = (completed_at - started_at).total_seconds()
                task.run_count = (task.run_count or 0) + 1
                if not succeeded:
                    task.fail_count = (task.fail_count or 0) + 1
                task.next_run_at = next_run_after(completed_at, task.interval_minutes, succeeded)
                await session.commit()
        except Exception as e:
            logger.error(f"Scheduler: failed to record {entity_type.value} run - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=settings.SCHEDULER_TICK_SECONDS),
            id="sync_tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.cleanup_job,
            trigger=IntervalTrigger(hours=24),
            id="history_cleanup",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Sync Scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        for task in list(self._tasks.values()):
            task.cancel()
        logger.info("Sync Scheduler stopped")

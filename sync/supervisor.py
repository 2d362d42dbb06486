"""
Recovery supervisor for run records and scheduler state.

Runs at startup and on every scheduler tick:
- RUNNING rows older than STALE_RUN_MINUTES become STALE
- on startup every RUNNING row is orphaned and becomes CANCELLED
- run records duplicated by the scheduler audit log are removed
- audit log entries and run records past KEEP_HISTORY_DAYS are removed
"""

from typing import Dict, Optional
from datetime import datetime, timedelta
from sqlalchemy import select, update, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from models.base import EntityType, SyncStatus, TERMINAL_STATUSES
from models.scheduled_task import ScheduledTask, TaskRunHistory
from models.sync_run import SyncRun
import logging

logger = logging.getLogger(__name__)

# Default interval (minutes) and mode per task type
DEFAULT_TASKS: Dict[EntityType, Dict] = {
    EntityType.USERS: {"interval": 120, "mode": "incremental"},
    EntityType.GROUPS: {"interval": 120, "mode": "incremental"},
    EntityType.GROUP_MEMBERS: {"interval": 240, "mode": "incremental"},
    EntityType.COURSES: {"interval": 720, "mode": "incremental"},
    EntityType.COURSE_PROPERTIES: {"interval": 1440, "mode": "full"},
    EntityType.ENROLLMENTS: {"interval": 240, "mode": "incremental"},
    EntityType.PARTNERS: {"interval": 360, "mode": "incremental"},
    EntityType.CONTACTS: {"interval": 360, "mode": "incremental"},
    EntityType.LEADS: {"interval": 360, "mode": "incremental"},
    EntityType.PARTNER_PUSH: {"interval": 1440, "mode": "incremental", "enabled": False},
}


class RecoverySupervisor:
    """Detects and repairs run state left behind by crashes and restarts."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def sweep_stale_runs(self, now: Optional[datetime] = None) -> int:
        """Mark RUNNING runs older than the stale threshold as STALE."""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=settings.STALE_RUN_MINUTES)

        stale_types = set((await self.db.execute(
            select(SyncRun.entity_type).where(SyncRun.status == SyncStatus.RUNNING, SyncRun.started_at < cutoff)
        )).scalars().all())

        result = await self.db.execute(
            update(SyncRun)
            .where(SyncRun.status == SyncStatus.RUNNING, SyncRun.started_at < cutoff)
            .values(
                status=SyncStatus.STALE,
                completed_at=now,
                error_message=f"Marked stale: still running after {settings.STALE_RUN_MINUTES} minutes",
            )
            .execution_options(synchronize_session=False)
        )
        history = await self.db.execute(
            update(TaskRunHistory)
            .where(TaskRunHistory.status == SyncStatus.RUNNING, TaskRunHistory.started_at < cutoff)
            .values(status=SyncStatus.STALE, completed_at=now, error_message="Marked stale")
            .execution_options(synchronize_session=False)
        )
        if stale_types:
            await self.db.execute(
                update(ScheduledTask)
                .where(ScheduledTask.task_type.in_(list(stale_types)))
                .values(last_status=SyncStatus.FAILED, last_error="Run marked stale")
                .execution_options(synchronize_session=False)
            )
        await self.db.commit()

        if result.rowcount:
            logger.warning(f"Marked {result.rowcount} sync runs stale")
        if history.rowcount:
            logger.warning(f"Marked {history.rowcount} task history entries stale")
        return result.rowcount

    async def recover_on_startup(self, now: Optional[datetime] = None) -> int:
        """
        Cancel every RUNNING run and audit entry.

        Nothing can be running in a process that just started, so those
        rows were orphaned by a crash or restart.
        """
        now = now or datetime.utcnow()
        message = "Cancelled on startup: process restarted while running"

        result = await self.db.execute(
            update(SyncRun)
            .where(SyncRun.status == SyncStatus.RUNNING)
            .values(status=SyncStatus.CANCELLED, completed_at=now, error_message=message)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(TaskRunHistory)
            .where(TaskRunHistory.status == SyncStatus.RUNNING)
            .values(status=SyncStatus.CANCELLED, completed_at=now, error_message=message)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount:
            logger.warning(f"Cancelled {result.rowcount} orphaned sync runs")
        return result.rowcount

    async def dedupe_run_records(self, window_seconds: Optional[int] = None) -> int:
        """
        Remove terminal run records that duplicate a scheduler audit entry.

        A run record is a duplicate when an audit entry of the same type
        started within window_seconds of it. The audit entry carries the
        run summary, so it is the one kept.
        """
        window = timedelta(seconds=settings.DEDUP_WINDOW_SECONDS if window_seconds is None else window_seconds)

        history = await self.db.execute(select(TaskRunHistory.task_type, TaskRunHistory.started_at))
        starts: Dict[EntityType, list] = {}
        for task_type, started_at in history.all():
            starts.setdefault(task_type, []).append(started_at)
        if not starts:
            return 0

        runs = await self.db.execute(
            select(SyncRun.id, SyncRun.entity_type, SyncRun.started_at).where(
                SyncRun.status.in_(TERMINAL_STATUSES),
                SyncRun.entity_type.in_(list(starts)),
            )
        )
        duplicates = [
            run_id
            for run_id, entity_type, started_at in runs.all()
            if any(abs(started_at - s) <= window for s in starts[entity_type])
        ]
        if not duplicates:
            return 0

        for i in range(0, len(duplicates), 500):
            await self.db.execute(delete(SyncRun).where(SyncRun.id.in_(duplicates[i:i + 500])))
        await self.db.commit()
        logger.info(f"Removed {len(duplicates)} duplicate sync run records")
        return len(duplicates)

    async def cleanup_history(self, keep_days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Delete terminal audit entries and run records older than keep_days."""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=settings.KEEP_HISTORY_DAYS if keep_days is None else keep_days)

        result = await self.db.execute(
            delete(TaskRunHistory).where(
                and_(TaskRunHistory.started_at < cutoff, TaskRunHistory.status != SyncStatus.RUNNING)
            )
        )
        runs = await self.db.execute(
            delete(SyncRun).where(
                and_(SyncRun.started_at < cutoff, SyncRun.status.in_(TERMINAL_STATUSES))
            )
        )
        await self.db.commit()

        if result.rowcount:
            logger.info(f"Deleted {result.rowcount} task history entries older than {cutoff.date()}")
        if runs.rowcount:
            logger.info(f"Deleted {runs.rowcount} sync runs older than {cutoff.date()}")
        return result.rowcount + runs.rowcount

    async def ensure_task_configs(self) -> int:
        """Create the scheduling record of every task type that has none."""
        existing = set((await self.db.execute(select(ScheduledTask.task_type))).scalars().all())
        now = datetime.utcnow()

        created = 0
        for task_type, defaults in DEFAULT_TASKS.items():
            if task_type in existing:
                continue
            self.db.add(
                ScheduledTask(
                    task_type=task_type,
                    enabled=defaults.get("enabled", True),
                    interval_minutes=defaults["interval"],
                    config={"mode": defaults["mode"]},
                    next_run_at=now,
                    run_count=0,
                    fail_count=0,
                )
            )
            created += 1

        if created:
            await self.db.commit()
            logger.info(f"Created {created} scheduled task configs")
        return created

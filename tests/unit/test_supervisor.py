"""
Unit tests for the recovery supervisor
"""

import pytest
import uuid
from datetime import datetime, timedelta
from sqlalchemy import select, func
from models.base import EntityType, SyncMode, SyncStatus
from models.scheduled_task import ScheduledTask, TaskRunHistory
from models.sync_run import SyncRun
from sync.supervisor import DEFAULT_TASKS, RecoverySupervisor


NOW = datetime(2024, 6, 1, 12, 0, 0)


def sync_run(entity_type=EntityType.USERS, status=SyncStatus.RUNNING, started_at=NOW):
    return SyncRun(
        run_id=uuid.uuid4(),
        entity_type=entity_type,
        mode=SyncMode.INCREMENTAL,
        status=status,
        started_at=started_at,
    )


async def run_statuses(db_session):
    result = await db_session.execute(select(SyncRun.started_at, SyncRun.status).order_by(SyncRun.started_at))
    return [status for _, status in result.all()]


class TestStaleSweep:
    """Test stale run detection"""

    @pytest.mark.asyncio
    async def test_old_running_runs_marked_stale(self, db_session):
        db_session.add_all([
            sync_run(started_at=NOW - timedelta(hours=2)),
            sync_run(started_at=NOW - timedelta(minutes=5)),
            sync_run(status=SyncStatus.COMPLETED, started_at=NOW - timedelta(hours=3)),
        ])
        db_session.add(TaskRunHistory(task_type=EntityType.USERS, status=SyncStatus.RUNNING,
                                      started_at=NOW - timedelta(hours=2)))
        await db_session.commit()

        marked = await RecoverySupervisor(db_session).sweep_stale_runs(NOW)

        assert marked == 1
        assert await run_statuses(db_session) == [SyncStatus.COMPLETED, SyncStatus.STALE, SyncStatus.RUNNING]
        history_status = await db_session.scalar(select(TaskRunHistory.status))
        assert history_status == SyncStatus.STALE

    @pytest.mark.asyncio
    async def test_task_config_marked_failed(self, db_session):
        db_session.add_all([
            sync_run(started_at=NOW - timedelta(hours=2)),
            ScheduledTask(task_type=EntityType.USERS, interval_minutes=60, last_status=SyncStatus.RUNNING),
            ScheduledTask(task_type=EntityType.GROUPS, interval_minutes=60, last_status=SyncStatus.COMPLETED),
        ])
        await db_session.commit()

        await RecoverySupervisor(db_session).sweep_stale_runs(NOW)

        rows = dict((await db_session.execute(
            select(ScheduledTask.task_type, ScheduledTask.last_status)
        )).all())
        assert rows[EntityType.USERS] == SyncStatus.FAILED
        assert rows[EntityType.GROUPS] == SyncStatus.COMPLETED


class TestStartupRecovery:

    @pytest.mark.asyncio
    async def test_all_running_rows_cancelled(self, db_session):
        db_session.add_all([
            sync_run(started_at=NOW - timedelta(minutes=1)),
            sync_run(entity_type=EntityType.GROUPS, started_at=NOW - timedelta(hours=5)),
            sync_run(status=SyncStatus.FAILED, started_at=NOW - timedelta(hours=6)),
        ])
        db_session.add(TaskRunHistory(task_type=EntityType.USERS, status=SyncStatus.RUNNING, started_at=NOW))
        await db_session.commit()

        cancelled = await RecoverySupervisor(db_session).recover_on_startup(NOW)

        assert cancelled == 2
        running = await db_session.scalar(
            select(func.count(SyncRun.id)).where(SyncRun.status == SyncStatus.RUNNING)
        )
        assert running == 0
        failed = await db_session.scalar(
            select(func.count(SyncRun.id)).where(SyncRun.status == SyncStatus.FAILED)
        )
        assert failed == 1
        assert await db_session.scalar(select(TaskRunHistory.status)) == SyncStatus.CANCELLED


class TestDedupe:
    """Test removal of run records duplicated by the audit log"""

    @pytest.mark.asyncio
    async def test_run_near_audit_entry_removed(self, db_session):
        db_session.add_all([
            sync_run(status=SyncStatus.COMPLETED, started_at=NOW + timedelta(seconds=2)),
            sync_run(status=SyncStatus.COMPLETED, started_at=NOW + timedelta(hours=1)),
            sync_run(entity_type=EntityType.GROUPS, status=SyncStatus.COMPLETED, started_at=NOW),
            sync_run(status=SyncStatus.RUNNING, started_at=NOW + timedelta(seconds=1)),
        ])
        db_session.add(TaskRunHistory(task_type=EntityType.USERS, status=SyncStatus.COMPLETED, started_at=NOW))
        await db_session.commit()

        removed = await RecoverySupervisor(db_session).dedupe_run_records(window_seconds=10)

        assert removed == 1
        assert await db_session.scalar(select(func.count(SyncRun.id))) == 3
        assert await db_session.scalar(select(func.count(TaskRunHistory.id))) == 1

    @pytest.mark.asyncio
    async def test_nothing_without_audit_entries(self, db_session):
        db_session.add(sync_run(status=SyncStatus.COMPLETED))
        await db_session.commit()

        assert await RecoverySupervisor(db_session).dedupe_run_records() == 0


class TestHistoryCleanup:

    @pytest.mark.asyncio
    async def test_old_terminal_entries_deleted(self, db_session):
        db_session.add_all([
            TaskRunHistory(task_type=EntityType.USERS, status=SyncStatus.COMPLETED, started_at=NOW - timedelta(days=40)),
            TaskRunHistory(task_type=EntityType.USERS, status=SyncStatus.RUNNING, started_at=NOW - timedelta(days=40)),
            TaskRunHistory(task_type=EntityType.USERS, status=SyncStatus.FAILED, started_at=NOW - timedelta(days=2)),
        ])
        await db_session.commit()

        deleted = await RecoverySupervisor(db_session).cleanup_history(keep_days=30, now=NOW)

        assert deleted == 1
        assert await db_session.scalar(select(func.count(TaskRunHistory.id))) == 2

    @pytest.mark.asyncio
    async def test_old_run_records_deleted(self, db_session):
        db_session.add_all([
            sync_run(status=SyncStatus.COMPLETED, started_at=NOW - timedelta(days=40)),
            sync_run(status=SyncStatus.RUNNING, started_at=NOW - timedelta(days=40)),
            sync_run(status=SyncStatus.COMPLETED, started_at=NOW - timedelta(days=1)),
        ])
        await db_session.commit()

        deleted = await RecoverySupervisor(db_session).cleanup_history(keep_days=30, now=NOW)

        assert deleted == 1
        assert await db_session.scalar(select(func.count(SyncRun.id))) == 2


class TestTaskConfigs:

    @pytest.mark.asyncio
    async def test_defaults_created_once(self, db_session):
        supervisor = RecoverySupervisor(db_session)

        assert await supervisor.ensure_task_configs() == len(DEFAULT_TASKS)
        assert await supervisor.ensure_task_configs() == 0

        row = (await db_session.execute(
            select(ScheduledTask.interval_minutes, ScheduledTask.config, ScheduledTask.enabled)
            .where(ScheduledTask.task_type == EntityType.COURSE_PROPERTIES)
        )).one()
        assert row.interval_minutes == 1440
        assert row.config == {"mode": "full"}
        assert row.enabled is True

        push_enabled = await db_session.scalar(
            select(ScheduledTask.enabled).where(ScheduledTask.task_type == EntityType.PARTNER_PUSH)
        )
        assert push_enabled is False

    def test_every_entity_type_has_defaults(self):
        assert set(DEFAULT_TASKS) == set(EntityType)

"""
API endpoint tests
"""

import pytest
import pytest_asyncio
import httpx
from datetime import datetime
from api.main import app
from api.dependencies import get_db, get_scheduler
from core.config import settings
from models.base import EntityType, SyncMode, SyncStatus
from models.checkpoint import SyncCheckpoint
from models.partner import Partner
from models.scheduled_task import ScheduledTask
from models.sync_run import SyncRun
from sync.fetchers.lms_client import PEOPLE_PATH
from sync.runner import SyncRunner
from sync.scheduler import SyncScheduler
from fakes import RouteTransport, jsonapi, lms_page, paged
import uuid


@pytest.fixture
def scheduler(session_maker, make_lms):
    fake = RouteTransport({
        PEOPLE_PATH: paged([lms_page([jsonapi("people", "u1", email="u1@example.com")])]),
    })
    return SyncScheduler(session_maker, runner=SyncRunner(session_maker, lms_factory=lambda: make_lms(fake)))


@pytest_asyncio.fixture
async def client(session_maker, scheduler):
    """Create test client with database and scheduler overrides"""

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_scheduler] = lambda: scheduler

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


async def add_run(session_maker, entity_type=EntityType.USERS, status=SyncStatus.COMPLETED, started_at=None):
    async with session_maker() as session:
        session.add(SyncRun(
            run_id=uuid.uuid4(),
            entity_type=entity_type,
            mode=SyncMode.INCREMENTAL,
            status=status,
            started_at=started_at or datetime.utcnow(),
            records_processed=5,
        ))
        await session.commit()


class TestHealth:

    @pytest.mark.asyncio
    async def test_healthy_without_checkpoints(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert data["checkpoints"] == []
        assert data["running_tasks"] == []
        assert response.headers["X-Request-ID"].startswith("req_")

    @pytest.mark.asyncio
    async def test_degraded_when_some_entities_failed(self, client, session_maker):
        async with session_maker() as session:
            session.add_all([
                SyncCheckpoint(entity_type=EntityType.USERS, status=SyncStatus.COMPLETED, checkpoint_value="2024-01-01T00:00:00"),
                SyncCheckpoint(entity_type=EntityType.GROUPS, status=SyncStatus.FAILED, error_message="boom"),
            ])
            await session.commit()

        data = (await client.get("/health")).json()

        assert data["status"] == "degraded"
        assert data["total_entities"] == 2
        assert data["failed_entities"] == 1

    @pytest.mark.asyncio
    async def test_running_tasks_listed(self, client, scheduler):
        scheduler.runner._active.add(EntityType.ENROLLMENTS)

        data = (await client.get("/health")).json()

        assert data["running_tasks"] == ["enrollments"]

    @pytest.mark.asyncio
    async def test_request_id_reused(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "abc"})

        assert response.headers["X-Request-ID"] == "abc"


class TestRuns:

    @pytest.mark.asyncio
    async def test_list_newest_first_with_filters(self, client, session_maker):
        await add_run(session_maker, EntityType.USERS, started_at=datetime(2024, 1, 1))
        await add_run(session_maker, EntityType.GROUPS, started_at=datetime(2024, 1, 2))
        await add_run(session_maker, EntityType.USERS, SyncStatus.FAILED, started_at=datetime(2024, 1, 3))

        data = (await client.get("/sync/runs")).json()
        assert [r["entity_type"] for r in data["runs"]] == ["users", "groups", "users"]

        data = (await client.get("/sync/runs", params={"entity_type": "users", "status": "failed"})).json()
        assert data["total"] == 1
        assert data["runs"][0]["status"] == "failed"
        assert data["filters_applied"] == {"entity_type": "users", "status": "failed"}

    @pytest.mark.asyncio
    async def test_invalid_filter_rejected(self, client):
        response = await client.get("/sync/runs", params={"entity_type": "invoices"})

        assert response.status_code == 422


class TestTasks:

    @pytest.mark.asyncio
    async def test_list_and_update(self, client, session_maker):
        async with session_maker() as session:
            session.add(ScheduledTask(task_type=EntityType.USERS, interval_minutes=120, config={"mode": "incremental"}))
            await session.commit()

        tasks = (await client.get("/sync/tasks")).json()
        assert tasks[0]["task_type"] == "users"
        assert tasks[0]["mode"] == "incremental"

        response = await client.patch(
            "/sync/tasks/users", json={"enabled": False, "interval_minutes": 30, "mode": "full"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["enabled"] is False
        assert data["interval_minutes"] == 30
        assert data["mode"] == "full"

        tasks = (await client.get("/sync/tasks")).json()
        assert tasks[0]["mode"] == "full"

    @pytest.mark.asyncio
    async def test_update_unknown_task(self, client):
        assert (await client.patch("/sync/tasks/invoices", json={"enabled": False})).status_code == 404
        assert (await client.patch("/sync/tasks/users", json={"enabled": False})).status_code == 404

    @pytest.mark.asyncio
    async def test_update_validates_interval(self, client):
        response = await client.patch("/sync/tasks/users", json={"interval_minutes": 0})

        assert response.status_code == 422


class TestTrigger:
    """Test manual pipeline triggers"""

    @pytest.mark.asyncio
    async def test_trigger_returns_summary(self, client):
        response = await client.post("/sync/users", params={"mode": "full"})

        assert response.status_code == 200
        data = response.json()
        assert data["entity_type"] == "users"
        assert data["status"] == "completed"
        assert data["records_created"] == 1

    @pytest.mark.asyncio
    async def test_dry_run_flag(self, client):
        data = (await client.post("/sync/users", params={"dry_run": "true"})).json()

        assert data["dry_run"] is True
        assert data["details"]["dry_run"] is True

    @pytest.mark.asyncio
    async def test_unknown_entity_type(self, client):
        response = await client.post("/sync/invoices")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_api_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "API_KEY", "secret")

        assert (await client.post("/sync/users")).status_code == 401
        assert (await client.post("/sync/users", headers={"X-API-Key": "wrong"})).status_code == 401
        response = await client.post("/sync/users", headers={"X-API-Key": "secret"})
        assert response.status_code == 200
        assert (await client.get("/sync/runs")).status_code == 200

    @pytest.mark.asyncio
    async def test_already_running(self, client, scheduler):
        scheduler.runner._active.add(EntityType.USERS)

        response = await client.post("/sync/users")

        assert response.status_code == 409
        assert "already running" in response.json()["detail"]


class TestCacheRebuild:

    @pytest.mark.asyncio
    async def test_rebuild(self, client, session_maker):
        async with session_maker() as session:
            session.add_all([Partner(name="Acme"), Partner(name="Beta")])
            await session.commit()

        response = await client.post("/sync/cache/rebuild")

        assert response.status_code == 200
        data = response.json()
        assert data["rows"] == 2
        assert data["attribution"] == "group"

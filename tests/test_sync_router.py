"""Tests for the mylife sync endpoints."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from mylife_sync.config import Settings
from mylife_sync.main import app
from mylife_sync.routers.sync import get_settings
from mylife_sync.services.sync_orchestrator import SyncResult, SyncState


def make_result(**overrides) -> SyncResult:
    values = {
        "cycle_id": "abc123",
        "started_at": datetime(2024, 5, 1, 10, 0, tzinfo=UTC),
        "finished_at": datetime(2024, 5, 1, 10, 0, 5, tzinfo=UTC),
        "success": True,
        "events_parsed": 10,
        "records_skipped": 1,
        "events_seen": 4,
        "events_handled": 5,
        "records_submitted": 5,
    }
    values.update(overrides)
    return SyncResult(**values)


def failed(stage: str, retryable: bool) -> SyncResult:
    return make_result(
        success=False,
        error="something broke",
        error_stage=stage,
        retryable=retryable,
        records_submitted=0,
    )


@pytest.fixture
def orchestrator():
    mock = MagicMock()
    mock.trigger_sync = AsyncMock(return_value=make_result())
    mock.state = SyncState.IDLE
    mock.is_syncing = False
    mock.consecutive_failures = 0
    mock.next_run_at = None
    mock.last_result = None
    app.state.orchestrator = mock
    yield mock
    app.state.orchestrator = None


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


def require_api_key(key: str) -> None:
    app.dependency_overrides[get_settings] = lambda: Settings(
        _env_file=None, testing=True, sync_trigger_api_key=key
    )


class TestTriggerSync:
    """Tests for POST /api/mylife/sync."""

    async def test_trigger_returns_cycle_summary(self, client, orchestrator):
        response = await client.post("/api/mylife/sync")

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Sync completed successfully"
        assert data["cycle_id"] == "abc123"
        assert data["events_handled"] == 5
        assert data["records_skipped"] == 1
        orchestrator.trigger_sync.assert_awaited_once()

    async def test_trigger_reports_truncated_archive(self, client, orchestrator):
        orchestrator.trigger_sync.return_value = make_result(archive_truncated=True)

        data = (await client.post("/api/mylife/sync")).json()

        assert data["archive_truncated"] is True
        assert data["records_skipped"] == 1

    async def test_not_running(self, client):
        app.state.orchestrator = None
        response = await client.post("/api/mylife/sync")
        assert response.status_code == 503

    @pytest.mark.parametrize(
        "stage,retryable,expected",
        [
            ("authenticating", False, 400),
            ("authenticating", True, 503),
            ("fetching", True, 503),
            ("submitting", True, 502),
            ("cancelled", False, 503),
            ("decrypting", False, 500),
        ],
    )
    async def test_failures_map_to_status(
        self, client, orchestrator, stage, retryable, expected
    ):
        orchestrator.trigger_sync.return_value = failed(stage, retryable)
        response = await client.post("/api/mylife/sync")
        assert response.status_code == expected

    async def test_api_key_required_when_configured(self, client, orchestrator):
        require_api_key("letmein")

        missing = await client.post("/api/mylife/sync")
        wrong = await client.post("/api/mylife/sync", headers={"X-API-Key": "nope"})
        right = await client.post("/api/mylife/sync", headers={"X-API-Key": "letmein"})

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert right.status_code == 200
        assert orchestrator.trigger_sync.await_count == 1


class TestSyncStatus:
    """Tests for GET /api/mylife/sync/status."""

    async def test_status_before_first_cycle(self, client, orchestrator):
        response = await client.get("/api/mylife/sync/status")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "idle"
        assert data["is_syncing"] is False
        assert data["last_cycle_id"] is None

    async def test_status_after_failure(self, client, orchestrator):
        orchestrator.state = SyncState.BACKOFF
        orchestrator.consecutive_failures = 2
        orchestrator.last_result = failed("fetching", True)

        data = (await client.get("/api/mylife/sync/status")).json()

        assert data["state"] == "backoff"
        assert data["consecutive_failures"] == 2
        assert data["last_success"] is False
        assert data["last_error_stage"] == "fetching"
        assert data["last_cycle_id"] == "abc123"

    async def test_status_reports_truncated_archive(self, client, orchestrator):
        """A read that needed record-by-record recovery is visible in status."""
        orchestrator.last_result = make_result(archive_truncated=True)

        data = (await client.get("/api/mylife/sync/status")).json()

        assert data["last_success"] is True
        assert data["last_archive_truncated"] is True
        assert data["last_records_skipped"] == 1

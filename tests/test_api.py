"""Tests for reportbot.api."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from reportbot.api.app import create_app
from reportbot.core.channels.webhook import WebhookDelivery
from reportbot.core.config import Config
from reportbot.core.cron.scheduler import ReportScheduler
from reportbot.memory.models import Commit, SummaryResult
from reportbot.memory.store import ReportStore

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
GENERIC_URL = "https://example.com/hooks/report"


async def _no_sleep(_seconds):
    return None


@pytest.fixture
def store(tmp_path):
    s = ReportStore(str(tmp_path / "test.db"))
    s.get_or_create_user("u1", "Alice")
    s.add_repository("u1", "https://github.com/acme/widgets", repository_id="r1")
    s.add_configuration("u1", "r1", "0 9 * * *", GENERIC_URL, config_id="c1")
    return s


@pytest.fixture
def source():
    src = MagicMock()
    src.fetch_commits = AsyncMock(
        return_value=[Commit(sha="abc1234", message="Fix login", author_name="Alice")]
    )
    return src


@pytest.fixture
async def app(store, source):
    """Create test app with state set manually (lifespan is not run)."""
    summarizer = MagicMock()
    summarizer.summarize = AsyncMock(return_value=SummaryResult(text="- Fix login", tokens_used=10))
    webhook_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    config = Config()

    application = create_app()
    application.state.config = config
    application.state.store = store
    application.state.scheduler = ReportScheduler(
        store=store,
        commit_source=source,
        summarizer=summarizer,
        delivery=WebhookDelivery(config.delivery, client=webhook_client, sleep=_no_sleep),
        config=config,
        clock=lambda: NOW,
    )
    yield application
    await webhook_client.aclose()


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c


# --- Health / stats ---

@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["scheduler_running"] is False


@pytest.mark.asyncio
async def test_tick_then_stats(client, store):
    resp = await client.post("/scheduler/tick")
    assert resp.status_code == 200
    assert resp.json()["successful"] == 1

    stats = (await client.get("/scheduler/stats")).json()
    assert stats["total_processed"] == 1
    assert stats["successful_runs"] == 1
    assert stats["is_running"] is False
    assert len(store.list_runs("u1")) == 1


# --- Manual run ---

@pytest.mark.asyncio
async def test_manual_run(client, source):
    since = (NOW - timedelta(days=2)).isoformat()
    until = NOW.isoformat()
    resp = await client.post(
        "/configurations/c1/run", json={"user_id": "u1", "since": since, "until": until}
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["delivered"] is True
    assert data["run_id"]
    assert source.fetch_commits.await_args.args[3] == NOW - timedelta(days=2)


@pytest.mark.asyncio
async def test_manual_run_rejects_inverted_window(client):
    resp = await client.post(
        "/configurations/c1/run",
        json={"user_id": "u1", "since": NOW.isoformat(), "until": (NOW - timedelta(days=1)).isoformat()},
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_manual_run_wrong_owner_is_404(client):
    resp = await client.post(
        "/configurations/c1/run", json={"user_id": "someone-else", "since": NOW.isoformat()}
    )
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "CONFIGURATION_NOT_FOUND"


# --- Test delivery ---

@pytest.mark.asyncio
async def test_webhook_test(client, store):
    resp = await client.post("/configurations/c1/test", json={"user_id": "u1"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["commits_found"] == 1
    assert data["attempts"] == 1
    assert store.list_runs("u1") == []

"""Tests for reportbot.core.cron.scheduler: tick + per-configuration pipeline."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from reportbot.core.channels.webhook import WebhookDelivery
from reportbot.core.config import Config
from reportbot.core.cron.scheduler import (
    ReportScheduler,
    format_report,
    no_commits_message,
)
from reportbot.core.errors import ReportBotError, SourceUnauthorized
from reportbot.core.security import CredentialCipher
from reportbot.memory.models import Commit, ConfigStatus, RunStatus, SummaryResult
from reportbot.memory.store import ReportStore

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)  # Monday
SLACK_URL = "https://hooks.slack.com/services/T000/B000/XXXX"
GENERIC_URL = "https://example.com/hooks/report"

COMMITS = [
    Commit(sha="ccc3333", message="Add dark mode", author_name="Bob"),
    Commit(sha="aaa1111", message="Fix login redirect", author_name="Alice"),
]


async def _no_sleep(_seconds):
    return None


class Webhooks:
    """Records webhook POSTs and answers with a fixed status."""

    def __init__(self, status: int = 200):
        self.status = status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status)

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def cipher():
    return CredentialCipher(CredentialCipher.generate_key())


@pytest.fixture
def store(tmp_path, cipher):
    s = ReportStore(str(tmp_path / "test.db"))
    s.get_or_create_user("u1", "Alice")
    s.add_repository(
        "u1", "https://github.com/acme/widgets",
        encrypted_access_token=cipher.encrypt("ghp_secret"), repository_id="r1",
    )
    return s


@pytest.fixture
def source():
    src = MagicMock()
    src.fetch_commits = AsyncMock(return_value=list(COMMITS))
    return src


@pytest.fixture
def summarizer():
    s = MagicMock()
    s.summarize = AsyncMock(
        return_value=SummaryResult(
            text="## Features\n- Dark mode", tokens_used=150, cost_usd=0.01, model="test-model"
        )
    )
    return s


@pytest.fixture
def webhooks():
    return Webhooks()


@pytest.fixture
async def http_client(webhooks):
    async with httpx.AsyncClient(transport=httpx.MockTransport(webhooks)) as client:
        yield client


def _make_scheduler(store, source, summarizer, client, cipher=None, **scheduler_cfg):
    config = Config(scheduler=scheduler_cfg) if scheduler_cfg else Config()
    return ReportScheduler(
        store=store,
        commit_source=source,
        summarizer=summarizer,
        delivery=WebhookDelivery(config.delivery, client=client, sleep=_no_sleep),
        config=config,
        cipher=cipher,
        clock=lambda: NOW,
    )


@pytest.fixture
def sched(store, source, summarizer, http_client, cipher):
    return _make_scheduler(store, source, summarizer, http_client, cipher)


# ── Happy path ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_tick_processes_due_configuration(sched, store, source, webhooks):
    store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id="c1")

    stats = await sched.tick()

    assert (stats.due, stats.processed, stats.successful, stats.failed) == (1, 1, 1, 0)
    source.fetch_commits.assert_awaited_once_with(
        "https://github.com/acme/widgets", "main", "ghp_secret", NOW - timedelta(days=1), None
    )

    run = store.list_runs("u1")[0]
    assert run.status is RunStatus.SUCCESS
    assert run.commits_processed == 2
    assert (run.commit_range_from, run.commit_range_to) == ("aaa1111", "ccc3333")
    assert run.tokens_used == 150
    assert run.webhook_delivered is True
    assert run.webhook_delivery_attempts == 1
    assert run.configuration_snapshot["schedule"] == "0 9 * * *"

    cfg = store.get_configuration("c1", "u1")
    assert cfg.last_run_status is ConfigStatus.SUCCESS
    assert cfg.last_run_at == NOW
    assert "Git Report - 2 Commits" in cfg.last_report_content

    payload = webhooks.payloads[0]
    assert payload["commitsCount"] == 2
    assert payload["isManual"] is False
    assert "blocks" in payload


@pytest.mark.asyncio
async def test_not_due_configuration_is_skipped(sched, store, source):
    store.add_configuration(
        "u1", "r1", "0 9 * * *", SLACK_URL, config_id="c1", last_run_at=NOW - timedelta(minutes=30)
    )
    stats = await sched.tick()
    assert stats.due == 0
    source.fetch_commits.assert_not_called()


@pytest.mark.asyncio
async def test_since_is_last_run(sched, store, source):
    last = NOW - timedelta(days=1, hours=2)
    store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id="c1", last_run_at=last)
    await sched.tick()
    assert source.fetch_commits.await_args.args[3] == last


@pytest.mark.asyncio
async def test_weekly_first_run_looks_back_a_week(sched, store, source, summarizer):
    store.add_configuration("u1", "r1", "0 9 * * 1", SLACK_URL, config_id="c1")
    await sched.tick()
    assert source.fetch_commits.await_args.args[3] == NOW - timedelta(days=7)
    assert summarizer.summarize.await_args.args[1] == "week"


# ── Empty and failing runs ─────────────────────────────────


@pytest.mark.asyncio
async def test_zero_commits_succeeds_without_delivery(sched, store, source, webhooks):
    source.fetch_commits.return_value = []
    store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id="c1")

    stats = await sched.tick()

    assert stats.successful == 1
    assert webhooks.requests == []
    run = store.list_runs("u1")[0]
    assert run.status is RunStatus.SUCCESS
    assert run.commits_processed == 0
    assert run.webhook_delivered is False
    cfg = store.get_configuration("c1", "u1")
    assert cfg.last_run_status is ConfigStatus.SUCCESS
    assert cfg.last_report_content.endswith("No new commits found in the last day.")


@pytest.mark.asyncio
async def test_unauthorized_source_fails_run(sched, store, source, webhooks):
    source.fetch_commits.side_effect = SourceUnauthorized("Invalid GitHub token")
    store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id="c1")

    stats = await sched.tick()

    assert stats.failed == 1
    run = store.list_runs("u1")[0]
    assert run.status is RunStatus.FAILED
    assert run.error_code == "TOKEN_INVALID"
    assert run.error_message == "Invalid GitHub token"
    assert store.get_configuration("c1", "u1").last_run_status is ConfigStatus.FAILED
    assert webhooks.requests == []


@pytest.mark.asyncio
async def test_usage_limit_blocks_before_run_is_created(sched, store, source):
    store.set_user_plan("u1", 0)
    store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id="c1")

    stats = await sched.tick()

    assert stats.failed == 1
    assert store.list_runs("u1") == []
    source.fetch_commits.assert_not_called()
    cfg = store.get_configuration("c1", "u1")
    assert cfg.last_run_status is ConfigStatus.FAILED
    assert cfg.last_run_at == NOW
    assert cfg.last_report_content == "Monthly usage limit exceeded"


@pytest.mark.asyncio
async def test_delivery_failure_keeps_run_successful(store, source, summarizer, cipher):
    webhooks = Webhooks(status=500)
    store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id="c1")
    async with httpx.AsyncClient(transport=httpx.MockTransport(webhooks)) as client:
        sched = _make_scheduler(store, source, summarizer, client, cipher)
        await sched.tick()

    assert len(webhooks.requests) == 3
    run = store.list_runs("u1")[0]
    assert run.status is RunStatus.SUCCESS
    assert run.webhook_delivered is False
    assert run.webhook_delivery_attempts == 3
    assert run.webhook_response_status == 500
    assert store.get_configuration("c1", "u1").last_run_status is ConfigStatus.FAILED


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_tick(sched, store, source):
    store.add_repository("u1", "https://github.com/acme/broken", repository_id="r2")
    store.add_configuration("u1", "r2", "0 9 * * *", SLACK_URL, config_id="c-broken")
    store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id="c-ok")

    async def fetch(url, *args):
        if url.endswith("broken"):
            raise RuntimeError("upstream exploded")
        return list(COMMITS)

    source.fetch_commits.side_effect = fetch
    stats = await sched.tick()

    assert (stats.processed, stats.successful, stats.failed) == (2, 1, 1)
    assert store.get_configuration("c-ok", "u1").last_run_status is ConfigStatus.SUCCESS
    failed = [r for r in store.list_runs("u1") if r.status is RunStatus.FAILED]
    assert failed[0].error_code == "UNKNOWN_ERROR"


@pytest.mark.asyncio
async def test_repository_of_other_user_is_not_found(sched, store):
    store.get_or_create_user("u2")
    store.add_repository("u2", "https://github.com/other/repo", repository_id="r-other")
    cfg = store.add_configuration("u1", "r-other", "0 9 * * *", SLACK_URL, config_id="c1")

    outcome = await sched.process_configuration(cfg)

    assert outcome.error_code == "REPOSITORY_NOT_FOUND"
    assert store.get_run(outcome.run_id, "u1").status is RunStatus.FAILED


@pytest.mark.asyncio
async def test_encrypted_token_without_key_fails(store, source, summarizer, http_client):
    sched = _make_scheduler(store, source, summarizer, http_client, cipher=None)
    cfg = store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id="c1")

    outcome = await sched.process_configuration(cfg)

    assert outcome.error_code == "CREDENTIAL_INVALID"
    source.fetch_commits.assert_not_called()


@pytest.mark.asyncio
async def test_item_timeout_fails_run(store, source, summarizer, http_client, cipher):
    async def slow(*args):
        await asyncio.sleep(5)
        return list(COMMITS)

    source.fetch_commits.side_effect = slow
    sched = _make_scheduler(store, source, summarizer, http_client, cipher, item_timeout_s=0.05)
    cfg = store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id="c1")

    outcome = await sched.process_configuration(cfg)

    assert outcome.success is False
    assert outcome.error_code == "TIMEOUT"
    assert store.get_run(outcome.run_id, "u1").error_code == "TIMEOUT"


# ── Concurrency ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(sched, store, source):
    store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id="c1")
    async with sched._tick_lock:
        stats = await sched.tick()
    assert stats.skipped is True
    source.fetch_commits.assert_not_called()


@pytest.mark.asyncio
async def test_configuration_in_flight_is_not_processed_twice(sched, store, source):
    store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id="c1")
    sched._in_flight.add("c1")
    outcome = await sched.run_configuration("c1", "u1", NOW - timedelta(days=1), NOW)
    assert outcome.error_code == "IN_PROGRESS"
    assert store.list_runs("u1") == []


@pytest.mark.asyncio
async def test_bounded_concurrency_processes_all(store, source, summarizer, http_client, cipher):
    sched = _make_scheduler(store, source, summarizer, http_client, cipher, max_concurrency=3)
    for i in range(4):
        store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id=f"c{i}")
    stats = await sched.tick()
    assert (stats.processed, stats.successful) == (4, 4)
    assert sched.stats().total_processed == 4
    assert sched.stats().in_flight == 0
    assert sched._user_locks == {}
    assert not sched._user_waiters


# ── Timezones ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_due_selection_uses_owner_timezone(sched, store):
    last = datetime(2024, 1, 14, 14, 0, tzinfo=timezone.utc)  # 09:00 in New York
    store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id="c1", last_run_at=last)

    assert [d.configuration.id for d in sched.get_due_configurations(NOW)] == ["c1"]

    store.set_user_timezone("u1", "America/New_York")  # NOW is 05:00 there
    assert sched.get_due_configurations(NOW) == []


@pytest.mark.asyncio
async def test_timezone_lookup_failure_falls_back_to_default(sched, store):
    store.set_user_timezone("u1", "America/New_York")
    store.add_configuration("u1", "r1", "0 9 * * *", SLACK_URL, config_id="c1")
    with patch.object(
        store, "get_enabled_configurations_with_timezones",
        side_effect=sqlite3.OperationalError("no such column"),
    ):
        due = sched.get_due_configurations(NOW)
    assert [(d.configuration.id, d.timezone) for d in due] == [("c1", "UTC")]


# ── Manual operations ──────────────────────────────────────


@pytest.mark.asyncio
async def test_manual_run_uses_window(sched, store, source, webhooks):
    store.add_configuration(
        "u1", "r1", "0 9 * * *", GENERIC_URL, config_id="c1", last_run_at=NOW - timedelta(minutes=5)
    )
    since, until = NOW - timedelta(days=3), NOW - timedelta(days=1)

    outcome = await sched.run_configuration("c1", "u1", since, until)

    assert outcome.success and outcome.delivered
    source.fetch_commits.assert_awaited_once_with(
        "https://github.com/acme/widgets", "main", "ghp_secret", since, until
    )
    payload = webhooks.payloads[0]
    assert payload["isManual"] is True
    assert payload["dateRange"]["since"].startswith("2024-01-12T10:00")
    assert payload["content"].startswith("📊 **Git Report - 2 Commits**")


@pytest.mark.asyncio
async def test_manual_run_leaves_schedule_state(sched, store, source):
    last = NOW - timedelta(hours=20)
    store.add_configuration("u1", "r1", "0 9 * * *", GENERIC_URL, config_id="c1", last_run_at=last)

    outcome = await sched.run_configuration("c1", "u1", NOW - timedelta(days=30), NOW - timedelta(days=29))

    assert outcome.success
    assert store.get_run(outcome.run_id, "u1").status is RunStatus.SUCCESS
    cfg = store.get_configuration("c1", "u1")
    assert cfg.last_run_at == last
    assert cfg.last_run_status is None
    assert cfg.last_report_content is None

    # The next scheduled run still starts where the last scheduled one ended
    await sched.tick()
    assert source.fetch_commits.await_args.args[3] == last
    assert store.get_configuration("c1", "u1").last_run_at == NOW


@pytest.mark.asyncio
async def test_manual_run_failure_leaves_schedule_state(sched, store, source):
    last = NOW - timedelta(hours=20)
    store.add_configuration("u1", "r1", "0 9 * * *", GENERIC_URL, config_id="c1", last_run_at=last)
    source.fetch_commits.side_effect = SourceUnauthorized("bad token")

    outcome = await sched.run_configuration("c1", "u1", NOW - timedelta(days=2), NOW - timedelta(days=1))

    assert not outcome.success
    assert store.get_run(outcome.run_id, "u1").status is RunStatus.FAILED
    cfg = store.get_configuration("c1", "u1")
    assert cfg.last_run_at == last
    assert cfg.last_run_status is None


@pytest.mark.asyncio
async def test_user_lock_is_dropped_after_release(sched):
    async with sched._user_lock("u1"):
        waiter = asyncio.create_task(_hold(sched, "u1"))
        await asyncio.sleep(0)
        assert sched._user_waiters["u1"] == 2
    await waiter
    assert "u1" not in sched._user_locks
    assert "u1" not in sched._user_waiters


async def _hold(sched, user_id):
    async with sched._user_lock(user_id):
        return None

@pytest.mark.asyncio
async def test_manual_run_unknown_configuration(sched):
    with pytest.raises(ReportBotError) as info:
        await sched.run_configuration("nope", "u1", NOW - timedelta(days=1), NOW)
    assert info.value.code == "CONFIGURATION_NOT_FOUND"


@pytest.mark.asyncio
async def test_test_delivery_records_no_run(sched, store, source, webhooks):
    store.add_configuration("u1", "r1", "0 9 * * *", GENERIC_URL, config_id="c1")

    outcome = await sched.test_configuration("c1", "u1")

    assert outcome.success is True
    assert outcome.commits_found == 2
    assert outcome.since == NOW - timedelta(days=7)
    assert store.list_runs("u1") == []
    assert store.get_configuration("c1", "u1").last_run_at is None
    payload = webhooks.payloads[0]
    assert payload["content"].startswith("[TEST] ")
    assert payload["isTest"] is True


@pytest.mark.asyncio
async def test_test_delivery_without_commits(sched, store, source, webhooks):
    source.fetch_commits.return_value = []
    store.add_configuration("u1", "r1", "0 9 * * *", GENERIC_URL, config_id="c1")
    outcome = await sched.test_configuration("c1", "u1")
    assert outcome.success is True
    assert outcome.webhook_sent is False
    assert webhooks.requests == []


# ── Lifecycle ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_start_registers_tick_job(sched):
    await sched.start()
    try:
        assert sched.running
        job = sched._scheduler.get_job("report-tick")
        assert job is not None
    finally:
        await sched.stop()


@pytest.mark.asyncio
async def test_disabled_scheduler_does_not_start(store, source, summarizer, http_client):
    sched = _make_scheduler(store, source, summarizer, http_client, enabled=False)
    await sched.start()
    assert not sched.running


# ── Report text ────────────────────────────────────────────


def test_format_report_header(store):
    repo = store.get_repository("r1")
    text = format_report("## Body", repo, "main", COMMITS, NOW - timedelta(days=1), NOW)
    lines = text.splitlines()
    assert lines[0] == "📊 **Git Report - 2 Commits**"
    assert "**Repository:** https://github.com/acme/widgets" in lines
    assert "**Period:** Jan 14, 2024 10:00 - Jan 15, 2024 10:00 UTC" in lines
    assert text.endswith("---\n\n## Body")


def test_no_commits_message(store):
    repo = store.get_repository("r1")
    text = no_commits_message(repo, "main", "week", NOW - timedelta(days=7), NOW)
    assert text.endswith("No new commits found in the last week.")

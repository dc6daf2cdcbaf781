"""Tests for reportbot.memory.store."""

from datetime import datetime, timedelta, timezone

import pytest
from reportbot.memory.models import ConfigStatus, ReportRun, RunStatus
from reportbot.memory.store import ReportStore

T0 = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    s = ReportStore(str(tmp_path / "test.db"))
    s.get_or_create_user("u1", "Alice", timezone="Europe/Istanbul")
    s.get_or_create_user("u2", "Bob")
    return s


@pytest.fixture
def repo(store):
    return store.add_repository("u1", "https://github.com/acme/widgets", repository_id="r1")


def _run(run_id, user_id="u1", status=RunStatus.SUCCESS, started_at=T0, config_id=None):
    return ReportRun(
        id=run_id,
        user_id=user_id,
        repository_id="r1",
        report_configuration_id=config_id,
        started_at=started_at,
        status=status,
    )


def test_user_timezone_and_plan(store):
    assert store.get_user_timezone("u1") == "Europe/Istanbul"
    assert store.get_user_timezone("u2") is None
    assert store.get_user_limit("u1") is None

    store.set_user_plan("u1", 200, plan_name="Pro")
    assert store.get_user_limit("u1") == 200
    store.set_user_timezone("u2", "America/New_York")
    assert store.get_user_timezone("u2") == "America/New_York"


def test_repository_roundtrip(store, repo):
    assert repo.name == "widgets"
    loaded = store.get_repository("r1")
    assert loaded.url == "https://github.com/acme/widgets"
    assert loaded.provider == "github"
    assert store.get_repository("nope") is None


def test_enabled_configurations_with_timezones(store, repo):
    store.add_configuration("u1", "r1", "0 9 * * *", "https://example.com/a", config_id="c1")
    store.add_configuration("u1", "r1", "0 9 * * 1", "https://example.com/b", config_id="c2", enabled=False)
    rows = store.get_enabled_configurations_with_timezones()
    assert [(cfg.id, tz) for cfg, tz in rows] == [("c1", "Europe/Istanbul")]
    assert [c.id for c in store.get_enabled_configurations()] == ["c1"]

    store.set_configuration_enabled("c2", "u1", True)
    assert len(store.get_enabled_configurations()) == 2


def test_configuration_scoped_by_user(store, repo):
    store.add_configuration("u1", "r1", "0 9 * * *", "https://example.com/a", config_id="c1")
    assert store.get_configuration("c1", "u1") is not None
    assert store.get_configuration("c1", "u2") is None

    # Updates from another user are ignored
    store.update_configuration_status("c1", "u2", ConfigStatus.FAILED, T0)
    assert store.get_configuration("c1").last_run_status is None


def test_update_configuration_status_keeps_content(store, repo):
    store.add_configuration("u1", "r1", "0 9 * * *", "https://example.com/a", config_id="c1")
    store.update_configuration_status("c1", "u1", ConfigStatus.SUCCESS, T0, "report 1")
    store.update_configuration_status("c1", "u1", ConfigStatus.FAILED, T0 + timedelta(hours=1))

    cfg = store.get_configuration("c1", "u1")
    assert cfg.last_run_status is ConfigStatus.FAILED
    assert cfg.last_run_at == T0 + timedelta(hours=1)
    assert cfg.last_report_content == "report 1"


def test_run_insert_and_conditional_update(store, repo):
    store.insert_run(_run("run1", status=RunStatus.RUNNING))
    updated = store.update_run(
        "run1", "u1", {"status": RunStatus.SUCCESS, "tokens_used": 42},
        only_if_status=RunStatus.RUNNING,
    )
    assert updated.status is RunStatus.SUCCESS
    assert updated.tokens_used == 42

    # Already terminal: conditional update matches nothing
    assert store.update_run(
        "run1", "u1", {"status": RunStatus.FAILED}, only_if_status=RunStatus.RUNNING
    ) is None
    assert store.get_run("run1", "u1").status is RunStatus.SUCCESS


def test_update_run_rejects_unknown_columns(store, repo):
    store.insert_run(_run("run1"))
    with pytest.raises(ValueError):
        store.update_run("run1", "u1", {"user_id": "u2"})


def test_count_successful_runs_since(store, repo):
    store.insert_run(_run("a", started_at=T0))
    store.insert_run(_run("b", started_at=T0 + timedelta(days=1)))
    store.insert_run(_run("c", status=RunStatus.FAILED, started_at=T0))
    store.insert_run(_run("d", started_at=T0 - timedelta(days=30)))

    assert store.count_successful_runs_since("u1", T0) == 2
    assert store.count_successful_runs_since("u2", T0) == 0


def test_list_runs_newest_first(store, repo):
    for i in range(3):
        store.insert_run(_run(f"run{i}", started_at=T0 + timedelta(hours=i)))
    runs = store.list_runs("u1", limit=2)
    assert [r.id for r in runs] == ["run2", "run1"]
    assert [r.id for r in store.list_runs("u1", limit=2, offset=2)] == ["run0"]


def test_run_snapshot_json(store, repo):
    run = _run("run1")
    run.configuration_snapshot = {"schedule": "0 9 * * *", "name": "daily"}
    store.insert_run(run)
    assert store.get_run("run1", "u1").configuration_snapshot["name"] == "daily"

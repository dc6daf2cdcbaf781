"""SQLite-based report store.

Four tables:
    users, repositories, report_configurations, report_runs

Every mutating query on configurations and runs is scoped by
``user_id`` as well as the primary key.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from reportbot.core.utils import to_db, utcnow
from reportbot.memory.models import (
    ConfigStatus,
    Repository,
    ReportRun,
    RunStatus,
    ScheduleConfiguration,
)

# Columns RunLedger may write through update_run().
_RUN_UPDATABLE = frozenset({
    "status",
    "completed_at",
    "tokens_used",
    "cost_usd",
    "commits_processed",
    "commit_range_from",
    "commit_range_to",
    "report_content",
    "error_message",
    "error_code",
    "webhook_delivered",
    "webhook_delivery_attempts",
    "webhook_last_attempt_at",
    "webhook_response_status",
})


class ReportStore:
    """SQLite store: single source of truth for configurations and runs."""

    def __init__(self, db_path: str = "data/reportbot.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"ReportStore initialized: {db_path}")

    @contextmanager
    def _get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript(_SCHEMA)
            conn.commit()

    # ════════════════════════════════════════════════════════════
    # USERS
    # ════════════════════════════════════════════════════════════

    def get_or_create_user(
        self, user_id: str, name: str | None = None, timezone: str | None = None
    ) -> str:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT user_id FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
            if row:
                return user_id
            conn.execute(
                "INSERT INTO users (user_id, name, timezone) VALUES (?, ?, ?)",
                (user_id, name, timezone),
            )
            conn.commit()
            logger.info(f"New user created: {user_id}")
        return user_id

    def set_user_timezone(self, user_id: str, timezone: str | None) -> None:
        with self._get_conn() as conn:
            conn.execute(
                "UPDATE users SET timezone = ? WHERE user_id = ?", (timezone, user_id)
            )
            conn.commit()

    def get_user_timezone(self, user_id: str) -> str | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT timezone FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row["timezone"] if row else None

    def set_user_plan(
        self, user_id: str, monthly_runs_limit: int | None, plan_name: str = "Free"
    ) -> None:
        with self._get_conn() as conn:
            conn.execute(
                "UPDATE users SET monthly_runs_limit = ?, plan_name = ? WHERE user_id = ?",
                (monthly_runs_limit, plan_name, user_id),
            )
            conn.commit()

    def get_user_limit(self, user_id: str) -> int | None:
        """Monthly successful-run limit from the user's plan (None = plan default)."""
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT monthly_runs_limit FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row["monthly_runs_limit"] if row else None

    # ════════════════════════════════════════════════════════════
    # REPOSITORIES
    # ════════════════════════════════════════════════════════════

    def add_repository(
        self,
        user_id: str,
        url: str,
        name: str = "",
        branch: str = "main",
        provider: str = "github",
        encrypted_access_token: str | None = None,
        repository_id: str | None = None,
    ) -> Repository:
        repo = Repository(
            id=repository_id or str(uuid.uuid4()),
            user_id=user_id,
            url=url,
            name=name or url.rstrip("/").rsplit("/", 1)[-1],
            branch=branch,
            provider=provider,
            encrypted_access_token=encrypted_access_token,
        )
        with self._get_conn() as conn:
            conn.execute(
                "INSERT INTO repositories "
                "(id, user_id, url, name, branch, provider, encrypted_access_token) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    repo.id, repo.user_id, repo.url, repo.name, repo.branch,
                    repo.provider, repo.encrypted_access_token,
                ),
            )
            conn.commit()
        return repo

    def get_repository(self, repository_id: str) -> Repository | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM repositories WHERE id = ?", (repository_id,)
            ).fetchone()
        return Repository(**dict(row)) if row else None

    # ════════════════════════════════════════════════════════════
    # REPORT CONFIGURATIONS
    # ════════════════════════════════════════════════════════════

    def add_configuration(
        self,
        user_id: str,
        repository_id: str,
        schedule: str,
        webhook_url: str,
        branch: str = "main",
        name: str = "",
        enabled: bool = True,
        last_run_at: datetime | None = None,
        config_id: str | None = None,
    ) -> ScheduleConfiguration:
        cfg = ScheduleConfiguration(
            id=config_id or str(uuid.uuid4()),
            user_id=user_id,
            repository_id=repository_id,
            branch=branch,
            name=name,
            schedule=schedule,
            webhook_url=webhook_url,
            enabled=enabled,
            last_run_at=last_run_at,
        )
        with self._get_conn() as conn:
            conn.execute(
                "INSERT INTO report_configurations "
                "(id, user_id, repository_id, branch, name, schedule, webhook_url, "
                "enabled, last_run_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    cfg.id, cfg.user_id, cfg.repository_id, cfg.branch, cfg.name,
                    cfg.schedule, cfg.webhook_url, int(cfg.enabled), to_db(last_run_at),
                ),
            )
            conn.commit()
        return cfg

    def get_configuration(
        self, config_id: str, user_id: str | None = None
    ) -> ScheduleConfiguration | None:
        sql = "SELECT * FROM report_configurations WHERE id = ?"
        params: tuple = (config_id,)
        if user_id is not None:
            sql += " AND user_id = ?"
            params = (config_id, user_id)
        with self._get_conn() as conn:
            row = conn.execute(sql, params).fetchone()
        return _to_configuration(row) if row else None

    def list_configurations(self, user_id: str | None = None) -> list[ScheduleConfiguration]:
        with self._get_conn() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM report_configurations WHERE user_id = ? ORDER BY created_at",
                    (user_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM report_configurations ORDER BY created_at"
                ).fetchall()
        return [_to_configuration(r) for r in rows]

    def get_enabled_configurations(self) -> list[ScheduleConfiguration]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM report_configurations WHERE enabled = 1 ORDER BY created_at"
            ).fetchall()
        return [_to_configuration(r) for r in rows]

    def get_enabled_configurations_with_timezones(
        self,
    ) -> list[tuple[ScheduleConfiguration, str | None]]:
        """Enabled configurations joined with their owner's timezone."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT c.*, u.timezone AS owner_timezone "
                "FROM report_configurations c "
                "LEFT JOIN users u ON u.user_id = c.user_id "
                "WHERE c.enabled = 1 ORDER BY c.created_at"
            ).fetchall()
        return [(_to_configuration(r), r["owner_timezone"]) for r in rows]

    def set_configuration_enabled(self, config_id: str, user_id: str, enabled: bool) -> None:
        with self._get_conn() as conn:
            conn.execute(
                "UPDATE report_configurations SET enabled = ?, updated_at = ? "
                "WHERE id = ? AND user_id = ?",
                (int(enabled), to_db(utcnow()), config_id, user_id),
            )
            conn.commit()

    def update_configuration_status(
        self,
        config_id: str,
        user_id: str,
        status: ConfigStatus,
        run_at: datetime,
        report_content: str | None = None,
    ) -> None:
        """Record the outcome of a processed run on its configuration.

        ``last_report_content`` is only overwritten when new content is given.
        """
        with self._get_conn() as conn:
            conn.execute(
                "UPDATE report_configurations SET last_run_status = ?, last_run_at = ?, "
                "last_report_content = COALESCE(?, last_report_content), updated_at = ? "
                "WHERE id = ? AND user_id = ?",
                (
                    ConfigStatus(status).value, to_db(run_at), report_content,
                    to_db(utcnow()), config_id, user_id,
                ),
            )
            conn.commit()

    # ════════════════════════════════════════════════════════════
    # REPORT RUNS
    # ════════════════════════════════════════════════════════════

    def insert_run(self, run: ReportRun) -> ReportRun:
        with self._get_conn() as conn:
            conn.execute(
                "INSERT INTO report_runs "
                "(id, user_id, repository_id, report_configuration_id, started_at, status, "
                "configuration_snapshot, model_used, tokens_used, cost_usd, "
                "commits_processed, report_format, webhook_delivered, "
                "webhook_delivery_attempts) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    run.id, run.user_id, run.repository_id, run.report_configuration_id,
                    to_db(run.started_at), run.status.value,
                    json.dumps(run.configuration_snapshot)
                    if run.configuration_snapshot is not None else None,
                    run.model_used, run.tokens_used, run.cost_usd,
                    run.commits_processed, run.report_format,
                    int(run.webhook_delivered), run.webhook_delivery_attempts,
                ),
            )
            conn.commit()
        return run

    def update_run(
        self,
        run_id: str,
        user_id: str,
        updates: dict[str, Any],
        only_if_status: RunStatus | None = None,
    ) -> ReportRun | None:
        """Update a run scoped by id + user. Returns None when no row matched.

        ``only_if_status`` makes the update conditional on the current status,
        which is how terminal states are kept final.
        """
        unknown = set(updates) - _RUN_UPDATABLE
        if unknown:
            raise ValueError(f"Not updatable on report_runs: {sorted(unknown)}")

        values = {k: _db_value(v) for k, v in updates.items()}
        values["updated_at"] = to_db(utcnow())
        assignments = ", ".join(f"{col} = ?" for col in values)
        sql = f"UPDATE report_runs SET {assignments} WHERE id = ? AND user_id = ?"
        params = [*values.values(), run_id, user_id]
        if only_if_status is not None:
            sql += " AND status = ?"
            params.append(only_if_status.value)

        with self._get_conn() as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
            if cursor.rowcount == 0:
                return None
        return self.get_run(run_id, user_id)

    def get_run(self, run_id: str, user_id: str) -> ReportRun | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM report_runs WHERE id = ? AND user_id = ?",
                (run_id, user_id),
            ).fetchone()
        return _to_run(row) if row else None

    def list_runs(self, user_id: str, limit: int = 50, offset: int = 0) -> list[ReportRun]:
        """Runs for a user, newest first."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM report_runs WHERE user_id = ? "
                "ORDER BY started_at DESC LIMIT ? OFFSET ?",
                (user_id, limit, offset),
            ).fetchall()
        return [_to_run(r) for r in rows]

    def get_runs_since(self, user_id: str, since: datetime) -> list[ReportRun]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM report_runs WHERE user_id = ? AND started_at >= ? "
                "ORDER BY started_at DESC",
                (user_id, to_db(since)),
            ).fetchall()
        return [_to_run(r) for r in rows]

    def count_successful_runs_since(self, user_id: str, since: datetime) -> int:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM report_runs "
                "WHERE user_id = ? AND status = ? AND started_at >= ?",
                (user_id, RunStatus.SUCCESS.value, to_db(since)),
            ).fetchone()
        return row[0]

    def count_configuration_runs(self, config_id: str) -> int:
        """Runs still linked to a configuration (deleted configurations null the link)."""
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM report_runs WHERE report_configuration_id = ?",
                (config_id,),
            ).fetchone()
        return row[0]


# ════════════════════════════════════════════════════════════
# ROW MAPPING
# ════════════════════════════════════════════════════════════


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db(value)
    if isinstance(value, RunStatus):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _to_configuration(row: sqlite3.Row) -> ScheduleConfiguration:
    data = dict(row)
    data.pop("owner_timezone", None)
    data["enabled"] = bool(data["enabled"])
    return ScheduleConfiguration(**data)


def _to_run(row: sqlite3.Row) -> ReportRun:
    data = dict(row)
    snapshot = data.get("configuration_snapshot")
    data["configuration_snapshot"] = json.loads(snapshot) if snapshot else None
    data["webhook_delivered"] = bool(data["webhook_delivered"])
    return ReportRun(**data)


# ════════════════════════════════════════════════════════════
# SCHEMA
# ════════════════════════════════════════════════════════════

_SCHEMA = """
-- 1. Users (timezone + plan limit)
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    name TEXT,
    timezone TEXT,
    monthly_runs_limit INTEGER,
    plan_name TEXT DEFAULT 'Free',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- 2. Repositories (encrypted access token)
CREATE TABLE IF NOT EXISTS repositories (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    url TEXT NOT NULL,
    name TEXT,
    branch TEXT DEFAULT 'main',
    provider TEXT DEFAULT 'github',
    encrypted_access_token TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(user_id)
);

-- 3. Report schedules
CREATE TABLE IF NOT EXISTS report_configurations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    repository_id TEXT NOT NULL,
    branch TEXT DEFAULT 'main',
    name TEXT DEFAULT '',
    schedule TEXT NOT NULL,
    webhook_url TEXT NOT NULL,
    enabled INTEGER DEFAULT 1,
    last_run_at TEXT,
    last_run_status TEXT,
    last_report_content TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT,
    FOREIGN KEY (user_id) REFERENCES users(user_id),
    FOREIGN KEY (repository_id) REFERENCES repositories(id)
);
CREATE INDEX IF NOT EXISTS idx_configurations_enabled
    ON report_configurations(enabled);

-- 4. Run audit log
CREATE TABLE IF NOT EXISTS report_runs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    repository_id TEXT NOT NULL,
    report_configuration_id TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    configuration_snapshot TEXT,
    model_used TEXT,
    tokens_used INTEGER DEFAULT 0,
    cost_usd REAL DEFAULT 0,
    commits_processed INTEGER DEFAULT 0,
    commit_range_from TEXT,
    commit_range_to TEXT,
    report_content TEXT,
    report_format TEXT DEFAULT 'markdown',
    error_message TEXT,
    error_code TEXT,
    webhook_delivered INTEGER DEFAULT 0,
    webhook_delivery_attempts INTEGER DEFAULT 0,
    webhook_last_attempt_at TEXT,
    webhook_response_status INTEGER,
    updated_at TEXT,
    FOREIGN KEY (user_id) REFERENCES users(user_id),
    FOREIGN KEY (report_configuration_id)
        REFERENCES report_configurations(id) ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS idx_runs_user_status
    ON report_runs(user_id, status, started_at);
CREATE INDEX IF NOT EXISTS idx_runs_configuration
    ON report_runs(report_configuration_id);
"""

"""ReportScheduler: APScheduler tick + per-configuration report pipeline.

Each tick loads enabled configurations, keeps the ones the cron
evaluator says are due, and drives every due configuration through:

    usage gate → run created → commits → summary → delivery → run completed

A failure in one configuration is recorded on its run and configuration
and never stops the rest of the tick.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, AsyncIterator, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from reportbot.core.channels.webhook import WebhookDelivery
from reportbot.core.config.schema import Config
from reportbot.core.cron.evaluator import (
    default_lookback,
    is_due,
    next_run_time,
    period_label,
)
from reportbot.core.cron.types import (
    DueConfiguration,
    ProcessOutcome,
    SchedulerStats,
    TickStats,
    WebhookTestOutcome,
)
from reportbot.core.errors import (
    CredentialError,
    PersistenceError,
    ReportBotError,
    RepositoryNotFound,
    UsageLimitExceeded,
    error_code,
)
from reportbot.core.providers.base import CommitSource, Summarizer
from reportbot.core.runs.ledger import RunLedger
from reportbot.core.runs.usage import UsageGate
from reportbot.core.security import CredentialCipher
from reportbot.core.utils import ensure_utc, utcnow
from reportbot.memory.models import (
    Commit,
    ConfigStatus,
    DateRange,
    Repository,
    ReportRun,
    RunOutcome,
    ScheduleConfiguration,
    StyleOptions,
    WebhookMetadata,
)
from reportbot.memory.store import ReportStore

if TYPE_CHECKING:
    import httpx

TICK_JOB_ID = "report-tick"
TEST_LOOKBACK = timedelta(days=7)
USAGE_LIMIT_MESSAGE = "Monthly usage limit exceeded"


class ReportScheduler:
    """Bridge between the report store and APScheduler.

    All collaborators are injected; nothing here constructs an HTTP or
    database client on its own.
    """

    def __init__(
        self,
        store: ReportStore,
        commit_source: CommitSource,
        summarizer: Summarizer,
        delivery: WebhookDelivery,
        config: Config | None = None,
        cipher: CredentialCipher | None = None,
        ledger: RunLedger | None = None,
        usage_gate: UsageGate | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or Config()
        self.store = store
        self.commit_source = commit_source
        self.summarizer = summarizer
        self.delivery = delivery
        self.cipher = cipher
        self.ledger = ledger or RunLedger(store)
        self.usage_gate = usage_gate or UsageGate(
            store, default_limit=self.config.usage.default_monthly_runs_limit
        )
        self._clock = clock
        self._scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1}
        )
        self._tick_lock = asyncio.Lock()
        self._in_flight: set[str] = set()
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._user_waiters: Counter[str] = Counter()
        self._stats = SchedulerStats()

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        """Register the periodic tick and start APScheduler."""
        sched_cfg = self.config.scheduler
        if not sched_cfg.enabled:
            logger.info("ReportScheduler disabled")
            return
        self._scheduler.add_job(
            self.tick,
            trigger=CronTrigger.from_crontab(sched_cfg.tick_cron, timezone="UTC"),
            id=TICK_JOB_ID,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            f"ReportScheduler started (tick='{sched_cfg.tick_cron}', "
            f"concurrency={sched_cfg.max_concurrency})"
        )

    async def stop(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("ReportScheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def stats(self) -> SchedulerStats:
        return self._stats.model_copy(update={"in_flight": len(self._in_flight)})

    # ── Due selection ────────────────────────────────────────

    def get_due_configurations(self, now: datetime | None = None) -> list[DueConfiguration]:
        """Enabled configurations whose schedule is due at ``now``."""
        now = ensure_utc(now or self._clock())
        default_tz = self.config.scheduler.default_timezone
        fallback = timedelta(hours=self.config.scheduler.fallback_interval_hours)

        try:
            rows = self.store.get_enabled_configurations_with_timezones()
        except Exception as e:
            logger.warning(f"Timezone join failed ({e}); evaluating all schedules in {default_tz}")
            rows = [(cfg, None) for cfg in self.store.get_enabled_configurations()]

        due: list[DueConfiguration] = []
        for cfg, tz in rows:
            tz = tz or default_tz
            if not is_due(cfg.schedule, cfg.last_run_at, tz, now=now, fallback_interval=fallback):
                continue
            next_at = next_run_time(cfg.schedule, cfg.last_run_at, tz) if cfg.last_run_at else None
            logger.debug(
                f"DUE config {cfg.id}: schedule='{cfg.schedule}', tz={tz}, "
                f"last_run={cfg.last_run_at or 'never'}, next={next_at or 'n/a'}"
            )
            due.append(DueConfiguration(configuration=cfg, timezone=tz, next_run_at=next_at))
        return due

    # ── Tick ─────────────────────────────────────────────────

    async def tick(self) -> TickStats:
        """One scheduler pass. A tick that overlaps a running one is skipped."""
        started = self._clock()
        if self._tick_lock.locked():
            logger.warning("Previous scheduler tick still running, skipping this one")
            return TickStats(started_at=started, skipped=True)

        async with self._tick_lock:
            self._stats.last_tick_at = started
            self._stats.is_running = True
            try:
                return await self._run_tick(started)
            finally:
                self._stats.is_running = False

    async def _run_tick(self, started: datetime) -> TickStats:
        try:
            due = self.get_due_configurations(started)
        except Exception as e:
            logger.error(f"Critical error loading due configurations: {e}")
            return TickStats(started_at=started)

        if not due:
            logger.debug(f"Scheduler check at {started.isoformat()}: no configurations due")
            return TickStats(started_at=started)

        logger.info(f"Scheduler tick: {len(due)} due configuration(s)")
        outcomes = await self._process_all(due)

        successful = sum(1 for o in outcomes if o.success)
        tick = TickStats(
            started_at=started,
            due=len(due),
            processed=len(outcomes),
            successful=successful,
            failed=len(outcomes) - successful,
        )
        self._stats.total_processed += tick.processed
        self._stats.successful_runs += tick.successful
        self._stats.failed_runs += tick.failed
        logger.info(
            f"Batch complete: {tick.successful} successful, {tick.failed} failed "
            f"out of {tick.processed} configurations"
        )
        return tick

    async def _process_all(self, due: list[DueConfiguration]) -> list[ProcessOutcome]:
        limit = self.config.scheduler.max_concurrency
        if limit <= 1:
            return [await self._process_guarded(item) for item in due]

        semaphore = asyncio.Semaphore(limit)

        async def bounded(item: DueConfiguration) -> ProcessOutcome:
            async with semaphore:
                return await self._process_guarded(item)

        return list(await asyncio.gather(*(bounded(item) for item in due)))

    async def _process_guarded(
        self,
        item: DueConfiguration,
        window: tuple[datetime, datetime] | None = None,
        manual: bool = False,
    ) -> ProcessOutcome:
        """Serialize per user and never process one configuration twice at once."""
        cfg = item.configuration
        if cfg.id in self._in_flight:
            logger.warning(f"Config {cfg.id} is already being processed, skipping")
            return ProcessOutcome(configuration_id=cfg.id, error_code="IN_PROGRESS")

        self._in_flight.add(cfg.id)
        try:
            async with self._user_lock(cfg.user_id):
                return await self.process_configuration(cfg, window=window, manual=manual)
        except Exception as e:
            logger.error(f"Failed to process config {cfg.id}: {e}")
            return ProcessOutcome(configuration_id=cfg.id, error_code=error_code(e))
        finally:
            self._in_flight.discard(cfg.id)

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Per-user lock, dropped once its last holder or waiter leaves."""
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._user_waiters[user_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._user_waiters[user_id] -= 1
            if self._user_waiters[user_id] <= 0:
                del self._user_waiters[user_id]
                self._user_locks.pop(user_id, None)

    # ── Per-configuration pipeline ───────────────────────────

    async def process_configuration(
        self,
        cfg: ScheduleConfiguration,
        window: tuple[datetime, datetime] | None = None,
        manual: bool = False,
    ) -> ProcessOutcome:
        """Gate, record and generate one report.

        ``window`` overrides the commit range (manual runs); otherwise it
        starts at the last run, or a schedule-dependent lookback. Manual runs
        are recorded in the ledger only and leave the configuration untouched.
        """
        logger.info(f"Processing report configuration {cfg.id}")
        outcome = ProcessOutcome(configuration_id=cfg.id)

        limit = self.usage_gate.limit_for(cfg.user_id)
        if not self.usage_gate.check_limit(cfg.user_id, limit):
            denied = UsageLimitExceeded(cfg.user_id, limit)
            logger.warning(f"Config {cfg.id} skipped: {denied}")
            if not manual:
                self._set_status(cfg, ConfigStatus.FAILED, USAGE_LIMIT_MESSAGE)
            outcome.error_code = denied.code
            return outcome

        try:
            run = self.ledger.create(cfg, model=self.config.summarizer.model)
        except PersistenceError as e:
            logger.error(f"Failed to create report run for config {cfg.id}: {e}")
            outcome.error_code = e.code
            return outcome
        outcome.run_id = run.id

        try:
            delivered = await asyncio.wait_for(
                self._generate(cfg, run, window, manual),
                timeout=self.config.scheduler.item_timeout_s,
            )
        except Exception as e:
            code = error_code(e)
            message = str(e) or (
                "Report processing timed out" if code == "TIMEOUT" else type(e).__name__
            )
            logger.error(f"Error processing report configuration {cfg.id}: [{code}] {message}")
            self._fail_run(run, message, code)
            if not manual:
                self._set_status(cfg, ConfigStatus.FAILED)
            outcome.error_code = code
            return outcome

        outcome.success = True
        outcome.delivered = delivered
        return outcome

    async def _generate(
        self,
        cfg: ScheduleConfiguration,
        run: ReportRun,
        window: tuple[datetime, datetime] | None,
        manual: bool,
    ) -> bool | None:
        """Steps after run creation. Returns the delivery result (None if nothing was sent)."""
        repository = self._get_repository(cfg)
        credential = self._decrypt(repository)

        now = self._clock()
        if window:
            since, until = ensure_utc(window[0]), ensure_utc(window[1])
        else:
            since, until = self.since_date(cfg, now), now

        commits = await self.commit_source.fetch_commits(
            repository.url, cfg.branch, credential, since, until if window else None
        )
        period = period_label(cfg.schedule)

        if not commits:
            message = no_commits_message(repository, cfg.branch, period, since, until)
            self.ledger.mark_success(
                run.id,
                cfg.user_id,
                RunOutcome(
                    commit_range_from=since.isoformat(),
                    commit_range_to=until.isoformat(),
                    report_content=message,
                ),
            )
            if not manual:
                self.store.update_configuration_status(
                    cfg.id, cfg.user_id, ConfigStatus.SUCCESS, now, message
                )
            logger.info(f"Report configuration {cfg.id}: no new commits, nothing delivered")
            return None

        summary = await self.summarizer.summarize(
            commits, period, self._style(repository)
        )
        report = format_report(summary.text, repository, cfg.branch, commits, since, until)

        result = await self.delivery.deliver(
            cfg.webhook_url,
            report,
            WebhookMetadata(
                repository=repository.url,
                branch=cfg.branch,
                commits_count=len(commits),
                date_range=DateRange(since=since, until=until),
                is_manual=manual,
                provider=repository.provider,
            ),
        )
        self.ledger.update_webhook_delivery(
            run.id, cfg.user_id, result.delivered, result.status_code, attempts=result.attempts
        )

        # Newest commit first
        self.ledger.mark_success(
            run.id,
            cfg.user_id,
            RunOutcome(
                tokens_used=summary.tokens_used,
                cost_usd=summary.cost_usd,
                commits_processed=len(commits),
                commit_range_from=commits[-1].sha,
                commit_range_to=commits[0].sha,
                report_content=report,
            ),
        )
        if not manual:
            status = ConfigStatus.SUCCESS if result.delivered else ConfigStatus.FAILED
            self.store.update_configuration_status(cfg.id, cfg.user_id, status, now, report)

        logger.info(
            f"Report configuration {cfg.id} processed: {len(commits)} commits, "
            f"{summary.tokens_used} tokens, ${summary.cost_usd:.4f}, delivered={result.delivered}"
        )
        return result.delivered

    # ── Manual operations ────────────────────────────────────

    async def run_configuration(
        self,
        config_id: str,
        user_id: str,
        since: datetime,
        until: datetime,
    ) -> ProcessOutcome:
        """Run one configuration now over ``[since, until]``, ignoring its schedule."""
        cfg = self._get_configuration(config_id, user_id)
        tz = self.store.get_user_timezone(user_id) or self.config.scheduler.default_timezone
        return await self._process_guarded(
            DueConfiguration(configuration=cfg, timezone=tz),
            window=(since, until),
            manual=True,
        )

    async def test_configuration(self, config_id: str, user_id: str) -> WebhookTestOutcome:
        """Summarize the last 7 days and send it marked as a test. Records nothing."""
        cfg = self._get_configuration(config_id, user_id)
        repository = self._get_repository(cfg)
        credential = self._decrypt(repository)
        until = self._clock()
        since = until - TEST_LOOKBACK

        commits = await self.commit_source.fetch_commits(
            repository.url, cfg.branch, credential, since
        )
        if not commits:
            return WebhookTestOutcome(
                success=True,
                message="Test completed - no commits found in the last 7 days",
                since=since,
                until=until,
            )

        summary = await self.summarizer.summarize(commits, "week", self._style(repository))
        result = await self.delivery.deliver(
            cfg.webhook_url,
            f"[TEST] {summary.text}",
            WebhookMetadata(
                repository=repository.url,
                branch=cfg.branch,
                commits_count=len(commits),
                date_range=DateRange(since=since, until=until),
                is_test=True,
                provider=repository.provider,
            ),
        )
        return WebhookTestOutcome(
            success=result.delivered,
            message="Test webhook sent successfully" if result else "Test webhook failed to send",
            commits_found=len(commits),
            webhook_sent=result.delivered,
            attempts=result.attempts,
            since=since,
            until=until,
        )

    # ── Helpers ──────────────────────────────────────────────

    def since_date(self, cfg: ScheduleConfiguration, now: datetime) -> datetime:
        """Last run if there was one, else 1 day back (7 for weekly schedules)."""
        if cfg.last_run_at:
            return ensure_utc(cfg.last_run_at)
        return ensure_utc(now) - default_lookback(cfg.schedule)

    def _get_configuration(self, config_id: str, user_id: str) -> ScheduleConfiguration:
        cfg = self.store.get_configuration(config_id, user_id)
        if cfg is None:
            raise ReportBotError(
                f"Report configuration not found: {config_id}", code="CONFIGURATION_NOT_FOUND"
            )
        return cfg

    def _get_repository(self, cfg: ScheduleConfiguration) -> Repository:
        repository = self.store.get_repository(cfg.repository_id)
        if repository is None or repository.user_id != cfg.user_id:
            raise RepositoryNotFound(f"Repository not found for config {cfg.id}")
        return repository

    def _decrypt(self, repository: Repository) -> str | None:
        if not repository.encrypted_access_token:
            return None
        if self.cipher is None:
            raise CredentialError("No credential key configured to decrypt the access token")
        return self.cipher.decrypt(repository.encrypted_access_token)

    def _style(self, repository: Repository) -> StyleOptions:
        s = self.config.summarizer
        return StyleOptions(
            report_style=s.report_style,
            tone=s.tone,
            author_display=s.author_display,
            link_to_commits=s.link_to_commits,
            repository_url=repository.url,
        )

    def _set_status(
        self, cfg: ScheduleConfiguration, status: ConfigStatus, content: str | None = None
    ) -> None:
        try:
            self.store.update_configuration_status(
                cfg.id, cfg.user_id, status, self._clock(), content
            )
        except Exception as e:
            logger.error(f"Could not update status of config {cfg.id}: {e}")

    def _fail_run(self, run: ReportRun, message: str, code: str) -> None:
        try:
            self.ledger.mark_failed(run.id, run.user_id, message, code)
        except PersistenceError as e:
            logger.error(f"Could not mark run {run.id} as failed: {e}")


# ════════════════════════════════════════════════════════════
# REPORT TEXT
# ════════════════════════════════════════════════════════════


def format_period(since: datetime, until: datetime) -> str:
    fmt = "%b %d, %Y %H:%M"
    return f"{ensure_utc(since):{fmt}} - {ensure_utc(until):{fmt}} UTC"


def format_report(
    summary: str,
    repository: Repository,
    branch: str,
    commits: list[Commit],
    since: datetime,
    until: datetime,
) -> str:
    """Summary with a header block (title, repository, branch, period, count)."""
    count = len(commits)
    noun = "Commit" if count == 1 else "Commits"
    return (
        f"📊 **Git Report - {count} {noun}**\n\n"
        f"**Repository:** {repository.url}\n"
        f"**Branch:** {branch}\n"
        f"**Period:** {format_period(since, until)}\n"
        f"**Commits:** {count}\n\n"
        f"---\n\n"
        f"{summary}"
    )


def no_commits_message(
    repository: Repository, branch: str, period: str, since: datetime, until: datetime
) -> str:
    return (
        f"📊 **Git Report - No Activity**\n\n"
        f"**Repository:** {repository.url}\n"
        f"**Branch:** {branch}\n"
        f"**Period:** {format_period(since, until)}\n\n"
        f"No new commits found in the last {period}."
    )


# ════════════════════════════════════════════════════════════
# ASSEMBLY
# ════════════════════════════════════════════════════════════


def create_scheduler(
    config: Config,
    store: ReportStore,
    client: httpx.AsyncClient | None = None,
) -> ReportScheduler:
    """Wire the default collaborators: GitHub commits, LiteLLM summaries, webhooks.

    ``client`` is shared by the commit source and the delivery adapter.
    """
    from reportbot.core.providers.github import GitHubCommitSource
    from reportbot.core.providers.litellm_llm import LiteLLMSummarizer

    cipher = (
        CredentialCipher(config.security.credential_key)
        if config.security.credential_key else None
    )
    return ReportScheduler(
        store=store,
        commit_source=GitHubCommitSource(config.github, client=client),
        summarizer=LiteLLMSummarizer(config),
        delivery=WebhookDelivery(config.delivery, client=client),
        config=config,
        cipher=cipher,
    )

"""UsageGate: monthly successful-run quota.

The count of ``success`` runs started in the current UTC month is the
source of truth. The gate fails closed: if usage cannot be read, the
run is denied.
"""

from __future__ import annotations

from datetime import datetime

from loguru import logger

from reportbot.core.utils import start_of_month, utcnow
from reportbot.memory.models import MonthlyUsage, RunStatus
from reportbot.memory.store import ReportStore


class UsageGate:
    """Read-only quota checks against ReportStore."""

    def __init__(self, store: ReportStore, default_limit: int = 50):
        self.store = store
        self.default_limit = default_limit

    def limit_for(self, user_id: str) -> int:
        """User's plan limit, or the default plan limit if unset or unreadable."""
        try:
            limit = self.store.get_user_limit(user_id)
        except Exception as e:
            logger.error(f"Error fetching user limits for {user_id}: {e}")
            return self.default_limit
        return limit if limit is not None else self.default_limit

    def check_limit(self, user_id: str, limit: int | None = None, now: datetime | None = None) -> bool:
        """True while this month's successful runs are below ``limit``."""
        if limit is None:
            limit = self.limit_for(user_id)
        since = start_of_month(now)
        try:
            count = self.store.count_successful_runs_since(user_id, since)
        except Exception as e:
            logger.error(f"Error checking usage limit for {user_id}: {e}")
            return False
        allowed = count < limit
        if not allowed:
            logger.warning(f"User {user_id} has reached the monthly limit ({count}/{limit})")
        return allowed

    def monthly_usage(self, user_id: str, now: datetime | None = None) -> MonthlyUsage | None:
        """Aggregate this month's runs; None if the store cannot be read."""
        month = start_of_month(now or utcnow())
        try:
            runs = self.store.get_runs_since(user_id, month)
        except Exception as e:
            logger.error(f"Error fetching monthly usage for {user_id}: {e}")
            return None

        return MonthlyUsage(
            user_id=user_id,
            month=month,
            total_runs=len(runs),
            successful_runs=sum(1 for r in runs if r.status is RunStatus.SUCCESS),
            failed_runs=sum(1 for r in runs if r.status is RunStatus.FAILED),
            total_tokens=sum(r.tokens_used for r in runs),
            total_cost_usd=sum(r.cost_usd for r in runs),
            last_run_at=max((r.started_at for r in runs), default=None),
        )

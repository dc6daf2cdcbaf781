"""RunLedger: lifecycle of a single ReportRun.

States::

    running ──► success
        │
        ├────► failed
        │
        └────► cancelled   (external callers only)

Terminal states are final: completion updates only match rows that are
still ``running``, so a second transition is rejected rather than
overwriting the first outcome.
"""

from __future__ import annotations

import sqlite3
import uuid

from loguru import logger

from reportbot.core.errors import PersistenceError
from reportbot.core.utils import utcnow
from reportbot.memory.models import ReportRun, RunOutcome, RunStatus, ScheduleConfiguration
from reportbot.memory.store import ReportStore


class RunLedger:
    """Creates and completes ReportRun rows through ReportStore."""

    def __init__(self, store: ReportStore):
        self.store = store

    def create(
        self,
        configuration: ScheduleConfiguration,
        model: str | None = None,
        snapshot: dict | None = None,
    ) -> ReportRun:
        """Insert a ``running`` row with zeroed metrics. Raises PersistenceError."""
        run = ReportRun(
            id=str(uuid.uuid4()),
            user_id=configuration.user_id,
            repository_id=configuration.repository_id,
            report_configuration_id=configuration.id,
            started_at=utcnow(),
            status=RunStatus.RUNNING,
            configuration_snapshot=snapshot if snapshot is not None else configuration.snapshot(),
            model_used=model,
        )
        try:
            self.store.insert_run(run)
        except sqlite3.Error as e:
            logger.error(f"Error creating report run for config {configuration.id}: {e}")
            raise PersistenceError(f"Could not create report run: {e}") from e
        logger.info(f"Created report run {run.id} for config {configuration.id}")
        return run

    def mark_success(self, run_id: str, user_id: str, outcome: RunOutcome) -> ReportRun | None:
        return self._complete(
            run_id, user_id, RunStatus.SUCCESS, outcome.model_dump(),
        )

    def mark_failed(
        self,
        run_id: str,
        user_id: str,
        error_message: str,
        error_code: str | None = None,
    ) -> ReportRun | None:
        return self._complete(
            run_id,
            user_id,
            RunStatus.FAILED,
            {"error_message": error_message, "error_code": error_code or "UNKNOWN_ERROR"},
        )

    def mark_cancelled(self, run_id: str, user_id: str, reason: str = "Cancelled") -> ReportRun | None:
        return self._complete(
            run_id, user_id, RunStatus.CANCELLED,
            {"error_message": reason, "error_code": "CANCELLED"},
        )

    def update_webhook_delivery(
        self,
        run_id: str,
        user_id: str,
        delivered: bool,
        response_status: int | None = None,
        attempts: int | None = None,
    ) -> ReportRun | None:
        """Record the delivery outcome.

        ``attempts`` is the adapter's real attempt count; without it the
        count is 1 for a delivered report and 0 otherwise.
        """
        if attempts is None:
            attempts = 1 if delivered else 0
        return self._update(
            run_id,
            user_id,
            {
                "webhook_delivered": delivered,
                "webhook_delivery_attempts": attempts,
                "webhook_last_attempt_at": utcnow(),
                "webhook_response_status": response_status,
            },
        )

    def _complete(
        self, run_id: str, user_id: str, status: RunStatus, fields: dict
    ) -> ReportRun | None:
        run = self._update(
            run_id,
            user_id,
            {"status": status, "completed_at": utcnow(), **fields},
            only_if_status=RunStatus.RUNNING,
        )
        if run is None:
            logger.warning(f"Run {run_id}: transition to {status.value} rejected (not running)")
        return run

    def _update(
        self,
        run_id: str,
        user_id: str,
        fields: dict,
        only_if_status: RunStatus | None = None,
    ) -> ReportRun | None:
        try:
            return self.store.update_run(run_id, user_id, fields, only_if_status=only_if_status)
        except sqlite3.Error as e:
            logger.error(f"Error updating report run {run_id}: {e}")
            raise PersistenceError(f"Could not update report run {run_id}: {e}") from e

"""Cron evaluation + report scheduler."""

from reportbot.core.cron.evaluator import is_due, next_run_time

__all__ = ["is_due", "next_run_time"]

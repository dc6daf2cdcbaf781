"""Error taxonomy for the report pipeline.

Every error carries a stable ``code`` that is written to the run's
``error_code`` column, so run history can be filtered by failure kind.
"""

from __future__ import annotations


class ReportBotError(Exception):
    """Base class for reportbot errors."""

    code = "UNKNOWN_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code


class ScheduleParseError(ReportBotError):
    code = "SCHEDULE_INVALID"


class UsageLimitExceeded(ReportBotError):
    code = "USAGE_LIMIT_EXCEEDED"

    def __init__(self, user_id: str, limit: int):
        self.user_id = user_id
        self.limit = limit
        super().__init__(f"Monthly usage limit exceeded ({limit} runs) for user {user_id}")


class ConfigError(ReportBotError):
    code = "CONFIG_INVALID"


class CredentialError(ReportBotError):
    code = "CREDENTIAL_INVALID"


class RepositoryNotFound(ReportBotError):
    code = "REPOSITORY_NOT_FOUND"


class PersistenceError(ReportBotError):
    code = "PERSISTENCE_ERROR"


class DeliveryError(ReportBotError):
    code = "DELIVERY_FAILED"

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


# ── Commit source failures ──────────────────────────────────


class SourceError(ReportBotError):
    code = "SOURCE_ERROR"


class SourceUnauthorized(SourceError):
    code = "TOKEN_INVALID"


class SourceNotFound(SourceError):
    code = "REPOSITORY_NOT_FOUND"


class SourceRateLimited(SourceError):
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int | None = None):
        self.retry_after = retry_after
        super().__init__(message)


def error_code(exc: BaseException) -> str:
    """Return the stable code for any exception (``UNKNOWN_ERROR`` if it has none)."""
    if isinstance(exc, TimeoutError):
        return "TIMEOUT"
    code = getattr(exc, "code", None)
    return code if isinstance(code, str) and code else "UNKNOWN_ERROR"

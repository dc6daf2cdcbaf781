"""reportbot configuration schema: YAML + Pydantic + env override."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from reportbot import __version__


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class ProviderConfig(BaseModel):
    """Single LLM provider."""

    api_key: str = ""
    api_base: str | None = None


class ProvidersConfig(BaseModel):
    """LLM providers (LiteLLM multi-provider)."""

    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)


class SchedulerConfig(BaseModel):
    """Outer tick + per-item pipeline limits."""

    enabled: bool = True
    tick_cron: str = "0 * * * *"  # hourly
    max_concurrency: int = Field(default=1, ge=1)
    item_timeout_s: float = 900.0
    default_timezone: str = "UTC"
    fallback_interval_hours: int = 23


class DeliveryConfig(BaseModel):
    """Webhook delivery (retries, timeouts, platform size limits)."""

    timeout_s: float = 10.0
    max_retries: int = 2  # 3 attempts in total
    backoff_base: float = 2.0
    user_agent: str = f"reportbot/{__version__}"
    slack_max_chars: int = 4000
    discord_max_chars: int = 2000
    discord_hard_truncate_at: int = 1950
    link_warning_threshold: int = 10


class UsageConfig(BaseModel):
    default_monthly_runs_limit: int = 50


class SummarizerConfig(BaseModel):
    """Commit summarizer (LLM) settings."""

    model: str = "openai/gpt-4.1-mini"
    temperature: float = 0.3
    max_tokens: int = 2000
    max_commits: int = 50
    report_style: str = "Standard"  # Summary | Standard | Changelog
    tone: str = "Professional"
    author_display: bool = True
    link_to_commits: bool = False


class GitHubConfig(BaseModel):
    api_base: str = "https://api.github.com"
    timeout_s: float = 30.0
    per_page: int = 100


class SecurityConfig(BaseModel):
    """Fernet key used to decrypt stored repository access tokens."""

    credential_key: str = ""


class DatabaseConfig(BaseModel):
    path: str = "data/reportbot.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings: env + .env support)
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        REPORTBOT_SCHEDULER__MAX_CONCURRENCY=4
        REPORTBOT_DATABASE__PATH=data/prod.db
        REPORTBOT_PROVIDERS__OPENAI__API_KEY=sk-...
    """

    model_config = SettingsConfigDict(
        env_prefix="REPORTBOT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    usage: UsageConfig = Field(default_factory=UsageConfig)
    summarizer: SummarizerConfig = Field(default_factory=SummarizerConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # ── Computed properties ─────────────────────────────────

    @property
    def db_path(self) -> Path:
        return Path(self.database.path)

    # ── Provider helpers ────────────────────────────────────

    def get_api_key(self, model: str | None = None) -> str | None:
        """Get API key for model name. Falls back to first available."""
        model_name = (model or self.summarizer.model).lower()

        keyword_map: dict[str, ProviderConfig] = {
            "openrouter": self.providers.openrouter,
            "anthropic": self.providers.anthropic,
            "claude": self.providers.anthropic,
            "openai": self.providers.openai,
            "gpt": self.providers.openai,
        }
        for keyword, provider in keyword_map.items():
            if keyword in model_name and provider.api_key:
                return provider.api_key

        for name in ProvidersConfig.model_fields:
            p = getattr(self.providers, name)
            if isinstance(p, ProviderConfig) and p.api_key:
                return p.api_key
        return None

    def get_api_base(self, model: str | None = None) -> str | None:
        """Get API base URL for model name."""
        model_name = (model or self.summarizer.model).lower()
        if "openrouter" in model_name:
            return self.providers.openrouter.api_base or "https://openrouter.ai/api/v1"
        for name in ProvidersConfig.model_fields:
            p = getattr(self.providers, name)
            if isinstance(p, ProviderConfig) and name in model_name and p.api_base:
                return p.api_base
        return None

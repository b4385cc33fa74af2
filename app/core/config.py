from typing import List

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logger import get_logger


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    database_url: str = Field(..., alias="DATABASE_URL")
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")
    # Fast-cache reads/writes must never stall the pipeline.
    redis_op_timeout_seconds: float = Field(default=0.5, alias="REDIS_OP_TIMEOUT_SECONDS")
    admin_token: str = Field("", alias="ADMIN_TOKEN")

    api_football_key: str = Field("", alias="API_FOOTBALL_KEY")
    api_football_host: str = Field("v3.football.api-sports.io", alias="API_FOOTBALL_HOST")
    api_football_base: str = Field("https://v3.football.api-sports.io", alias="API_FOOTBALL_BASE")
    api_football_daily_limit: int = Field(default=100, alias="API_FOOTBALL_DAILY_LIMIT")
    api_football_analysis_ttl_seconds: int = Field(default=3600, alias="API_FOOTBALL_ANALYSIS_TTL_SECONDS")

    together_api_key: str = Field("", alias="TOGETHER_API_KEY")
    together_base: str = Field("https://api.together.xyz/v1", alias="TOGETHER_BASE")
    together_daily_limit: int = Field(default=5000, alias="TOGETHER_DAILY_LIMIT")
    synthetic_api_key: str = Field("", alias="SYNTHETIC_API_KEY")
    synthetic_base: str = Field("https://api.synthetic.new/openai/v1", alias="SYNTHETIC_BASE")
    synthetic_daily_limit: int = Field(default=1000, alias="SYNTHETIC_DAILY_LIMIT")

    enabled_models_raw: str = Field("", alias="ENABLED_MODELS")
    llm_timeout_seconds: float = Field(default=30.0, alias="LLM_TIMEOUT_SECONDS")
    llm_reasoning_timeout_seconds: float = Field(default=90.0, alias="LLM_REASONING_TIMEOUT_SECONDS")
    llm_concurrency: int = Field(default=5, alias="LLM_CONCURRENCY")
    llm_daily_budget_usd: float = Field(default=1.0, alias="LLM_DAILY_BUDGET_USD")
    max_fallback_depth: int = Field(default=1, alias="MAX_FALLBACK_DEPTH")

    auto_disable_threshold: int = Field(default=3, alias="AUTO_DISABLE_THRESHOLD")
    auto_disable_cooldown_minutes: int = Field(default=60, alias="AUTO_DISABLE_COOLDOWN_MINUTES")

    circuit_failure_threshold: int = Field(default=5, alias="CIRCUIT_FAILURE_THRESHOLD")
    circuit_reset_timeout_seconds: int = Field(default=60, alias="CIRCUIT_RESET_TIMEOUT_SECONDS")
    circuit_api_football_reset_timeout_seconds: int = Field(
        default=30, alias="CIRCUIT_API_FOOTBALL_RESET_TIMEOUT_SECONDS"
    )
    circuit_cache_ttl_seconds: int = Field(default=3600, alias="CIRCUIT_CACHE_TTL_SECONDS")

    analysis_offset_minutes: int = Field(default=360, alias="ANALYSIS_OFFSET_MINUTES")
    predictions_offset_minutes: int = Field(default=30, alias="PREDICTIONS_OFFSET_MINUTES")
    predictions_retry_offset_minutes: int = Field(default=5, alias="PREDICTIONS_RETRY_OFFSET_MINUTES")
    catch_up_window_hours: int = Field(default=48, alias="CATCH_UP_WINDOW_HOURS")
    backfill_window_hours: int = Field(default=12, alias="BACKFILL_WINDOW_HOURS")
    live_poll_interval_seconds: int = Field(default=60, alias="LIVE_POLL_INTERVAL_SECONDS")
    live_max_polls: int = Field(default=150, alias="LIVE_MAX_POLLS")
    scheduling_retries: int = Field(default=3, alias="SCHEDULING_RETRIES")
    scheduling_backoff_seconds: float = Field(default=1.0, alias="SCHEDULING_BACKOFF_SECONDS")

    job_max_attempts: int = Field(default=5, alias="JOB_MAX_ATTEMPTS")
    job_backoff_base_seconds: int = Field(default=30, alias="JOB_BACKOFF_BASE_SECONDS")
    job_deadline_seconds: int = Field(default=120, alias="JOB_DEADLINE_SECONDS")
    predictions_job_deadline_seconds: int = Field(default=300, alias="PREDICTIONS_JOB_DEADLINE_SECONDS")
    worker_concurrency_analysis: int = Field(default=1, alias="WORKER_CONCURRENCY_ANALYSIS")
    worker_concurrency_predictions: int = Field(default=1, alias="WORKER_CONCURRENCY_PREDICTIONS")
    worker_concurrency_live_monitor: int = Field(default=10, alias="WORKER_CONCURRENCY_LIVE_MONITOR")
    worker_concurrency_settlement: int = Field(default=3, alias="WORKER_CONCURRENCY_SETTLEMENT")
    worker_concurrency_backfill: int = Field(default=1, alias="WORKER_CONCURRENCY_BACKFILL")
    worker_tick_seconds: int = Field(default=5, alias="WORKER_TICK_SECONDS")

    dead_letter_alert_threshold: int = Field(default=50, alias="DEAD_LETTER_ALERT_THRESHOLD")
    dead_letter_retention_days: int = Field(default=30, alias="DEAD_LETTER_RETENTION_DAYS")
    job_runs_retention_days: int = Field(default=90, alias="JOB_RUNS_RETENTION_DAYS")

    catch_up_interval_minutes: int = Field(default=15, alias="CATCH_UP_INTERVAL_MINUTES")
    backfill_interval_minutes: int = Field(default=60, alias="BACKFILL_INTERVAL_MINUTES")
    recovery_interval_minutes: int = Field(default=30, alias="RECOVERY_INTERVAL_MINUTES")
    job_maintenance_cron: str = Field("30 3 * * *", alias="JOB_MAINTENANCE_CRON")

    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    allow_web_scheduler: bool = Field(default=False, alias="ALLOW_WEB_SCHEDULER")

    @model_validator(mode="after")
    def validate_provider_keys(self):
        logger = get_logger("settings")
        if not (self.together_api_key or self.synthetic_api_key):
            logger.warning("no LLM provider key configured; predictions jobs will store nothing")
        if self.api_football_key in {"", "YOUR_KEY"}:
            logger.warning("API_FOOTBALL_KEY is not configured; analysis and live monitoring will fail")
        return self

    @property
    def enabled_models(self) -> List[str]:
        return [x.strip() for x in self.enabled_models_raw.split(",") if x.strip()]

    @property
    def daily_limits(self) -> dict[str, int]:
        return {
            "together": int(self.together_daily_limit),
            "synthetic": int(self.synthetic_daily_limit),
            "api-football": int(self.api_football_daily_limit),
        }

    @property
    def worker_concurrency(self) -> dict[str, int]:
        return {
            "analysis": int(self.worker_concurrency_analysis),
            "predictions": int(self.worker_concurrency_predictions),
            "live-monitor": int(self.worker_concurrency_live_monitor),
            "settlement": int(self.worker_concurrency_settlement),
            "backfill": int(self.worker_concurrency_backfill),
        }

    def provider_key(self, backend: str) -> str:
        if backend == "together":
            return (self.together_api_key or "").strip()
        if backend == "synthetic":
            return (self.synthetic_api_key or "").strip()
        return ""


default_settings = Settings()
settings = default_settings

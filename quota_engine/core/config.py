from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PACKAGE_DIR = Path(__file__).resolve().parents[1]
REPO_ROOT = PACKAGE_DIR.parent
ENV_FILES = [REPO_ROOT / ".env"]

for env_path in ENV_FILES:
    if env_path.exists():
        load_dotenv(env_path, override=False)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False, extra="allow", populate_by_name=True)

    app_name: str = Field(default="Chat Quota Engine", alias="APP_NAME")
    app_env: str = Field(default="dev", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    database_url: str = Field(default="sqlite+aiosqlite:///./quota.db", alias="DATABASE_URL")
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    redis_key_prefix: str = Field(default="quota:", alias="REDIS_KEY_PREFIX")

    # Fast-access cache tiers
    plan_cache_local_ttl_seconds: float = Field(default=2.0, gt=0, alias="PLAN_CACHE_LOCAL_TTL_SECONDS")
    plan_cache_local_max_size: int = Field(default=1000, ge=1, alias="PLAN_CACHE_LOCAL_MAX_SIZE")
    counter_cache_local_max_size: int = Field(default=5000, ge=1, alias="COUNTER_CACHE_LOCAL_MAX_SIZE")
    plan_cache_redis_ttl_seconds: int = Field(default=30, ge=1, alias="PLAN_CACHE_REDIS_TTL_SECONDS")
    quota_config_cache_ttl_seconds: int = Field(default=300, ge=0, alias="QUOTA_CONFIG_CACHE_TTL_SECONDS")
    subscription_grace_period_days: int = Field(default=0, ge=0, alias="SUBSCRIPTION_GRACE_PERIOD_DAYS")

    # Per-model request limits (daily / per-minute) by plan tier
    rate_limit_flash_lite_free_day: int = Field(default=20, ge=0, alias="RATE_LIMIT_FLASH_LITE_FREE_DAY")
    rate_limit_flash_lite_free_minute: int = Field(default=5, ge=0, alias="RATE_LIMIT_FLASH_LITE_FREE_MINUTE")
    rate_limit_flash_lite_plus_day: int = Field(default=1000, ge=0, alias="RATE_LIMIT_FLASH_LITE_PLUS_DAY")
    rate_limit_flash_lite_plus_minute: int = Field(default=100, ge=0, alias="RATE_LIMIT_FLASH_LITE_PLUS_MINUTE")

    rate_limit_flash_free_day: int = Field(default=10, ge=0, alias="RATE_LIMIT_FLASH_FREE_DAY")
    rate_limit_flash_free_minute: int = Field(default=3, ge=0, alias="RATE_LIMIT_FLASH_FREE_MINUTE")
    rate_limit_flash_plus_day: int = Field(default=1000, ge=0, alias="RATE_LIMIT_FLASH_PLUS_DAY")
    rate_limit_flash_plus_minute: int = Field(default=100, ge=0, alias="RATE_LIMIT_FLASH_PLUS_MINUTE")

    rate_limit_pro_free_day: int = Field(default=5, ge=0, alias="RATE_LIMIT_PRO_FREE_DAY")
    rate_limit_pro_free_minute: int = Field(default=2, ge=0, alias="RATE_LIMIT_PRO_FREE_MINUTE")
    rate_limit_pro_plus_day: int = Field(default=1000, ge=0, alias="RATE_LIMIT_PRO_PLUS_DAY")
    rate_limit_pro_plus_minute: int = Field(default=100, ge=0, alias="RATE_LIMIT_PRO_PLUS_MINUTE")

    # Seed values for plan-scoped feature quotas
    quota_deep_research_plus_limit: int = Field(default=5, ge=0, alias="QUOTA_DEEP_RESEARCH_PLUS_LIMIT")
    quota_pro_search_plus_limit: int = Field(default=10, ge=0, alias="QUOTA_PRO_SEARCH_PLUS_LIMIT")
    quota_rag_plus_limit: int = Field(default=2000, ge=0, alias="QUOTA_RAG_PLUS_LIMIT")

    enable_prometheus_metrics: bool = Field(default=True, alias="ENABLE_PROMETHEUS_METRICS")
    prometheus_metrics_path: str = Field(default="/metrics/prometheus", alias="PROMETHEUS_METRICS_PATH")
    admin_api_prefix: str = Field(default="/admin", alias="ADMIN_API_PREFIX")


@lru_cache
def get_settings() -> Settings:
    return Settings()

from __future__ import annotations
from functools import lru_cache
from typing import List, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── App ──────────────────────────────────────────────────────────────────
    APP_NAME: str = "Sitewatch"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # ── Authentication ───────────────────────────────────────────────────────
    API_KEY: str  # required, dashboard endpoints
    CRON_SECRET: str = ""
    QUEUE_CURRENT_SIGNING_KEY: str = ""
    QUEUE_NEXT_SIGNING_KEY: str = ""

    # ── Database ─────────────────────────────────────────────────────────────
    DB_USER: str  # required, no default
    DB_PASSWORD: str  # required, no default
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "sitewatch"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # ── Redis (task queue) ───────────────────────────────────────────────────
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_POOL_SIZE: int = 20
    REDIS_SOCKET_TIMEOUT: float = 2.0
    REDIS_CONNECT_TIMEOUT: float = 2.0

    @property
    def REDIS_URL(self) -> str:
        from urllib.parse import quote_plus
        if self.REDIS_PASSWORD:
            return f"redis://:{quote_plus(self.REDIS_PASSWORD)}@{self.REDIS_HOST}:{self.REDIS_PORT}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    # ── Queue delivery ───────────────────────────────────────────────────────
    APP_URL: str = "http://localhost:8000"
    QUEUE_POLL_SECONDS: int = 5
    QUEUE_BATCH_LIMIT: int = 50
    QUEUE_MAX_ATTEMPTS: int = 3
    QUEUE_RETRY_BASE_SECONDS: int = 10

    @property
    def WORKER_URL(self) -> str:
        return f"{self.APP_URL.rstrip('/')}/api/v1/worker/check"

    # ── Checker timeouts (seconds) ───────────────────────────────────────────
    UPTIME_TIMEOUT: float = 10.0
    TLS_TIMEOUT: float = 10.0
    PAGESPEED_TIMEOUT: float = 60.0
    PROVIDER_TIMEOUT: float = 15.0
    MAX_RETRIES: int = 3

    # ── Fan-out ──────────────────────────────────────────────────────────────
    FANOUT_MODE: str = "queue"          # queue | batch
    INTERACTIVE_BATCH_SIZE: int = 5
    INTERACTIVE_ITEM_DELAY: float = 0.0
    UPTIME_JITTER_SECONDS: int = 5
    TLS_STAGGER_SECONDS: int = 2
    PAGESPEED_STAGGER_SECONDS: int = 10
    PAGESPEED_STRATEGY_OFFSET: int = 5
    RANKING_STAGGER_SECONDS: int = 5
    RANKING_SOURCE_OFFSET: int = 5

    # ── Scheduler ────────────────────────────────────────────────────────────
    SCHEDULER_ENABLED: bool = True
    UPTIME_INTERVAL_MINUTES: int = 5
    TLS_INTERVAL_MINUTES: int = 720
    PAGESPEED_INTERVAL_MINUTES: int = 1440
    RANKING_INTERVAL_MINUTES: int = 1440

    # ── Third-party providers ────────────────────────────────────────────────
    PAGESPEED_API_URL: str = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
    PAGESPEED_API_KEY: str = ""
    GSC_API_BASE: str = "https://searchconsole.googleapis.com/webmasters/v3"
    GSC_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    GSC_CLIENT_ID: str = ""
    GSC_CLIENT_SECRET: str = ""
    GSC_REFRESH_TOKEN: str = ""
    BING_API_BASE: str = "https://ssl.bing.com/webmaster/api.svc/json"
    BING_API_KEY: str = ""
    RANKING_LOOKBACK_DAYS: int = 7

    # ── Notifications ────────────────────────────────────────────────────────
    ENABLE_WEBHOOK_NOTIFICATIONS: bool = False
    WEBHOOK_URL: str = ""
    ENABLE_EMAIL_NOTIFICATIONS: bool = False
    NOTIFY_EMAIL: str = ""
    MAIL_DISPATCH_URL: Optional[str] = None
    NOTIFY_ON_RECOVERY: bool = False
    NOTIFY_TIMEOUT: float = 10.0

    # ── CORS ─────────────────────────────────────────────────────────────────
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # ── Trusted proxies ──────────────────────────────────────────────────────
    TRUSTED_PROXY_HEADERS: List[str] = ["X-Forwarded-For", "X-Real-IP"]

    @property
    def DATABASE_URL(self) -> str:
        from urllib.parse import quote_plus
        return (
            f"postgresql+asyncpg://{quote_plus(self.DB_USER)}:{quote_plus(self.DB_PASSWORD)}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of {allowed}")
        return v

    @field_validator("FANOUT_MODE")
    @classmethod
    def validate_fanout_mode(cls, v: str) -> str:
        if v not in {"queue", "batch"}:
            raise ValueError("FANOUT_MODE must be 'queue' or 'batch'")
        return v

    model_config = {"env_file": ".env", "extra": "ignore"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

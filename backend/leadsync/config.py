"""Application configuration."""

from pydantic_settings import BaseSettings
from typing import Optional, Dict, Any


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://leadsync:leadsync123@db:5432/leadsync"

    # Redis (optional dedup cache tier)
    REDIS_URL: str = "redis://redis:6379/0"
    ENABLE_DEDUP_CACHE: bool = False
    DEDUP_CACHE_TTL_SECONDS: int = 86400

    # Platform credentials
    SMARTLEAD_API_KEY: Optional[str] = None
    LEMLIST_API_KEY: Optional[str] = None
    ATTIO_API_KEY: Optional[str] = None

    # Rate limiting - JSON overrides per platform, e.g.
    # {"smartlead": {"requests_per_second": 5, "max_batch_size": 50}}
    PLATFORM_RATE_LIMITS: Dict[str, Dict[str, Any]] = {}
    RATE_LIMIT_TIMEOUT_SECONDS: float = 60.0

    # Sync execution
    DEFAULT_BATCH_SIZE: int = 100
    MAX_PARALLEL_TASKS: int = 4
    BATCH_TIMEOUT_SECONDS: float = 120.0
    RETRY_MAX_ATTEMPTS: int = 4
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 30.0
    INCREMENTAL_DEFAULT_LOOKBACK_DAYS: int = 7
    EVENT_KEY_BUCKET_SECONDS: int = 3600
    DEFAULT_NAMESPACE: str = "default"

    # CRM export
    CRM_PLATFORM: Optional[str] = "attio"
    MIN_BEHAVIOR_SCORE_FOR_CRM: int = 1
    CRM_EVENT_WRITEBACK: bool = False

    # Scoring / enrichment
    ICP_RESCORE_DAYS: int = 30
    ENRICHMENT_MIN_CONFIDENCE: float = 0.7

    # Job callbacks
    CALLBACK_SIGNING_SECRET: Optional[str] = None
    CALLBACK_TIMEOUT_SECONDS: float = 10.0

    # Notifications (every job finish is also POSTed here when set)
    NOTIFY_WEBHOOK_URL: Optional[str] = None

    # Scheduler
    ENABLE_PERIODIC_SYNC: bool = False
    SYNC_INTERVAL_HOURS: int = 4
    BEHAVIOR_RESCORE_MINUTES: int = 30

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()

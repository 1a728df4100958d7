from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Shared
    APP_ENV: str = "dev"
    APP_PORT: int = 8000
    DATABASE_URL: str
    REDIS_URL: str
    APP_AUTH_BEARER_TOKENS: str  # Comma-separated
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # Telegram transport
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_WEBHOOK_SECRET: Optional[str] = None
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    TELEGRAM_COMMAND_TIMEOUT_SECONDS: int = 20

    # Sync core
    DEDUP_TTL_SECONDS: int = 3600
    RECENCY_WINDOW_SECONDS: int = 60
    ANTI_FLOOD_TTL_SECONDS: int = 60
    ENTITY_CACHE_TTL_SECONDS: int = 30 * 24 * 3600
    NICKNAME_CACHE_TTL_SECONDS: int = 365 * 24 * 3600
    PROFILE_CACHE_TTL_SECONDS: int = 3600
    MESSAGE_RETENTION_DAYS: Optional[int] = None

    # Job queue
    JOB_QUEUE_PREFIX: str = "jobs"
    JOB_DEFAULT_POOL_SIZE: int = 10
    JOB_FINISHED_TTL_SECONDS: int = 3600
    JOB_SYNC_TIMEOUT_SECONDS: float = 20.0
    JOB_FIBONACCI_BASE_SECONDS: float = 1.0
    JOB_MAX_RETRY_DELAY_SECONDS: float = 3600.0
    JOB_POLL_TIMEOUT_SECONDS: int = 5
    JOB_SCHEDULER_INTERVAL_SECONDS: float = 1.0
    JOB_LEASE_SECONDS: float = 900.0

    # Trello
    TRELLO_API_BASE: str = "https://api.trello.com/1"
    TRELLO_API_KEY: Optional[str] = None
    TRELLO_MAX_ATTACHMENT_BYTES: int = 10 * 1024 * 1024

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def auth_tokens(self) -> List[str]:
        return [t.strip() for t in self.APP_AUTH_BEARER_TOKENS.split(",") if t.strip()]

    def hook_url(self, service: str, token: str) -> str:
        return f"{self.PUBLIC_BASE_URL.rstrip('/')}/v1/webhooks/{service}/{token}"

settings = Settings()

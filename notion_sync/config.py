"""
Sync Engine Configuration

Settings for the Notion incremental synchronization service.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

SyncMode = Literal["full", "incremental", "manual"]


class Settings(BaseSettings):
    """Sync engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote API
    notion_api_token: str = ""
    notion_api_base_url: str = "https://api.notion.com/v1/"
    notion_api_version: str = "2022-06-28"
    user_agent: str = "notion-sync/1.0"

    # Database (SQLite by default, PostgreSQL URLs get the asyncpg driver)
    database_url: str = "sqlite+aiosqlite:///./notion_sync.db"

    def model_post_init(self, __context: object) -> None:
        """Convert database URL to use an async driver."""
        if self.database_url.startswith("postgresql://"):
            object.__setattr__(
                self,
                "database_url",
                self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
            )
        elif self.database_url.startswith("postgres://"):
            object.__setattr__(
                self,
                "database_url",
                self.database_url.replace("postgres://", "postgresql+asyncpg://", 1)
            )
        elif self.database_url.startswith("sqlite:///"):
            object.__setattr__(
                self,
                "database_url",
                self.database_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
            )

    # Redis
    redis_url: str = "redis://localhost:6379"

    # Sync Settings
    sync_mode: SyncMode = "incremental"
    api_page_size: int = 100  # Notion caps page_size at 100
    concurrent_requests: int = 5
    max_concurrent_ceiling: int = 10
    adaptive_concurrency_enabled: bool = True
    request_timeout: float = 30.0
    timestamp_tolerance_seconds: int = 1
    incremental_time_buffer_minutes: int = 5
    use_api_filter: bool = True
    include_blocks: bool = False
    block_fetch_max_depth: int = 5
    block_fetch_node_budget: int = 1000
    block_fetch_time_budget: float = 18.0

    # Cache Settings
    cache_enabled: bool = True
    cache_ttl_session: int = 300
    cache_ttl_persistent: int = 3600

    # Queue Settings
    queue_batch_size: int = 10
    queue_max_retries: int = 3
    queue_retry_delay: int = 300  # Seconds, multiplied by retry_count
    queue_task_timeout: int = 300
    queue_priority: int = 10
    queue_time_budget: float = 30.0
    queue_max_tasks_per_run: int = 5
    queue_retention_days: int = 7
    queue_threshold: int = 20  # Changed pages above this are handed to the queue

    # Scheduler Settings
    sync_interval_minutes: int = 15
    queue_interval_minutes: int = 1
    cleanup_hour: int = 3
    sync_database_ids: list[str] = []
    sync_enabled: bool = True
    sync_lock_timeout: int = 300  # Seconds before a stale run lock can be taken over

    # Event Emission Settings
    events_enabled: bool = True

    # Metrics Settings
    metrics_enabled: bool = True
    metrics_port: int = 9090

    # Circuit Breaker Settings
    circuit_breaker_enabled: bool = True
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_recovery_timeout: float = 60.0
    circuit_breaker_success_threshold: int = 2

    # Logging
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()

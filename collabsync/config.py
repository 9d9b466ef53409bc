"""Configuration settings for collabsync."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

from collabsync.utils import get_collabsync_home, validate_backend_url


class Settings(BaseSettings):
    """Settings loaded from COLLABSYNC_* environment variables and .env."""

    # Remote memory API (Mem0-compatible)
    mem0_api_url: str | None = None
    mem0_api_key: str | None = None
    http_timeout: float = 10.0  # list/search requests
    push_timeout: float = 5.0  # add requests
    health_timeout: float = 3.0  # connectivity probes

    # Supabase (table store and realtime transport)
    supabase_url: str | None = None
    supabase_key: str | None = None
    memories_table: str = "ai_family_member_memories"
    sync_meta_table: str = "sync_meta"
    realtime_connect_timeout: float = 10.0

    # Local SQLite store
    local_db_path: Path | None = None

    # Synchronization
    default_user_id: str = "default_user"
    default_scope: str = "file_manager"
    auto_sync_interval_minutes: float = 5.0

    # Collaboration
    recent_operations_window: int = 20
    conflict_time_window_seconds: float = 10.0

    log_level: str = "WARNING"

    class Config:
        env_prefix = "COLLABSYNC_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def mem0_base_url(self) -> str | None:
        """The remote API URL, or None when missing or unsafe."""
        return validate_backend_url(self.mem0_api_url)

    @property
    def resolved_db_path(self) -> Path:
        return self.local_db_path or (get_collabsync_home() / "memories.db")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

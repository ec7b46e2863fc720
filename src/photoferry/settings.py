"""Application settings and environment configuration."""

from typing import Optional
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[2]
ENV_FILE = BASE_DIR / ".env"

# Remote API cap for batchCreate and batchAddMediaItems.
MAX_REMOTE_BATCH_SIZE = 50


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_name: str = "Photoferry"
    debug: bool = False
    environment: str = "dev"  # 'dev' or 'prod'
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./photoferry.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800
    db_pool_pre_ping: bool = True
    db_sqlite_timeout: int = 30

    # Google OAuth (refresh-token flow)
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None

    # Upload queue
    queue_concurrency: int = 5
    queue_max_concurrency: int = 15
    # Items per mediaItems:batchCreate call; clamped to MAX_REMOTE_BATCH_SIZE.
    media_batch_size: int = 30
    album_add_batch_size: int = MAX_REMOTE_BATCH_SIZE

    # Retry / backoff
    retry_max_retries: int = 5
    retry_initial_delay_seconds: float = 0.3
    retry_max_delay_seconds: float = 10.0
    retry_backoff_multiplier: float = 2.0
    transfer_max_retries: int = 3
    # Delay before the single per-item retry when a whole batch was rejected.
    individual_retry_delay_seconds: float = 2.0

    # Album queue
    album_poll_interval_seconds: float = 1.0
    album_upload_timeout_seconds: float = 600.0
    album_reupload_timeout_seconds: float = 1800.0
    album_enumeration_timeout_seconds: float = 600.0
    album_repair_max_attempts: int = 3
    # "first" adopts the first remote album whose title matches the folder
    # name; "unique" only adopts when exactly one album matches.
    album_title_match_policy: str = "first"
    min_remote_item_id_length: int = 10

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    @property
    def effective_media_batch_size(self) -> int:
        return max(1, min(MAX_REMOTE_BATCH_SIZE, int(self.media_batch_size)))

    @property
    def effective_album_add_batch_size(self) -> int:
        return max(1, min(MAX_REMOTE_BATCH_SIZE, int(self.album_add_batch_size)))

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "prod"

    def queue_config_audit(self) -> dict:
        """Return queue tuning values for startup logging."""
        return {
            "queue_concurrency": self.queue_concurrency,
            "queue_max_concurrency": self.queue_max_concurrency,
            "media_batch_size": self.effective_media_batch_size,
            "album_add_batch_size": self.effective_album_add_batch_size,
            "album_upload_timeout_seconds": self.album_upload_timeout_seconds,
            "album_reupload_timeout_seconds": self.album_reupload_timeout_seconds,
            "album_repair_max_attempts": self.album_repair_max_attempts,
            "album_title_match_policy": self.album_title_match_policy,
        }


settings = Settings()

"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
"""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "reelpipe"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Tracing
    TRACING_ENABLED: bool = False
    OTLP_ENDPOINT: Optional[str] = None

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./reelpipe.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Celery
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""

    # CORS
    CORS_ORIGINS: list[str] = []

    # Processing queue: "celery" or "local"
    PROCESSING_BACKEND: str = "celery"
    LOCAL_WORKER_CONCURRENCY: int = 2
    LOCAL_QUEUE_MAXSIZE: int = 100

    # Media storage layout root (originals/, hls/, thumbnails/)
    MEDIA_STORAGE_PATH: str = "./videos"

    # FFmpeg
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    FFPROBE_TIMEOUT_SECONDS: float = 30.0
    FFMPEG_TIMEOUT_MULTIPLIER: float = 3.0
    FFMPEG_TIMEOUT_MINIMUM: float = 120.0
    FFMPEG_TIMEOUT_MAXIMUM: float = 7200.0
    THUMBNAIL_TIMEOUT_SECONDS: float = 60.0
    MAX_CONCURRENT_TRANSCODES: int = 2
    ENCODER_PRESET: str = "medium"
    AUDIO_BITRATE: int = 128000

    # HLS
    HLS_SEGMENT_DURATION: int = 10

    # Thumbnails
    THUMBNAIL_OFFSET_SECONDS: float = 5.0
    THUMBNAIL_WIDTH: int = 640
    THUMBNAIL_HEIGHT: int = 360

    # Streaming
    STREAM_CHUNK_SIZE: int = 1024 * 1024
    STREAM_CACHE_MAX_AGE: int = 31536000

    # Completion events: "log" or "redis"
    NOTIFIER_BACKEND: str = "log"
    NOTIFICATION_CHANNEL: str = "media:events"

    # Cleanup
    CLEANUP_INTERVAL_HOURS: int = 24
    STALE_RUN_TIMEOUT_MINUTES: int = 480  # raised to the longest healthy run when shorter

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()

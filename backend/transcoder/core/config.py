"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Video Transcoding API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Redis (job store + Celery broker)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Job store backend: redis, memory
    JOB_STORE_BACKEND: str = "redis"
    JOB_KEY_PREFIX: str = "transcode"

    # Storage Configuration
    # STORAGE_BACKEND: s3 (also MinIO), local
    STORAGE_BACKEND: str = "s3"

    # Local Storage (when STORAGE_BACKEND=local)
    LOCAL_STORAGE_PATH: str = "./storage"

    # S3/MinIO/Compatible Storage
    STORAGE_BUCKET: str = "video-transcoder"
    STORAGE_REGION: str = "ap-southeast-2"
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None  # Required for MinIO
    STORAGE_USE_SSL: bool = True
    STORAGE_CREATE_BUCKET: bool = True
    SIGNED_URL_EXPIRES_SECONDS: int = 3600

    # Worker pool
    WORKER_CAPACITY: int = 2
    MAX_QUEUE_LENGTH: int = 0  # 0 = unbounded
    QUEUE_POLL_INTERVAL_SECONDS: float = 1.0
    ENCODE_TIMEOUT_SECONDS: float = 1800.0
    STALE_JOB_GRACE_SECONDS: float = 60.0
    SHUTDOWN_GRACE_SECONDS: float = 30.0

    # FFmpeg
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    AUDIO_BITRATE: str = "128k"
    TEMP_DIR: str = "/tmp/transcoder"

    # Celery
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""
    REAPER_INTERVAL_SECONDS: float = 30.0

    @field_validator("WORKER_CAPACITY")
    @classmethod
    def validate_capacity(cls, v: int) -> int:
        if v < 1:
            raise ValueError("WORKER_CAPACITY must be at least 1")
        return v

    @field_validator("MAX_QUEUE_LENGTH")
    @classmethod
    def validate_queue_length(cls, v: int) -> int:
        if v < 0:
            raise ValueError("MAX_QUEUE_LENGTH must be 0 (unbounded) or positive")
        return v

    @field_validator("QUEUE_POLL_INTERVAL_SECONDS")
    @classmethod
    def validate_poll_interval(cls, v: float) -> float:
        # The poll is only a safety net behind the wake-up event
        if v <= 0 or v > 1.0:
            raise ValueError("QUEUE_POLL_INTERVAL_SECONDS must be in (0, 1]")
        return v

    @field_validator("ENCODE_TIMEOUT_SECONDS")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("ENCODE_TIMEOUT_SECONDS must be positive")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()

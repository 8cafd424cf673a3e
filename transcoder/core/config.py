"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
Engine components receive a Settings instance explicitly so tests can build
their own without touching the process environment.
"""

import os
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

MIB = 1024 * 1024


def _default_concurrency() -> int:
    return max(1, os.cpu_count() or 1)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Video Transcoder Engine"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # External binaries
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"

    # Output
    OUTPUT_DIR: str = "./output"

    # Scheduling
    MAX_CONCURRENT_JOBS: int = Field(default_factory=_default_concurrency, ge=1)
    MONITOR_INTERVAL_SECONDS: float = Field(default=0.25, gt=0)

    # Pipeline
    READ_CHUNK_SIZE: int = Field(default=1 * MIB, ge=4096)
    STAGE_BUFFER_SIZE: int = Field(default=8, ge=1)
    STAGE_POLL_INTERVAL_SECONDS: float = Field(default=0.05, gt=0)
    PROGRESS_INTERVAL_SECONDS: float = Field(default=0.2, ge=0)

    # Timeouts
    JOB_TIMEOUT_SECONDS: Optional[float] = Field(default=None, gt=0)
    TIMEOUT_MULTIPLIER: float = Field(default=2.0, gt=0)
    ESTIMATED_THROUGHPUT_BYTES_PER_SECOND: int = Field(default=4 * MIB, gt=0)
    MIN_JOB_TIMEOUT_SECONDS: float = Field(default=60.0, gt=0)
    CANCEL_GRACE_SECONDS: float = Field(default=10.0, gt=0)

    # Job store
    JOB_STORE_BACKEND: str = "memory"
    DATABASE_URL: str = "sqlite:///./transcoder.db"

    # Planner default table overrides, e.g. {"mp4": {"fhd": 6000000}}
    VIDEO_BITRATE_OVERRIDES: dict[str, dict[str, int]] = {}
    AUDIO_BITRATE_OVERRIDES: dict[str, int] = {}

    @field_validator("JOB_STORE_BACKEND")
    @classmethod
    def _check_store_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("memory", "sql"):
            raise ValueError("JOB_STORE_BACKEND must be 'memory' or 'sql'")
        return value

    @field_validator("LOG_LEVEL")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value

    def estimate_timeout(self, source_size: int) -> float:
        """Hard timeout for a job whose source is *source_size* bytes."""
        if self.JOB_TIMEOUT_SECONDS is not None:
            return self.JOB_TIMEOUT_SECONDS
        estimated = source_size / self.ESTIMATED_THROUGHPUT_BYTES_PER_SECOND
        return max(self.MIN_JOB_TIMEOUT_SECONDS, self.TIMEOUT_MULTIPLIER * estimated)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()

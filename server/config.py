"""
Machine Metrics Hub - Configuration

Loads configuration from environment variables and files.
"""

import os
from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # API Settings
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=3000, alias="API_PORT")
    api_debug: bool = Field(default=False, alias="API_DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database
    database_path: str = Field(default="data/metrics.db", alias="DATABASE_PATH")

    # Security
    api_token: str = Field(default="", alias="API_TOKEN")
    cors_origins: str = Field(default="", alias="CORS_ORIGINS")

    # Rate Limiting
    rate_limit_per_minute: int = Field(default=600, alias="RATE_LIMIT_PER_MINUTE")

    # Ingestion buffer
    writer_max_queue_size: int = Field(default=100, alias="WRITER_MAX_QUEUE_SIZE")
    writer_flush_interval: float = Field(default=10, alias="WRITER_FLUSH_INTERVAL")
    writer_flush_threshold: int = Field(default=50, alias="WRITER_FLUSH_THRESHOLD")

    # Aggregation jobs (UTC)
    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    hourly_job_offset_minutes: int = Field(default=5, alias="HOURLY_JOB_OFFSET_MINUTES")
    daily_job_offset_minutes: int = Field(default=10, alias="DAILY_JOB_OFFSET_MINUTES")
    retention_job_hour: int = Field(default=2, alias="RETENTION_JOB_HOUR")
    aggregation_max_catchup_hours: int = Field(default=168, alias="AGGREGATION_MAX_CATCHUP_HOURS")
    aggregation_startup_delay: float = Field(default=30, alias="AGGREGATION_STARTUP_DELAY")

    # Live push
    live_interval: float = Field(default=2, alias="LIVE_INTERVAL")

    # Local host sampling
    local_sampler_enabled: bool = Field(default=True, alias="LOCAL_SAMPLER_ENABLED")
    local_machine_id: str = Field(default="localhost", alias="LOCAL_MACHINE_ID")
    sample_interval: float = Field(default=2, alias="SAMPLE_INTERVAL")

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        if not self.cors_origins:
            return []
        return [origin.strip() for origin in self.cors_origins.split(",")]

    def get_api_token(self) -> str:
        """Get API token, optionally from file."""
        token_file = os.getenv("API_TOKEN_FILE")
        if token_file and Path(token_file).exists():
            return Path(token_file).read_text().strip()
        return self.api_token


# Global settings instance
settings = Settings()

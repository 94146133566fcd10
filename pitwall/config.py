# ============================================================================
# Pitwall - Application Configuration
# ============================================================================
"""
Application configuration module using Pydantic Settings.

This module defines all configuration parameters for the Pitwall service,
including:
- API/CORS settings
- Database connection
- OpenAI-compatible inference configuration
- MinIO artifact storage
- Analysis job orchestration (staleness window, retries, sweep cadence)
- Celery broker/backend

Environment Variables:
    Every field can be overridden by an upper-case environment variable of the
    same name (e.g. ``JOB_STALE_AFTER_SECONDS=90``) or via a ``.env`` file.

Usage:
    from pitwall.config import settings
    window = settings.job_stale_after_seconds
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # =========================================================================
    # API SETTINGS
    # =========================================================================
    api_title: str = "Pitwall API"
    api_version: str = "1.0.0"
    debug: bool = Field(default=False, description="Enable verbose logging & dev helpers")
    log_level: str = Field(default="INFO", description="Root log level")

    # =========================================================================
    # CORS SETTINGS
    # =========================================================================
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Allowed origins for CORS",
    )

    # =========================================================================
    # DATABASE
    # =========================================================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/pitwall.db",
        description="SQLAlchemy async URL (postgresql+asyncpg:// or sqlite+aiosqlite://)",
    )

    # =========================================================================
    # OPENAI/LLM CONFIGURATION
    # =========================================================================
    openai_api_key: Optional[str] = Field(default=None, description="LLM API key")
    openai_model: str = Field(default="gpt-4o-mini", description="LLM model name")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="LLM base URL")
    openai_verify_ssl: bool = Field(default=True, description="Verify SSL for LLM requests")
    openai_timeout: float = Field(default=60.0, description="HTTP timeout (s) for LLM requests")
    openai_max_retries: int = Field(default=2, description="Retry count for LLM requests")
    inference_timeout: float = Field(
        default=90.0, description="Overall deadline (s) the orchestrator grants one inference call"
    )
    telemetry_excerpt_limit: int = Field(default=150_000, description="Max characters of telemetry sent to the LLM")
    telemetry_max_lines: int = Field(default=1200, description="Max telemetry lines sent to the LLM")

    # =========================================================================
    # ARTIFACT STORAGE (MinIO / S3)
    # =========================================================================
    minio_endpoint: str = Field(default="minio:9000", description="MinIO host:port")
    minio_access_key: str = Field(default="minioadmin", description="MinIO access key")
    minio_secret_key: str = Field(default="minioadmin", description="MinIO secret key")
    minio_secure: bool = Field(default=False, description="Use HTTPS for MinIO")
    minio_bucket_telemetry: str = Field(default="telemetry", description="Bucket holding uploaded telemetry")
    max_file_size: int = Field(default=25 * 1024 * 1024, description="Max upload size in bytes")

    # =========================================================================
    # ANALYSIS JOB ORCHESTRATION
    # =========================================================================
    job_stale_after_seconds: int = Field(
        default=60, description="Heartbeat age after which a processing job is presumed crashed"
    )
    job_heartbeat_interval_seconds: float = Field(
        default=15.0, description="How often a running job refreshes its heartbeat; keep well under the stale window"
    )
    job_max_attempts: int = Field(
        default=5, description="Failed jobs at or above this attempt count are skipped by the sweep"
    )
    status_inline_kick: bool = Field(
        default=True, description="Run pending analysis inline while answering a status poll"
    )
    worker_secret: Optional[str] = Field(
        default=None, description="Shared secret for the worker/cron trigger endpoints"
    )

    # =========================================================================
    # CELERY
    # =========================================================================
    use_celery: bool = Field(default=True, description="Dispatch enqueued jobs to Celery")
    celery_broker_url: str = Field(default="redis://redis:6379/0", description="Celery broker")
    celery_result_backend: str = Field(default="redis://redis:6379/1", description="Celery result backend")
    analysis_sweep_enabled: bool = Field(default=True, description="Schedule the periodic job sweep")
    analysis_sweep_interval: int = Field(default=30, description="Seconds between sweeps")
    analysis_sweep_batch_size: int = Field(default=5, description="Max jobs drained per sweep")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# Global settings instance (imported elsewhere)
settings = Settings()

"""
Core configuration for the resumable upload client.
Manages environment variables, backend endpoint and transfer tuning.
"""
import os
from typing import List
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables or .env file."""

    # Transfer backend
    backend_base_url: str = os.getenv("BACKEND_BASE_URL", "http://localhost:3000/api")
    backend_auth_token: str = os.getenv("BACKEND_AUTH_TOKEN", "")
    request_timeout_seconds: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
    chunk_timeout_seconds: float = float(os.getenv("CHUNK_TIMEOUT_SECONDS", "60"))

    # API Configuration
    api_title: str = os.getenv("API_TITLE", "Resumable Upload Client")
    api_version: str = os.getenv("API_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Scheduling
    default_concurrency: int = int(os.getenv("DEFAULT_CONCURRENCY", "3"))
    max_concurrency: int = int(os.getenv("MAX_CONCURRENCY", "100"))
    batch_init_threshold: int = int(os.getenv("BATCH_INIT_THRESHOLD", "10"))

    # Retry policy
    max_retries: int = int(os.getenv("MAX_RETRIES", "3"))
    retry_delays_seconds: List[float] = [1.0, 2.0, 4.0]
    max_rate_limit_retries: int = int(os.getenv("MAX_RATE_LIMIT_RETRIES", "30"))
    init_retry_after_seconds: float = float(os.getenv("INIT_RETRY_AFTER_SECONDS", "60"))
    chunk_retry_after_seconds: float = float(os.getenv("CHUNK_RETRY_AFTER_SECONDS", "5"))

    # Completion polling (120 x 2s = 4 minutes)
    poll_interval_seconds: float = float(os.getenv("POLL_INTERVAL_SECONDS", "2"))
    poll_max_attempts: int = int(os.getenv("POLL_MAX_ATTEMPTS", "120"))

    # Backpressure
    throttle_chunk_delay_seconds: float = float(os.getenv("THROTTLE_CHUNK_DELAY_SECONDS", "0.5"))
    throttle_recovery_queue_depth: int = int(os.getenv("THROTTLE_RECOVERY_QUEUE_DEPTH", "100"))

    # File handling
    progress_slice_bytes: int = int(os.getenv("PROGRESS_SLICE_BYTES", str(256 * 1024)))
    max_file_size_mb: int = int(os.getenv("MAX_FILE_SIZE_MB", "10240"))

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()

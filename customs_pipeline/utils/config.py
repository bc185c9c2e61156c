"""
Configuration management for the customs pipeline.
Supports environment variables for secure credential management.
"""
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings
from typing import Optional
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Customs Classification Pipeline"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_PATH: str = "data/customs.db"

    # Result cache
    CACHE_BACKEND: str = "redis"  # redis | memory | none
    REDIS_URL: str = "redis://localhost:6379"
    CACHE_SOCKET_TIMEOUT: float = 2.0
    CLASSIFICATION_CACHE_TTL: int = 604800  # 7 days

    # Classification service
    CONFIDENCE_THRESHOLD: float = Field(default=0.7, ge=0.0, le=1.0)
    CLASSIFICATION_API_URL: str = "https://api.contextgem.com/v1"
    CLASSIFICATION_API_KEY: Optional[SecretStr] = None
    CLASSIFICATION_API_TIMEOUT: float = 10.0
    CLASSIFICATION_BATCH_SIZE: int = Field(default=10, ge=1)

    # Customs declaration API (primary channel)
    ASYCUDA_API_URL: str = "https://api.asycuda.customs.gov/v1"
    ASYCUDA_API_KEY: Optional[SecretStr] = None
    ASYCUDA_API_TIMEOUT: float = 30.0
    ASYCUDA_CLIENT_ID: str = "automated-customs-platform"

    # Retry policy for the primary channel
    SUBMISSION_MAX_RETRIES: int = Field(default=3, ge=1)
    SUBMISSION_RETRY_DELAY: float = 5.0  # seconds, fixed between attempts

    # SFTP (fallback channel)
    SFTP_HOST: str = "sftp.customs.gov"
    SFTP_PORT: int = 22
    SFTP_USERNAME: Optional[str] = None
    SFTP_PASSWORD: Optional[SecretStr] = None
    SFTP_PRIVATE_KEY_PATH: Optional[str] = None
    SFTP_REMOTE_PATH: str = "/incoming/"
    SFTP_KNOWN_HOSTS: Optional[str] = None
    SFTP_TIMEOUT: float = 30.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Business rules for declaration submission
SUBMISSION_RULES = {
    "submittable_invoice_statuses": ["Draft", "Rejected", "Approved"],
    "terminal_invoice_statuses": ["Submitted", "Accepted"],
    "pre_submission_invoice_statuses": ["Draft"],
    "retryable_submission_statuses": ["failed"],
}

# Remote (ASYCUDA) disposition -> local submission status
REMOTE_STATUS_MAP = {
    "approved": "accepted",
    "accepted": "accepted",
    "rejected": "rejected",
    "pending": "pending",
    "processing": "pending",
    "received": "pending",
    "submitted": "submitted",
}

# Local submission status -> invoice status it propagates to.
# "Approved" is an internal sign-off before sending; customs acceptance is "Accepted".
SUBMISSION_INVOICE_STATUS = {
    "accepted": "Accepted",
    "rejected": "Rejected",
}

# Columns the review queue may be sorted by
REVIEW_SORT_FIELDS = [
    "created_at",
    "updated_at",
    "id",
    "description",
    "hs_code",
    "quantity",
    "unit_price",
    "invoice_id",
]

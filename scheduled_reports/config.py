"""
Configuration for the Scheduled Report Service
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Scheduled report service configuration"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    SERVICE_NAME: str = "scheduled_reports"

    # Record store (in-memory store is used when unset)
    DATABASE_URL: Optional[str] = None

    # Domain data sources
    MEMBER_SERVICE_URL: str = "http://member:3002"
    SCHEDULE_SERVICE_URL: str = "http://schedule:3003"
    BILLING_SERVICE_URL: str = "http://billing:3004"
    IDENTITY_SERVICE_URL: str = "http://identity:3001"
    DATA_SOURCE_TIMEOUT_SECONDS: float = 30.0

    # Artifact store (S3)
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_S3_BUCKET_NAME: Optional[str] = None
    REPORT_URL_EXPIRY_SECONDS: int = 365 * 24 * 60 * 60

    # Email
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM_EMAIL: Optional[str] = None
    SMTP_USE_TLS: bool = True

    # Scheduling
    REPORT_POLL_INTERVAL_SECONDS: float = 60.0
    REPORT_RUN_TIMEOUT_SECONDS: Optional[float] = None

    # Observability
    METRICS_PORT: Optional[int] = None
    LOG_LEVEL: str = "INFO"


# Global settings instance
settings = Settings()

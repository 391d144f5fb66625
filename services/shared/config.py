"""Shared configuration management for the invoicing service.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_INVOICE_NUMBER_SCOPE=year
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="contractor-invoicing",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./invoicing.db",
        description="SQLAlchemy database URL, or memory:// for the in-process store",
    )

    # Storage configuration (S3-compatible object storage)
    storage_endpoint: str = Field(
        default="localhost:9000",
        description="S3-compatible storage endpoint (host:port)",
    )
    storage_access_key: str = Field(
        default="",
        description="Storage access key (use env var APP_STORAGE_ACCESS_KEY)",
    )
    storage_secret_key: str = Field(
        default="",
        description="Storage secret key (use env var APP_STORAGE_SECRET_KEY)",
    )
    storage_bucket: str = Field(
        default="invoices",
        description="Bucket holding rendered invoice PDFs",
    )
    storage_secure: bool = Field(
        default=False,
        description="Use HTTPS for storage connections",
    )
    storage_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per storage call before giving up on transient S3 errors",
    )

    # Queue configuration (arq / Redis)
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL used by the arq worker",
    )
    queue_max_jobs: int = Field(default=10, ge=1, description="Max concurrent worker jobs")
    queue_job_timeout: int = Field(default=300, ge=1, description="Job timeout in seconds")
    invoice_sweep_batch_size: int = Field(
        default=25,
        ge=1,
        description="Max submissions picked up by one pending-invoice sweep",
    )
    invoice_sweep_interval_minutes: int = Field(
        default=5,
        ge=1,
        le=59,
        description="Minutes between pending-invoice sweeps",
    )

    # Invoice numbering. One scope and width for the whole deployment.
    invoice_number_prefix: str = Field(default="INV", description="Invoice number prefix")
    invoice_number_scope: Literal["month", "year"] = Field(
        default="month",
        description="Window in which sequences restart: month (YYYYMM) or year (YYYY)",
    )
    invoice_number_width: int = Field(
        default=6,
        ge=1,
        le=12,
        description="Zero-padded width of the sequence part",
    )
    invoice_number_max_retries: int = Field(
        default=5,
        ge=1,
        description="Candidate attempts before falling back to a timestamp number",
    )

    # Generation / claim protocol
    invoice_signed_url_ttl_seconds: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Lifetime of issued download links",
    )
    invoice_claim_stale_seconds: int = Field(
        default=300,
        ge=1,
        description="Age after which a GENERATING claim may be taken over",
    )
    invoice_claim_wait_seconds: float = Field(
        default=10.0,
        ge=0,
        description="How long a request that lost the claim waits for the winner",
    )
    invoice_claim_poll_interval_seconds: float = Field(
        default=0.5,
        gt=0,
        description="Status re-check interval while waiting on another build",
    )
    invoice_generation_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Deadline for one assemble/render/upload run",
    )

    # Billing defaults
    invoice_due_days: int = Field(default=15, ge=0, description="Default payment terms in days")
    invoice_currency: str = Field(default="USD", description="Default currency code")
    default_hourly_rate: Decimal = Field(
        default=Decimal("75"),
        description="Rate used for legacy submissions with no stored or active rate",
    )
    company_name: str = Field(default="Client Company", description="Billed company name")
    company_address_line1: str = Field(default="123 Business Street")
    company_address_line2: str | None = Field(default=None)
    company_country: str = Field(default="United States")
    company_email: str = Field(default="", description="Accounts payable contact")


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()

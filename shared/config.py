"""
Shared configuration management for the Exam Access Layer.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ACCESS_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: Optional[str] = Field(default=None)
    postgres_dsn: str = Field(default="postgres://localhost:5432/access")
    store_backend: str = Field(default="memory")
    store_timeout_seconds: float = Field(default=5.0)

    # Entitlements
    default_max_attempts: int = Field(default=1)
    payment_access_days: int = Field(default=90)
    max_merge_retries: int = Field(default=5)
    grant_retry_attempts: int = Field(default=3)
    grant_retry_base_delay: float = Field(default=0.2)
    status_cache_ttl_seconds: int = Field(default=60)

    # Exams
    exam_catalog_path: Optional[str] = Field(default=None)

    # Payment providers
    paystack_secret_key: Optional[str] = Field(default=None)
    flutterwave_secret_key: Optional[str] = Field(default=None)
    payment_verify_timeout_seconds: float = Field(default=10.0)

    # Security
    admin_token: Optional[str] = Field(default=None)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)

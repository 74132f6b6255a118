"""Configuration management for the time station fingerprint service."""

from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    # Server configuration
    port: int = 8000
    host: str = "0.0.0.0"

    # USB fingerprint device service
    device_service_url: str = "http://localhost:8080"
    capture_timeout: float = 15.0
    device_request_timeout: float = 10.0
    health_check_timeout: float = 3.0
    device_busy_retries: int = 2
    device_busy_delay: float = 1.0
    device_poll_interval: float = 10.0

    # Record store (workforce backend API)
    record_store_url: str = "http://localhost:5001/api"
    store_request_timeout: float = 10.0
    store_max_retries: int = 3
    store_retry_base_delay: float = 0.5

    # Enrollment / verification behaviour
    lift_finger_delay: float = 1.0
    fetch_before_capture: bool = True
    default_finger_index: int = 0
    default_quality: int = 100

    # Observability
    otlp_endpoint: Optional[str] = None
    enable_console_export: bool = False

    # Logging configuration
    log_level: str = "INFO"

    @field_validator('device_service_url', 'record_store_url')
    @classmethod
    def validate_service_url(cls, v):
        if not v:
            raise ValueError('Service URLs are required')
        if not v.startswith(('http://', 'https://')):
            raise ValueError('Service URLs must be HTTP/HTTPS URLs')
        return v.rstrip('/')

    @field_validator('capture_timeout', 'device_request_timeout', 'health_check_timeout', 'store_request_timeout')
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError('Timeouts must be positive')
        return v

    @field_validator('store_max_retries')
    @classmethod
    def validate_max_retries(cls, v):
        if v < 1:
            raise ValueError('STORE_MAX_RETRIES must be at least 1')
        return v

    @field_validator('default_quality')
    @classmethod
    def validate_quality(cls, v):
        if not 0 <= v <= 100:
            raise ValueError('DEFAULT_QUALITY must be between 0 and 100')
        return v


# Global settings instance
settings = Settings()

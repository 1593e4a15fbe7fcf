"""
Core configuration module using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = "sqlite:///./securechat.db"

    # MinIO Configuration
    minio_endpoint: str = "localhost:9000"
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_bucket: str = "securechat-uploads"
    minio_secure: bool = False
    max_upload_bytes: int = 10 * 1024 * 1024

    # Redis Configuration (rate limiting)
    redis_url: str = "redis://localhost:6379/0"
    rate_limit_enabled: bool = True
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 15 * 60

    # Security Configuration
    jwt_secret_key: str = "changeme-in-production"
    jwt_algorithm: str = "HS256"
    bcrypt_rounds: int = 12
    token_expiry_hours: int = 24 * 7

    # Registration / bootstrap admin
    registration_enabled: bool = True
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    admin_name: str = "Administrator"

    # Messaging
    message_ttl_days: int = 7
    duplicate_window_seconds: int = 5
    purge_interval_seconds: int = 60

    # Application Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
settings = Settings()

"""Centralized application configuration using Pydantic settings."""
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven configuration shared across services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = Field(default="Sekolah Backend", description="Title used for the service apps")
    environment: str = Field(default="development", description="Deployment environment name")
    database_url: str = Field(
        default="sqlite:///./sekolah.db",
        description="SQLAlchemy database URL. Defaults to local SQLite for development.",
    )
    run_db_migrations: bool = Field(
        default=False,
        description="Whether this service should create/update database tables on startup.",
    )

    jwt_secret: str = Field(
        default="development-only-secret-change-me-in-production",
        min_length=32,
        description="HMAC signing secret for access tokens",
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(default=60, gt=0, description="Access token lifetime in minutes")
    refresh_token_expire_days: int = Field(default=7, gt=0, description="Refresh token record lifetime in days")
    device_session_expire_days: int = Field(default=30, gt=0, description="Device session lifetime in days")
    bcrypt_rounds: int = Field(default=10, ge=4, le=31, description="bcrypt cost factor for passwords and tokens")

    generated_password_length: int = Field(default=12, ge=12, description="Length of approval/direct-create passwords")
    admin_generated_password_length: int = Field(default=16, ge=12, description="Length of admin account passwords")
    generated_password_alphabet: str = Field(
        default="ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz23456789!@#$%",
        min_length=10,
        description="Characters drawn from when generating passwords",
    )
    attendance_validity_minutes: int = Field(default=30, ge=1, le=1440, description="Default QR validity window")

    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="60/minute", description="Global rate limiting rule")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")
    log_dir: str = Field(default="logs", description="Directory for per-service audit logs")
    metrics_enabled: bool = Field(default=True, description="Expose Prometheus metrics on /metrics")

    auth_service_port: int = 8001
    admin_service_port: int = 8002
    profile_service_port: int = 8003
    notifications_service_port: int = 8004
    attendance_service_port: int = 8005
    parent_link_service_port: int = 8006

    @property
    def access_token_expire_seconds(self) -> int:
        return self.access_token_expire_minutes * 60


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached Settings instance (useful for tests)."""

    get_settings.cache_clear()

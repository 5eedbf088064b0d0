from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_AUTH_SECRET_KEY = "change-me-headscale-admin-session-secret"
DEFAULT_ADMIN_USERNAME = "admin"
_PROD_ENV_NAMES = {"prod", "production"}


class Settings(BaseSettings):
    app_name: str = Field(default="Headscale Admin")
    app_env: str = Field(default="dev")
    app_version: str = Field(default="0.1.0")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="")

    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=3001)
    auth_secret_key: str = Field(default=DEFAULT_AUTH_SECRET_KEY)
    auth_cookie_secure: bool = Field(default=False)
    auth_session_ttl_seconds: int = Field(default=86400)
    admin_username: str = Field(default=DEFAULT_ADMIN_USERNAME)
    admin_password_hash: str = Field(default="")

    control_api_url: str = Field(default="")
    control_api_key: str = Field(default="")
    control_api_timeout_seconds: float = Field(default=10.0, gt=0)
    control_api_retries: int = Field(default=0, ge=0, le=5)

    metrics_api_url: str = Field(default="")
    metrics_api_timeout_seconds: float = Field(default=5.0, gt=0)
    metrics_enabled: bool = Field(default=True)

    stats_refresh_interval_seconds: float = Field(default=30.0, gt=0)
    demo_activity_enabled: bool = Field(default=False)
    demo_activity_interval_seconds: float = Field(default=60.0, gt=0)
    push_queue_size: int = Field(default=32, ge=1)
    push_keepalive_seconds: float = Field(default=15.0, gt=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() in _PROD_ENV_NAMES

    @model_validator(mode="after")
    def validate_control_api(self) -> "Settings":
        if not self.control_api_url.strip():
            raise ValueError("CONTROL_API_URL must be set in .env or environment variables.")
        if not self.control_api_key.strip():
            raise ValueError("CONTROL_API_KEY must be set in .env or environment variables.")
        if self.is_production:
            issues: list[str] = []
            if self.auth_secret_key == DEFAULT_AUTH_SECRET_KEY:
                issues.append("AUTH_SECRET_KEY must not use the default placeholder in production.")
            if len(self.auth_secret_key) < 32:
                issues.append("AUTH_SECRET_KEY must be at least 32 characters in production.")
            if not self.auth_cookie_secure:
                issues.append("AUTH_COOKIE_SECURE must be true in production.")
            if not self.admin_password_hash:
                issues.append("ADMIN_PASSWORD_HASH must be set in production.")
            if self.demo_activity_enabled:
                issues.append("DEMO_ACTIVITY_ENABLED must be false in production.")
            if issues:
                raise ValueError(" ".join(issues))
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()

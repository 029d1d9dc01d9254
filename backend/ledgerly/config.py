"""Application configuration."""
from collections import Counter
from functools import lru_cache
import math

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # App
    app_name: str = "Ledgerly"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Database
    database_url: str = "sqlite:///./data/ledgerly.db"

    # Access tokens
    secret_key: str
    algorithm: str = "HS256"
    jwt_issuer: str = "ledgerly"
    jwt_audience: str = "ledgerly.app"
    access_token_expire_minutes: int = 15
    access_token_leeway_seconds: int = 5

    # Refresh tokens / sessions
    refresh_token_expire_days: int = 30
    session_absolute_ttl_days: int = 90
    refresh_lookup_key: str | None = None
    bcrypt_rounds: int = 10
    max_active_sessions_per_user: int = 10
    refresh_scan_limit: int = 50
    revoked_scan_limit: int = 100
    revoked_token_retention_days: int = 45
    allow_body_refresh_token: bool = False
    refresh_cookie_name: str = "refresh_token"
    refresh_cookie_path: str = "/api/session"
    refresh_cookie_samesite: str = "lax"
    refresh_cookie_secure: bool = True
    csrf_cookie_name: str = "csrf_token"

    # OTP
    otp_ttl_minutes: int = 5
    otp_max_attempts: int = 5
    expose_otp_codes: bool = False

    # Users
    user_id_prefix_default: str = "IND"
    user_id_num_digits: int = 6

    # Notification delivery
    notification_timeout_seconds: float = 10.0
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from_email: str = "no-reply@ledgerly.app"
    sms_gateway_url: str | None = None
    sms_gateway_api_key: str | None = None
    sms_sender_id: str = "LEDGLY"

    # Housekeeping
    otp_cleanup_consumed_after_hours: int = 24
    otp_cleanup_hard_retention_days: int = 7
    session_revoked_grace_days: int = 30
    session_max_age_days: int = 90
    cleanup_batch_size: int = 1000

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, value: str) -> str:
        """Fail closed if SECRET_KEY is weak or placeholder quality."""
        if not value:
            raise ValueError("SECRET_KEY must be set.")

        if len(value) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")

        weak_values = {"changeme", "changeme-in-production", "secret", "password", "test", "change_me"}
        lowered = value.lower()
        if lowered in weak_values or "changeme" in lowered or "change_me" in lowered:
            raise ValueError("SECRET_KEY must not be a placeholder value.")

        counts = Counter(value)
        entropy_per_char = -sum((count / len(value)) * math.log2(count / len(value)) for count in counts.values())
        estimated_entropy_bits = entropy_per_char * len(value)
        if estimated_entropy_bits < 100:
            raise ValueError("SECRET_KEY entropy is too low; use a cryptographically random value.")

        return value

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_bcrypt_rounds(cls, value: int) -> int:
        if not 4 <= value <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return value

    @model_validator(mode="after")
    def validate_diagnostics(self) -> "Settings":
        """Raw OTP codes never leave the server in production."""
        if self.expose_otp_codes and self.is_production:
            raise ValueError("EXPOSE_OTP_CODES cannot be enabled in production.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def lookup_key(self) -> str:
        """Key for refresh-token lookup fingerprints."""
        return self.refresh_lookup_key or self.secret_key


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

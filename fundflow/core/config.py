from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # App
    app_name: str = "Fundflow Approvals"
    debug: bool = False

    # Deep links in emails are built from this
    frontend_url: str = "http://localhost:3000"

    # Database
    database_url: str = "sqlite:///./fundflow.db"

    # Security
    secret_key: str = "dev-secret-key-change-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Approval thresholds (used when the system_settings rows are unset)
    approval_threshold_usd: float = 5000
    approval_threshold_percent: float = 10

    # Notifications
    email_notifications_enabled: bool = False
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from_email: str = "noreply@fundflow.local"
    smtp_from_name: str = "Fundflow"
    smtp_use_tls: bool = True
    smtp_timeout: int = 30

    # Logging
    log_level: str = "INFO"
    log_dir: str = "./logs"
    log_to_file: bool = False

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_port)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="FUNDFLOW_",
        case_sensitive=False,
        extra="ignore"  # Allow extra env vars without raising validation errors
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()

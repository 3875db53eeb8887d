from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env from the project root so it loads regardless of cwd
_BACKEND_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _BACKEND_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(str(_ENV_FILE), ".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Persistence: "sql" uses database_url, "local" keeps everything in process memory
    persistence_backend: Literal["sql", "local"] = "sql"
    database_url: str = ""
    database_ssl: bool = False
    create_tables: bool = False  # prefer Alembic in production

    # JWT
    secret_key: str
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    algorithm: str = "HS256"

    # Credentials
    bcrypt_rounds: int = 12
    min_password_length: int = 6

    # CORS
    cors_origins: str = "http://localhost:3000"

    # Slot/appointment business rules
    slot_duration_minutes: int = 30
    # 0 = providers may withdraw an open slot at any time before it starts
    slot_withdraw_min_notice_minutes: int = 0
    # Move confirmed appointments to completed once start + grace has passed
    auto_complete_enabled: bool = False
    auto_complete_grace_minutes: int = 60
    sweep_interval_seconds: int = 15 * 60
    seed_sample_data: bool = False

    # Env
    env: str = "development"

    # Email (SMTP). Leave smtp_host empty to disable sending.
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_email: str = ""
    from_name: str = "DocCare"
    site_name: str = "DocCare"
    contact_email: str = "contact@doccare.com"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password and self.from_email)


settings = Settings()

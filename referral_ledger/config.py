"""
Ledger configuration using pydantic-settings.
Values come from LEDGER_* environment variables or a local .env file.
"""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    log_level: str = "INFO"
    log_json: bool = True

    # Ledger store
    database_url: str = "sqlite+aiosqlite:///./referral_ledger.db"
    database_echo: bool = False

    # Remote directory (empty url -> in-process directory)
    directory_url: str = ""
    directory_api_key: str = ""
    directory_timeout_seconds: float = 5.0

    # Referral codes
    code_generation_attempts: int = 10

    # Out-of-band directory sync
    sync_debounce_seconds: float = 2.0
    sync_max_attempts: int = 3
    sync_backoff_seconds: float = 1.0
    sync_queue_size: int = 1000

    # Comma-separated account ids treated as subscribed
    subscribed_account_ids: str = ""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def subscribed_ids(self) -> frozenset[str]:
        return frozenset(
            part.strip() for part in self.subscribed_account_ids.split(",") if part.strip()
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()

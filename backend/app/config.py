"""Configuration settings for the gigsettle backend."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings

from gigsettle.config import SettlementConfig


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Storage
    storage_backend: Literal["sqlite", "supabase", "memory"] = "sqlite"
    sqlite_path: str | None = None  # Defaults to ~/.gigsettle/settlement.db

    # Supabase (storage_backend=supabase)
    supabase_url: str | None = None
    supabase_secret_key: str | None = None  # Backend/admin access
    # Legacy key name, still accepted
    supabase_service_role_key: str | None = None

    # JWT
    jwt_secret_key: str  # Required - no default for security
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24  # 1 day
    admin_agents: list[str] = []  # Identities allowed on /maintenance

    # Ledger anchor; the in-memory anchor is used when unset
    ledger_url: str | None = None
    ledger_token: str | None = None

    # Settlement engine
    default_threshold: int = 2
    currency: str = "USDM"
    ledger_timeout_seconds: float = 30.0
    auto_release_requires_freelancer: bool = False

    # Deadline sweep
    sweep_enabled: bool = False
    sweep_interval_seconds: float = 60.0

    # App
    debug: bool = False
    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    def settlement_config(self) -> SettlementConfig:
        """Engine tunables; anything not set here comes from GIGSETTLE_* variables."""
        return SettlementConfig.from_env(
            default_threshold=self.default_threshold,
            currency=self.currency,
            ledger_timeout_seconds=self.ledger_timeout_seconds,
            sweep_interval_seconds=self.sweep_interval_seconds,
            auto_release_requires_freelancer=self.auto_release_requires_freelancer,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

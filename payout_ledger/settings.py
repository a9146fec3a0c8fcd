"""Ledger settings and configuration."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger configuration.

    Monetary amounts are integer minor units of ``currency`` (cents).
    """

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "payout-ledger"
    env: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"  # console | json
    allowed_origins: str = "*"
    public_base_url: str = "http://localhost:5173"

    # Ledger rules
    currency: str = "CAD"
    signup_bonus: int = 1000  # $10.00 on account creation
    referral_bonus: int = 1000  # credited to the referrer
    minimum_payout: int = 1000

    # Storage
    database_url: Optional[str] = None  # None -> in-memory store
    store_timeout_seconds: float = 10.0

    @property
    def origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


settings = Settings()

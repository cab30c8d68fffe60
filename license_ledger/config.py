"""
Application settings.

Loads configuration from environment variables using pydantic-settings.
Every tunable number of the engines (commission table, OTP policy,
withdrawal limits, default package shape) lives here and nowhere else.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CommissionLevel(BaseModel):
    """Commission rate and unlock delay for one depth of the referral chain."""

    level: int = Field(..., ge=1)
    rate: Decimal = Field(..., ge=0, le=1)
    unlock_days: int = Field(..., ge=0)


class Settings(BaseSettings):
    """Ledger settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Money
    currency: str = "USDT"
    network: str = "BEP20"

    # Optimistic concurrency
    cas_max_retries: int = Field(default=5, ge=1)

    # OTP
    otp_pin_length: int = Field(default=6, ge=4, le=10)
    otp_max_attempts: int = Field(default=5, ge=1)
    otp_ttl_withdrawal_seconds: int = 10 * 60
    otp_ttl_password_reset_seconds: int = 15 * 60
    otp_ttl_account_activation_seconds: int = 60 * 60
    otp_bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # Withdrawals
    min_withdrawal: Decimal = Decimal("10")
    max_withdrawal: Decimal | None = None
    withdrawal_network_fee: Decimal = Decimal("1")
    # A hold with no withdrawal record is released once this old
    orphan_reservation_grace_seconds: int = Field(default=5 * 60, ge=0)

    # Referral commissions (level 1 unlocks at D+9, deeper levels at D+17)
    commission_levels: list[CommissionLevel] = Field(
        default_factory=lambda: [
            CommissionLevel(level=1, rate=Decimal("0.10"), unlock_days=9),
            CommissionLevel(level=2, rate=Decimal("0.10"), unlock_days=17),
        ]
    )

    # Default package shape
    default_daily_rate: Decimal = Decimal("0.125")
    default_benefit_days: int = 8
    default_pause_days: int = 1
    default_total_cycles: int = 5
    default_cap_percent: Decimal = Decimal("100")

    # Logging
    log_file: str | None = "logs/ledger.log"
    log_level: str = "INFO"

    @field_validator("commission_levels")
    @classmethod
    def validate_commission_levels(
        cls, v: list[CommissionLevel]
    ) -> list[CommissionLevel]:
        """Levels must be contiguous starting at 1."""
        levels = sorted(item.level for item in v)
        if levels != list(range(1, len(levels) + 1)):
            raise ValueError(
                f"commission levels must be contiguous from 1, got {levels}"
            )
        return sorted(v, key=lambda item: item.level)

    @property
    def max_referral_depth(self) -> int:
        return len(self.commission_levels)

    def commission_level(self, level: int) -> CommissionLevel | None:
        for item in self.commission_levels:
            if item.level == level:
                return item
        return None


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()

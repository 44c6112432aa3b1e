"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class LendingConfig(BaseSettings):
    """Community lending core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LENDME_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "memory://"  # or sqlite:///lendme.db

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Fund configuration
    opening_fund_balance: str = "0.00"

    # Loan business rules
    interest_model: str = "flat"  # flat or amortizing
    min_loan_amount: str = "1000.00"
    max_term_months: int = 60
    purpose_min_length: int = 10
    purpose_max_length: int = 500
    rejection_reason_min_length: int = 10
    loan_number_prefix: str = "LOAN"

    # Repayment rules
    grace_period_days: int = 5
    late_fee_daily_rate: str = "0.05"  # percent of the overdue amount per day
    # A loan defaults once this many installments are overdue (inclusive)
    default_overdue_threshold: int = 3

    # Contribution rules
    min_contribution_amount: str = "100.00"

    @property
    def min_loan_amount_decimal(self) -> Decimal:
        return Decimal(self.min_loan_amount)

    @property
    def min_contribution_decimal(self) -> Decimal:
        return Decimal(self.min_contribution_amount)

    @property
    def late_fee_daily_rate_decimal(self) -> Decimal:
        return Decimal(self.late_fee_daily_rate)

    @property
    def opening_fund_balance_decimal(self) -> Decimal:
        return Decimal(self.opening_fund_balance)


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config

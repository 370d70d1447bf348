"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Cooperative lending core configuration"""

    # Database configuration
    database_url: str = "sqlite:///coop_lending.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Money
    currency: str = "PHP"  # ISO 4217 code of the loan book

    # Penalty rules
    default_penalty_rate: str = "0.02"  # Per 30 days overdue, on the unpaid installment
    non_payment_threshold_days: int = 30  # Below: late_payment, at or above: non_payment

    # Amortization rules
    derive_periodic_rate: bool = False  # Convert monthly rate for weekly/semi-monthly loans
    schedule_tolerance_minor_units: int = 1

    # Closure rule
    close_requires_zero_penalties: bool = False

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "COOP_LENDING_"
        env_file = ".env"
        case_sensitive = False


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

"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import Field
from pydantic_settings import BaseSettings
from typing import Optional


class LoanServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///loan_servicing.db"  # Default SQLite

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Numerical configuration
    currency_precision: int = Field(2, ge=0, le=6)  # Minor-unit digits for all monetary values
    rate_precision: int = Field(4, ge=0, le=10)  # Digits kept on percent-per-annum rates
    residual_tolerance_pct: str = "1.0"  # Max final-installment drift, percent of EMI
    max_schedule_months: int = Field(1200, ge=1)  # Hard bound on generated rows

    # Business rules configuration
    bpi_first_emi_threshold_days: int = 15  # Shorter broken periods roll into first EMI
    max_tenure_months: int = Field(600, ge=1)  # Longest tenure a loan may be priced or re-solved to
    default_prepayment_strategy: str = "REDUCE_TENURE"

    # Concurrency configuration
    lock_timeout_seconds: float = Field(5.0, gt=0)  # Per-loan mutation lock wait
    reset_workers: int = Field(4, ge=1)  # Thread pool size for benchmark fan-out
    reset_deadline_seconds: Optional[float] = None  # None = no deadline

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_SERVICING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanServicingConfig()


def get_config() -> LoanServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanServicingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanServicingConfig()
    return config

"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class MicrofinanceConfig(BaseSettings):
    """Microfinance lending engine configuration"""

    # Runtime environment; tracebacks are attached to failures outside production
    environment: str = "development"

    # Database configuration
    database_path: str = "microfinance.db"
    use_sqlite: bool = True

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Repayment rules
    penalty_rate: str = "0.05"  # Annual late penalty on overdue amount
    duplicate_amount_tolerance: str = "0.05"  # +/- 5% of amount
    duplicate_window_hours: int = 24
    payment_attempt_window_seconds: int = 60
    max_payment_multiple: str = "2"  # x next installment due total

    # Schedule rules
    reconciliation_tolerance: str = "100"  # Currency units, customized schedules
    strict_term_validation: bool = False  # Reject unknown frequency/method

    # Classification thresholds (upper bound of days in arrears, inclusive)
    normal_max_days: int = 30
    watch_max_days: int = 90
    substandard_max_days: int = 180
    doubtful_max_days: int = 365

    # Provisioning rates by class
    provision_rate_normal: str = "0.01"
    provision_rate_watch: str = "0.05"
    provision_rate_substandard: str = "0.25"
    provision_rate_doubtful: str = "0.50"
    provision_rate_loss: str = "1.00"

    # Portfolio snapshots aggregate loans in this currency only
    reporting_currency: str = "RWF"

    # File uploads (payment proofs)
    upload_directory: str = "uploads"

    # Performance configuration
    batch_processing_size: int = 1000

    class Config:
        env_prefix = "MICROFINANCE_"
        env_file = ".env"
        case_sensitive = False

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


# Global configuration instance
config = MicrofinanceConfig()


def get_config() -> MicrofinanceConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicrofinanceConfig:
    """Reload configuration from environment"""
    global config
    config = MicrofinanceConfig()
    return config

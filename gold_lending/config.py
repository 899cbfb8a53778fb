"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
The configuration object is built once at process start and handed to the
components that need it; nothing below reads the environment directly.
"""

from pydantic_settings import BaseSettings
from typing import Dict, List, Optional


class LendingConfig(BaseSettings):
    """Gold loan servicing engine configuration"""
    
    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    sqlite_path: str = "gold_lending.db"
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Loan product rules
    loan_id_prefix: str = "CY"
    allowed_terms: List[int] = [3, 6, 12]
    allowed_rates: List[int] = [18, 24, 30, 36]
    minimum_loan_amount: int = 100
    
    # Notification dispatch
    notification_provider: str = "log"  # log, webhook or brevo
    notification_webhook_url: str = ""
    notification_timeout: float = 10.0
    brevo_api_url: str = "https://api.brevo.com/v3/smtp/email"
    brevo_api_key: str = ""
    brevo_sender_email: str = "noreply@example.com"
    brevo_sender_name: str = "Gold Loans"
    admin_email: str = "admin@example.com"
    
    # Batch job rules
    reminder_days_before_due: List[int] = [3, 1, 0]
    weekly_summary_window_days: int = 7
    overdue_notice_window_hours: int = 24
    gold_return_overdue_days: int = 30
    gold_return_reminder_schedule: Dict[str, int] = {
        "initial": 3,
        "followup": 7,
        "urgent": 15,
        "final": 30,
    }
    
    class Config:
        env_prefix = "GOLDLOAN_"
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

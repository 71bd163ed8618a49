"""
Configuration Management Module

Process-level settings for the arrears engine, loaded from the environment
with pydantic-settings. Business policy (rates, caps, thresholds) lives in
the persisted ArrearsConfiguration record, see policy.py.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class ArrearsSettings(BaseSettings):
    """Arrears engine process configuration"""

    model_config = SettingsConfigDict(
        env_prefix="ARREARS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Storage configuration
    storage_backend: str = "sqlite"  # memory, sqlite or postgresql
    sqlite_path: str = "arrears.db"
    database_url: str = ""  # PostgreSQL DSN, required for postgresql backend

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Batch configuration
    batch_max_workers: int = 1  # >1 evaluates fees and alerts in a thread pool
    system_user_id: str = "SYSTEM"

    # Notification transport
    notification_webhook_url: str = ""  # Empty = log-only sender
    notification_timeout: float = 10.0

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = ArrearsSettings()


def get_config() -> ArrearsSettings:
    """Get global configuration instance"""
    return config


def reload_config() -> ArrearsSettings:
    """Reload configuration from environment"""
    global config
    config = ArrearsSettings()
    return config

"""
Configuration Management Module

Centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class WorkflowSettings(BaseSettings):
    """Workflow engine configuration"""

    # Storage: memory://, sqlite:///path.db or postgresql://...
    database_url: str = "sqlite:///workflows.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None

    # SLA defaults, overridable per template through sla_config
    default_sla_days: Optional[int] = None
    sla_warning_threshold_percent: float = 80.0
    sla_critical_threshold_hours: float = 24.0
    extend_due_date_on_resume: bool = True

    # Optimistic concurrency
    conflict_retry_attempts: int = 3

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "WORKFLOWS_"
        env_file = ".env"
        case_sensitive = False


config = WorkflowSettings()


def get_config() -> WorkflowSettings:
    """Get global configuration instance"""
    return config


def reload_config() -> WorkflowSettings:
    """Reload configuration from environment"""
    global config
    config = WorkflowSettings()
    return config

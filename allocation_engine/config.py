"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class AllocationConfig(BaseSettings):
    """Case allocation engine configuration"""
    
    # Storage configuration
    database_url: str = "sqlite:///allocation_engine.db"  # "memory://" for in-memory storage
    staging_dir: str = "uploads"  # Where uploaded CSV files are kept until processed
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091
    api_max_upload_size: int = 20 * 1024 * 1024  # 20MB
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Background processing
    worker_threads: int = 4
    batch_chunk_size: int = 500
    
    # Business rules configuration
    default_agent_capacity: int = 100
    top_failure_reasons_limit: int = 10
    recent_errors_limit: int = 20
    field_sample_messages: int = 5
    summary_default_days: int = 30
    
    # Feature flags
    enable_audit_logging: bool = True
    enable_outbox_relay: bool = True
    recover_batches_on_startup: bool = True
    
    class Config:
        env_prefix = "ALLOC_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = AllocationConfig()


def get_config() -> AllocationConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> AllocationConfig:
    """Reload configuration from environment"""
    global config
    config = AllocationConfig()
    return config

"""
Configuration management with Pydantic Settings
Loads from .env file with validation and defaults
"""

from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with validation"""

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///./crmsync.db",
        description="Database connection URL"
    )
    redis_url: str = Field(
        default="redis://127.0.0.1:6379/0",
        description="Redis connection URL"
    )
    cache_namespace: str = Field(
        default="crm",
        description="Key prefix for every Redis key written by this deployment"
    )

    # Security
    encryption_key: Optional[str] = Field(
        None,
        description="Fernet key used to decrypt stored platform API keys"
    )

    # Job queue
    webhook_concurrency: int = Field(default=10, description="Workers per webhook topic")
    file_processing_concurrency: int = Field(default=3, description="Workers for file processing")
    file_processing_timeout_seconds: float = Field(default=300.0, description="File job timeout")
    webhook_max_attempts: int = Field(default=3, description="Attempts per webhook job")
    webhook_backoff_seconds: float = Field(default=2.0, description="Exponential backoff base")
    max_queue_size: int = Field(default=10000, description="Max waiting jobs per topic")

    # Cache TTLs (seconds)
    dedup_ttl_seconds: int = Field(default=600, description="Webhook dedup marker TTL")
    rules_cache_ttl: int = Field(default=300, description="Sync rules cache TTL")
    settings_cache_ttl: int = Field(default=600, description="Platform settings cache TTL")
    metadata_cache_ttl: int = Field(default=1800, description="Platform metadata cache TTL")

    # External APIs
    amocrm_rate_limit: int = Field(default=7, description="AmoCRM requests per second")
    lptracker_rate_limit: int = Field(default=5, description="LPTracker requests per second")
    lptracker_base_url: str = Field(
        default="https://direct.lptracker.ru",
        description="LPTracker API base URL"
    )
    adapter_pool_size: int = Field(default=5, description="Concurrent calls per CRM adapter")
    http_timeout: float = Field(default=30.0, description="Outbound HTTP timeout in seconds")

    # Log sink
    log_sink_queue_size: int = Field(default=1000, description="Buffered log events")
    log_sink_persist: bool = Field(default=True, description="Persist log events to system_logs")

    # Environment
    environment: str = Field(default="development", description="Environment")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Log level")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        if v not in ["development", "production", "testing"]:
            raise ValueError("Environment must be development, production, or testing")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        v = v.upper()
        if v not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ValueError("Invalid log level")
        return v

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    model_config = {
        "extra": "ignore",  # Ignore extra fields from .env
        "env_file": ".env",
        "case_sensitive": False
    }


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings"""
    return settings

"""
Policy Machine Settings Configuration

Centralized configuration using Pydantic Settings with environment variable support.
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


class StorageAdapterType(str, Enum):
    """Supported storage adapter backends."""
    IN_MEMORY = "in_memory"
    CLOSURE = "closure"


class Settings(BaseSettings):
    """
    Policy machine settings loaded from environment variables.

    Supports .env file loading and provides sensible defaults for development.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Policy Machine Configuration
    # ==========================================================================

    default_policy_machine_name: str = Field(
        default="default_policy_machine",
        description="Name given to policy machines created without one"
    )

    storage_adapter: StorageAdapterType = Field(
        default=StorageAdapterType.IN_MEMORY,
        description="Storage adapter backend to use"
    )

    tolerate_cycles: bool = Field(
        default=True,
        description="Accept assignments that close a cycle in the assignment graph"
    )

    bulk_persist_transactional: bool = Field(
        default=False,
        description="Run bulk buffer flushes inside an adapter transaction"
    )

    # ==========================================================================
    # Audit Configuration
    # ==========================================================================

    audit_enabled: bool = Field(
        default=False,
        description="Record privilege decisions and policy changes"
    )

    audit_max_entries: int = Field(
        default=10000,
        description="Maximum audit entries kept in memory"
    )

    audit_log_path: Optional[str] = Field(
        default=None,
        description="Optional JSON-lines file receiving audit entries"
    )

    # ==========================================================================
    # Application Configuration
    # ==========================================================================

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    # ==========================================================================
    # Validators
    # ==========================================================================

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid Python logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.

    Returns:
        Settings: Policy machine settings instance
    """
    return Settings()

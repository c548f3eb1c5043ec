from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MEDBOM_",
        env_file=".env",
        extra="ignore",
    )

    # Runtime
    ENVIRONMENT: str = Field(default="dev", description="Environment name")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level for the CLI")

    # Database
    DATABASE_URL: str = Field(default="sqlite:///medbom_dev.db")
    TEST_DATABASE_URL: str = Field(default="sqlite:///:memory:")
    SCHEMA_MODE: str = Field(
        default="create_all",
        description="create_all: auto-create tables (dev), migrations: use Alembic only (prod)",
    )

    # BOM generation
    BOM_MAX_DEPTH: int = Field(
        default=20, description="Maximum assembly nesting depth explored by the expander"
    )
    GENERATION_TARGET_MS: int = Field(
        default=5000, description="Latency target; slower generations are logged"
    )
    GENERATION_TIMEOUT_SECONDS: float = Field(
        default=8.0, description="Hard ceiling; generations exceeding it are discarded"
    )
    GENERATION_WORKERS: int = Field(
        default=16, description="Worker threads available for concurrent generations"
    )

    # Memoization cache
    CACHE_MAX_ENTRIES: int = Field(
        default=256, description="Expansion results kept in the single-flight cache"
    )

    # Numbering
    CUSTOM_PART_PREFIX: str = Field(default="700", description="Custom part number series")
    BOM_NUMBER_PREFIX: str = Field(default="BOM", description="BOM number prefix")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

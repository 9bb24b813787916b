"""
Configuration Management

Centralized configuration using Pydantic Settings.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="MODELER_",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Modeler"
    app_version: str = "1.0.0"
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Upstream API (schema, dimension and persistence services)
    api_base_url: str = Field(default="http://localhost:8000/api/v1")
    api_token: Optional[str] = Field(default=None)
    app_id: Optional[str] = Field(default=None)
    request_timeout: float = Field(default=10.0)

    # Persistence: "local" keeps definitions in the SQLite store,
    # "remote" sends them to the persistence service at api_base_url.
    persistence_mode: str = Field(default="local")
    store_path: Optional[str] = Field(default=None)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


# Global settings instance
settings = get_settings()

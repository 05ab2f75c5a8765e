"""Library configuration using Pydantic Settings."""

import logging
import os
from collections.abc import Mapping
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from lumeflow.backend import BackendType
from lumeflow.domain.value_object import (
    CacheConfig,
    CircuitBreakerConfig,
    ExecutionMode,
    RateLimiterConfig,
    RetryConfig,
)

__all__ = [
    "CacheConfig",
    "CircuitBreakerConfig",
    "RateLimiterConfig",
    "RetryConfig",
    "Settings",
    "configure_logging",
    "get_settings",
    "load_secrets_from_env",
]


class Settings(BaseSettings):
    """Settings loaded from ``LUMEFLOW_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LUMEFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Jobs
    max_jobs: int = Field(default=100, ge=1)
    job_cleanup_interval: float = Field(default=300, gt=0)  # seconds
    job_max_age: float = Field(default=86400, gt=0)  # seconds

    # Workflows
    default_mode: ExecutionMode = ExecutionMode.PRODUCTION
    execution_store: BackendType = BackendType.IN_MEMORY
    sqlite_path: str = ":memory:"
    secret_prefix: str = "LUMEFLOW_SECRET_"

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def load_secrets_from_env(prefix: str | None = None, environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """
    Collect secrets from variables named ``<prefix><NAME>``.

    :param prefix: Variable prefix; defaults to ``Settings.secret_prefix``
    :type prefix: str | None
    :param environ: Variables to read; defaults to ``os.environ``
    :type environ: Mapping[str, str] | None
    :returns: Secret values keyed by the lower-cased name after the prefix
    :rtype: dict[str, str]
    """
    if prefix is None:
        prefix = get_settings().secret_prefix
    environ = os.environ if environ is None else environ
    return {
        name[len(prefix):].lower(): value
        for name, value in environ.items()
        if name.startswith(prefix) and len(name) > len(prefix)
    }


def configure_logging(level: str | int | None = None) -> None:
    """Configure root logging for applications that opt in."""
    if level is None:
        level = get_settings().log_level
    if isinstance(level, str):
        level = level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

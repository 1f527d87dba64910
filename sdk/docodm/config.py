"""
Configuration for DocODM.

Settings load from keyword arguments or ``DOCODM_*`` environment variables:

    DOCODM_URL=mongodb://localhost:27017/app
    DOCODM_DATABASE=app
    DOCODM_CACHE_SIZE=4096
    DOCODM_CACHE_TTL_MS=30000
    DOCODM_LOG_LEVEL=INFO
    DOCODM_CONNECT_TIMEOUT_MS=5000

An empty ``url`` (or ``memory://``) selects the in-memory driver.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from .cache import DEFAULT_CACHE_SIZE, DEFAULT_TTL_MS

logger = logging.getLogger(__name__)

MEMORY_URL = "memory://"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class OdmSettings(BaseSettings):
    """ODM configuration."""

    # Storage
    url: str = Field(default=MEMORY_URL, description="Document store URL; memory:// for in-process storage")
    database: Optional[str] = Field(default=None, description="Database name, defaults to the one in url")
    connect_timeout_ms: int = Field(default=5000, gt=0)

    # Model caches
    cache_size: int = Field(default=DEFAULT_CACHE_SIZE, gt=0)
    cache_ttl_ms: int = Field(default=DEFAULT_TTL_MS, gt=0)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = {"env_prefix": "DOCODM_"}

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @property
    def uses_memory(self) -> bool:
        """Whether the in-memory driver is selected."""
        return not self.url or self.url.startswith(MEMORY_URL)

    def log_config(self) -> None:
        """Log configuration (redacting credentials in the URL)."""
        logger.info(
            "ODM configuration loaded",
            extra={
                "url": _redact(self.url),
                "database": self.database,
                "cache_size": self.cache_size,
                "cache_ttl_ms": self.cache_ttl_ms,
            },
        )


def _redact(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if "@" not in rest:
        return url
    return f"{scheme}{sep}***@{rest.rsplit('@', 1)[1]}"


def configure_logging(settings: OdmSettings) -> None:
    """Set the level of the package logger from ``settings``."""
    logging.getLogger(__name__.rpartition(".")[0]).setLevel(settings.log_level)

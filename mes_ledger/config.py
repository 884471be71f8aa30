"""Runtime configuration for the MES ledger."""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings read from ``MES_*`` environment variables or a ``.env`` file."""

    model_config = SettingsConfigDict(
        env_prefix="MES_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_path: str = "mes.sqlite3"
    cache_ttl_seconds: float = 300.0
    persistence_retry_attempts: int = 3
    persistence_retry_delay_seconds: float = 0.2
    conflict_retry_attempts: int = 5
    outgassing_sample_rate: int = 18
    rework_limit: int = 1
    # Plant local time used for generated document numbers.
    numbering_utc_offset_hours: int = 8
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = ["Settings", "get_settings", "configure_logging"]

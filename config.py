"""Host configuration read from the environment (and an optional .env file)."""
from __future__ import annotations
from functools import lru_cache
from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STUDY_PLANNER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    data_dir: Optional[Path] = None
    log_level: str = "INFO"
    default_profile: str = "default"


@lru_cache
def get_config() -> EngineConfig:
    """Return a cached EngineConfig instance."""
    return EngineConfig()

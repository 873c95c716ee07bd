# sceneforge/core/settings.py
from __future__ import annotations

from functools import lru_cache
from typing import Optional, Union

from pydantic import AnyUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")

    app_env: str = "dev"
    app_name: str = "Scene Forge"

    log_level: str = "INFO"
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")  # "json"|"plain"

    # Provider
    llm_provider: str = Field(default="openai", validation_alias="LLM_PROVIDER")
    llm_base_url: Optional[Union[AnyUrl, str]] = Field(
        default="https://api.openai.com", validation_alias="LLM_BASE_URL"
    )
    llm_api_key: Optional[str] = Field(default=None, validation_alias="LLM_API_KEY")
    llm_default_model: str = Field(default="", validation_alias="LLM_DEFAULT_MODEL")
    llm_timeout_sec: float = Field(default=60.0, validation_alias="LLM_TIMEOUT_SEC")

    # Response cache
    cache_ttl_sec: float = Field(default=30 * 60, validation_alias="CACHE_TTL_SEC")
    cache_max_entries: int = Field(default=1000, validation_alias="CACHE_MAX_ENTRIES")
    cache_evict_batch: int = Field(default=100, validation_alias="CACHE_EVICT_BATCH")

    # Scene locks
    lock_idle_timeout_sec: float = Field(default=30 * 60, validation_alias="LOCK_IDLE_TIMEOUT_SEC")
    lock_max_entries: int = Field(default=200, validation_alias="LOCK_MAX_ENTRIES")
    lock_sweep_interval_sec: float = Field(default=5 * 60, validation_alias="LOCK_SWEEP_INTERVAL_SEC")

    @property
    def provider_key(self) -> str:
        return self.llm_provider.strip().lower()


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()

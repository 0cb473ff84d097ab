from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MAILSHOP_", env_file=".env", env_file_encoding="utf-8", extra="ignore",
    )

    api_base_url: str = "http://localhost:8080/api"
    api_token: Optional[str] = None
    request_timeout_seconds: float = 30.0

    upload_chunk_size: int = 50
    default_facility_id: Optional[int] = None
    log_level: str = "INFO"

    @property
    def backend_enabled(self) -> bool:
        return bool(self.api_base_url and self.api_token)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    log_level: str = "INFO"

    storage_backend: Literal["memory", "local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "manifest-billing"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    gemini_api_key: str | None = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    recognition_model_fast: str = "gemini-3-flash-preview"
    recognition_model_accurate: str = "gemini-3-pro-preview"
    recognition_model_fallback: str = "gemini-flash-latest"
    recognition_timeout_seconds: float = 120.0

    # Pause between queued chunks so pause/cancel is observable.
    chunk_yield_seconds: float = 0.5


settings = Settings()

"""
Configuration and settings for the file storage service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from filevault.models import DEFAULT_CHUNK_SIZE


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="")

    # Database (Postgres expected); backs the blob index and, when no other
    # chunk backend is configured, the chunks too.
    database_url: Optional[str] = Field(default=None)

    # S3-compatible chunk storage
    s3_endpoint: Optional[str] = Field(default=None)
    s3_region: Optional[str] = Field(default=None)
    s3_bucket: Optional[str] = Field(default=None)
    s3_prefix: str = Field(default="uploads")
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # Redis chunk storage
    redis_url: Optional[str] = Field(default=None)
    redis_key_prefix: str = Field(default="filevault:chunks")

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    chunk_size_bytes: int = Field(default=DEFAULT_CHUNK_SIZE, gt=0)
    max_upload_bytes: int = Field(default=64 * 1024 * 1024, gt=0)

    # Frontend that renders /preview/<id> share links.
    client_origin: str = Field(default="http://localhost:3000")
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])

    log_level: str = Field(default="INFO")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    project_name: str = "Resumable Upload Server"
    api_prefix: str = "/api"

    database_url: str | None = Field(
        default=None,
        description="SQLAlchemy async database URL; defaults to a SQLite file under the storage root",
    )
    redis_url: str = Field(default="redis://redis:6379/0", description="Redis connection URL")

    storage_root: Path = Field(
        default=Path(__file__).resolve().parents[3] / "Storage",
        description="Base directory for file storage",
    )
    tmp_dir_name: str = Field(default="temp")
    files_dir_name: str = Field(default="files")
    staging_dir_name: str = Field(default="staging")

    max_chunk_size: int = Field(default=64 * 1024 * 1024, ge=1)
    copy_block_size: int = Field(default=1024 * 1024, ge=1)

    merge_in_background: bool = Field(
        default=False,
        description="Hand merges to the Celery worker instead of merging inside the request",
    )

    log_level: str = Field(default="INFO")

    celery_broker_url: str | None = None
    celery_result_backend: str | None = None

    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    @field_validator("storage_root", mode="before")
    @classmethod
    def _build_storage_root(cls, value: Path | str) -> Path:
        return Path(value)

    @property
    def tmp_dir(self) -> Path:
        return self.storage_root / self.tmp_dir_name

    @property
    def files_dir(self) -> Path:
        return self.storage_root / self.files_dir_name

    @property
    def staging_dir(self) -> Path:
        return self.storage_root / self.staging_dir_name

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.storage_root / 'uploads.db'}"

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url

    @property
    def celery_backend(self) -> str:
        return self.celery_result_backend or self.redis_url


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

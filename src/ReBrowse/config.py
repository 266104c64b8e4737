"""Application configuration loaded from environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_MB = 1024 * 1024


class Settings(BaseSettings):
    """Central configuration loaded from ``REBROWSE_*`` env vars (or ``.env``)."""

    model_config = SettingsConfigDict(
        env_prefix="REBROWSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".rebrowse")
    cache_dir: Path | None = None
    credentials_path: Path | None = None
    repositories_path: Path | None = None

    # Cache ceilings
    max_repository_cache_bytes: int = Field(default=100 * _MB, gt=0)
    max_total_cache_bytes: int = Field(default=5 * 1024 * _MB, gt=0)
    max_file_size_bytes: int = Field(default=10 * _MB, gt=0)

    # Freshness
    branch_cache_ttl_seconds: float = Field(default=60.0, ge=0)
    connectivity_ttl_seconds: float = Field(default=5.0, ge=0)
    connectivity_timeout_seconds: float = Field(default=5.0, gt=0)

    # Network
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    retry_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)
    retry_jitter: float = Field(default=0.1, ge=0.0, le=1.0)

    # Credentials
    auth_failure_threshold: int = Field(default=2, ge=1)
    github_client_id: str = "Ov23liWG79zW29xRrTPN"
    keyring_service: str = "ReBrowse"

    # Prewarm
    prewarm_max_files: int = Field(default=20, ge=1, le=100)
    prewarm_workers: int = Field(default=4, ge=1, le=32)

    log_level: str = "INFO"

    @property
    def resolved_cache_dir(self) -> Path:
        return self.cache_dir or self.data_dir / "git-cache"

    @property
    def resolved_credentials_path(self) -> Path:
        return self.credentials_path or self.data_dir / "git-credentials.json"

    @property
    def resolved_repositories_path(self) -> Path:
        return self.repositories_path or self.data_dir / "repositories.json"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings (cached after first call)."""
    return Settings()

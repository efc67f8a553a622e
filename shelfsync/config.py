"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RELEASE = "library"


def _default_cache_dir() -> Path:
    return Path.home() / ".cache" / "shelfsync"


def _default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "shelfsync"


def _default_config_file() -> Path:
    return Path.home() / ".config" / "shelfsync" / "config.toml"


class Settings(BaseSettings):
    """shelfsync runtime settings."""

    model_config = SettingsConfigDict(
        env_prefix="SHELFSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # GitHub
    github_token: str = ""
    api_base: str = "https://api.github.com"
    git_base: str = "https://github.com"
    http_timeout: float = Field(default=60.0, gt=0)

    # Paths
    config_file: Path = Field(default_factory=_default_config_file)
    cache_dir: Path = Field(default_factory=_default_cache_dir)
    ledger_path: Path = Field(default_factory=lambda: _default_data_dir() / "migrated.jsonl")

    # Defaults
    default_release: str = DEFAULT_RELEASE
    progress_queue_size: int = Field(default=64, ge=1)

    # Commits
    git_author_name: str = "shelfsync"
    git_author_email: str = "shelfsync@localhost"

    def validate_credentials(self) -> None:
        """Fail early when remote operations are requested without a token."""
        if not self.github_token:
            raise ValueError(
                "SHELFSYNC_GITHUB_TOKEN must be set for operations that touch GitHub"
            )

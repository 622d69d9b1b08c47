"""Configuration settings for isorootfs.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "isorootfs"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "isorootfs" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the ISOROOTFS_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="ISOROOTFS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for downloaded images and companion files",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for the download cache index",
    )
    work_dir: Path | None = Field(
        default=None,
        description="Parent directory for temporary mount points "
        "(uses <cache_dir>/tmp if not set)",
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - only serve artifacts from the cache",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Signature verification
    keyserver: str = Field(
        default="hkps://keyserver.ubuntu.com",
        description="Keyserver used to fetch trusted signing keys",
    )

    # External tools
    gpg_binary: str = Field(default="gpg", description="GnuPG executable")
    rsync_binary: str = Field(default="rsync", description="rsync executable")
    mount_binary: str = Field(default="mount", description="mount executable")
    umount_binary: str = Field(default="umount", description="umount executable")

    # Release discovery
    github_api_url: str = Field(
        default="https://api.github.com",
        description="Base URL of the GitHub REST API for latest-release lookups",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for image downloads",
    )
    command_timeout: int = Field(
        default=120,
        ge=1,
        description="Timeout for mount, umount and gpg invocations",
    )
    sync_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for copying the root filesystem",
    )

    def effective_work_dir(self) -> Path:
        """Return the directory that holds per-invocation mount arenas."""
        if self.work_dir is not None:
            return self.work_dir
        return self.cache_dir / "tmp"


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]

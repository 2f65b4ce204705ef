"""Engine configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """SyncVault engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="SYNCVAULT_",
        env_file=".syncvault.env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False

    # Paths
    data_dir: Path = Path("./data")

    # Database
    database_url: str = "sqlite+aiosqlite:///data/syncvault.db"

    # Scheduling (milliseconds)
    poll_interval_ms: int = Field(default=20_000, ge=100)
    debounce_ms: int = Field(default=300, ge=0)
    loop_window_ms: int = Field(default=800, ge=0)
    refresh_interval_ms: int = Field(default=10_000, ge=100)

    # Git
    git_ref: str = "main"
    git_timeout_seconds: int = Field(default=60, ge=1)
    git_user_name: str = "SyncVault"
    git_user_email: str = "syncvault@localhost"
    github_token: str = ""

    # Secret store
    aws_region: str | None = None
    aws_profile: str | None = None

    @property
    def repos_dir(self) -> Path:
        """Directory holding the local repository clones."""
        return self.data_dir / "repos"

    @property
    def conflicts_dir(self) -> Path:
        """Directory holding conflict snapshot files."""
        return self.data_dir / "conflicts"

    def ensure_data_dir(self) -> None:
        """Create the data directory scaffold and the SQLite parent directory."""
        for directory in (self.data_dir, self.repos_dir, self.conflicts_dir):
            directory.mkdir(parents=True, exist_ok=True)
        if self.database_url.startswith("sqlite") and "///" in self.database_url:
            db_path = self.database_url.split("///", 1)[-1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)

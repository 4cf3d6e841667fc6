"""Configuration settings for testimpact."""

import os
import sys
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_default_config_dir() -> Path:
    """Directory holding the user-wide ``.env`` file."""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "testimpact"
    config_home = os.environ.get("XDG_CONFIG_HOME")
    return (Path(config_home) if config_home else Path.home() / ".config") / "testimpact"


class Settings(BaseSettings):
    """Application settings with support for .env files."""

    model_config = SettingsConfigDict(
        env_file=[
            get_default_config_dir() / ".env",
            ".env",
        ],
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="TESTIMPACT_",
        extra="ignore",
    )

    notes_ref: str = Field(default="refs/notes/tests", description="Git notes ref holding the persisted reports")

    git_timeout: float = Field(default=30.0, description="Timeout in seconds for a single git invocation")
    fetch_remote_notes: bool = Field(
        default=False, description="Fetch the notes ref from the remote before reading the baseline"
    )
    remote_name: str = "origin"
    max_ancestor_walk: int = Field(
        default=0, description="Maximum commits inspected when looking for a baseline (0 = unbounded)"
    )

    compiled_suffixes: list[str] = Field(
        default=[".class", ".pyc", ".pyo"],
        description="Changed paths with these suffixes are build output and never invalidate a test",
    )

    server_host: str = "127.0.0.1"
    server_port: int = Field(default=0, description="Coordination server port (0 picks a free port)")
    server_workers: int = Field(default=2, description="Maximum requests handled concurrently by the server")

    client_timeout: float = 30.0
    lock_timeout: float = Field(default=10.0, description="Seconds to wait for the notes write lock")

    force: bool = Field(default=False, description="Ignore existing reports and run every test")
    debug_mode: bool = False

    @field_validator("notes_ref")
    @classmethod
    def validate_notes_ref(cls, v: str) -> str:
        """Accept short names like 'tests' and expand them to a full notes ref."""
        v = v.strip()
        if not v:
            raise ValueError("notes_ref must not be empty")
        if not v.startswith("refs/"):
            return f"refs/notes/{v}"
        return v


settings = Settings()

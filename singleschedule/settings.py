"""
Typed settings for singleschedule using pydantic-settings.

All values can be overridden through environment variables prefixed with
``SINGLESCHEDULE_`` (for example ``SINGLESCHEDULE_HOME=/tmp/sched``).

Usage:
    from singleschedule.settings import get_settings

    settings = get_settings()
    print(settings.tasks_file)
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_home() -> Path:
    """XDG_DATA_HOME/singleschedule when set, otherwise ~/.singleschedule."""
    xdg_base = os.getenv("XDG_DATA_HOME")
    if xdg_base:
        return Path(xdg_base) / "singleschedule"
    return Path.home() / ".singleschedule"


class Settings(BaseSettings):
    """Runtime configuration for the daemon and the CLI."""

    model_config = SettingsConfigDict(
        env_prefix="SINGLESCHEDULE_",
        extra="ignore",
    )

    home: Path = Field(default_factory=_default_home)
    tick_interval: float = 1.0
    stop_timeout: float = 5.0
    lock_timeout: Optional[float] = 10.0
    use_utc: bool = False
    log_level: str = "INFO"

    @field_validator("tick_interval")
    @classmethod
    def _positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("tick_interval must be greater than 0")
        return v

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    # File paths
    @property
    def tasks_file(self) -> Path:
        return self.home / "tasks.json"

    @property
    def lock_file(self) -> Path:
        return self.home / "tasks.json.lock"

    @property
    def pid_file(self) -> Path:
        return self.home / "daemon.pid"

    @property
    def log_dir(self) -> Path:
        return self.home / "logs"

    @property
    def daemon_log_file(self) -> Path:
        return self.log_dir / "daemon.log"

    def task_log_file(self, slug: str) -> Path:
        return self.log_dir / f"{slug}.log"

    def ensure_directories(self) -> None:
        """Create the state and log directories with private permissions."""
        for directory in [self.home, self.log_dir]:
            directory.mkdir(parents=True, exist_ok=True, mode=0o700)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached settings singleton.

    To pick up changed environment variables, call clear_settings_cache() first.
    """
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()

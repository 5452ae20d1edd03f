"""
Application settings.

Read once from the environment at startup. A local .env file is loaded
first when present (development only; production sets real env vars).
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

from tenancy import __version__


def _bool_env(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass(frozen=True)
class Settings:
    env: str = "development"
    database_url: Optional[str] = None
    app_url: str = "http://localhost:3000"
    app_version: str = __version__

    enable_background_jobs: bool = False
    usage_metering_interval_seconds: int = 3600
    trial_check_interval_seconds: int = 3600
    trial_reminder_days: int = 2

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            env=os.getenv("ENV", "development"),
            database_url=os.getenv("DATABASE_URL"),
            app_url=os.getenv("APP_URL", "http://localhost:3000"),
            app_version=os.getenv("APP_VERSION", __version__),
            enable_background_jobs=_bool_env("ENABLE_BACKGROUND_JOBS"),
            usage_metering_interval_seconds=_int_env("USAGE_METERING_INTERVAL_SECONDS", 3600),
            trial_check_interval_seconds=_int_env("TRIAL_CHECK_INTERVAL_SECONDS", 3600),
            trial_reminder_days=_int_env("TRIAL_REMINDER_DAYS", 2),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()

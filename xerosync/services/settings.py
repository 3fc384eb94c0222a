from __future__ import annotations

from dataclasses import dataclass
import os


@dataclass(frozen=True)
class AppSettings:
    database_url: str | None = None
    cron_secret: str | None = None
    admin_api_token: str | None = None


def app_settings_from_env() -> AppSettings:
    return AppSettings(
        database_url=_env_str("DATABASE_URL"),
        cron_secret=_env_str("CRON_SECRET"),
        admin_api_token=_env_str("ADMIN_API_TOKEN"),
    )


def _env_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value or default

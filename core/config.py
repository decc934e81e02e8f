"""
Service Configuration.

Centralized, environment-driven settings for the Challenge Engagement API.
Every value has a development default so the service starts with no
environment at all; production deployments override through environment
variables.

Key Components:
- `Settings`: A dataclass holding all runtime settings.
- `Settings.from_env`: Builds a `Settings` instance from `os.environ`.
- `get_settings`: Returns the process-wide settings instance, building it
  lazily on first use.
- `checkin_timezone`: Resolves the timezone that defines a "calendar day" for
  check-ins and streaks.
"""

import os
from dataclasses import dataclass
from datetime import timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo


@dataclass
class Settings:
    """Runtime settings"""

    environment: str = "development"
    log_level: str = "INFO"
    log_file: Optional[str] = None
    database_url: str = "sqlite+aiosqlite:///./engagement.db"
    api_key: Optional[str] = None
    checkin_timezone: str = "UTC"
    comment_max_length: int = 2000
    leaderboard_page_size: int = 10
    host: str = "0.0.0.0"
    port: int = 8002

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            environment=os.getenv("ENVIRONMENT", "development").lower(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE") or None,
            database_url=os.getenv(
                "DATABASE_URL", "sqlite+aiosqlite:///./engagement.db"
            ),
            api_key=os.getenv("API_KEY"),
            checkin_timezone=os.getenv("CHECKIN_TIMEZONE", "UTC"),
            comment_max_length=int(os.getenv("COMMENT_MAX_LENGTH", "2000")),
            leaderboard_page_size=int(os.getenv("LEADERBOARD_PAGE_SIZE", "10")),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8002")),
        )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide settings instance"""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def resolve_timezone(name: str) -> tzinfo:
    """Resolve a timezone name, treating UTC specially so no tz database is needed"""
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def checkin_timezone() -> tzinfo:
    """Timezone used to decide which calendar day a check-in belongs to"""
    return resolve_timezone(get_settings().checkin_timezone)

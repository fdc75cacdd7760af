"""
Validated runtime settings.

Values come from the process environment (a local ``.env`` is honoured through
python-dotenv). ``load_settings`` fails fast: a malformed value stops the app at
startup instead of surfacing later as a wrong permission decision.
"""

import os
from functools import lru_cache
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

SQLITE_FALLBACK_URL = "sqlite:///portal.db"


def _split_ids(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings(BaseModel):
    database_url: str = SQLITE_FALLBACK_URL
    session_secret: str = Field(min_length=16)
    super_admin_role_ids: frozenset[str] = frozenset()

    discord_client_id: Optional[str] = None
    discord_client_secret: Optional[str] = None
    discord_redirect_uri: Optional[str] = None
    discord_guild_id: Optional[str] = None
    discord_bot_token: Optional[str] = None

    hcaptcha_secret_key: Optional[str] = None
    bot_api_url: Optional[str] = None
    admin_panel_password_hash: Optional[str] = None

    revalidate_min_interval: float = Field(default=60.0, gt=0)
    revalidate_period: float = Field(default=300.0, gt=0)
    attempt_ttl: float = Field(default=3600.0, gt=0)
    cheat_debounce_seconds: float = Field(default=0.5, ge=0)
    http_timeout: float = Field(default=5.0, gt=0)
    log_level: str = "INFO"

    model_config = {"frozen": True}

    @field_validator("database_url")
    @classmethod
    def _normalize_database_url(cls, value: str) -> str:
        # Neon / Render hand out postgres:// but SQLAlchemy needs postgresql://
        if value.startswith("postgres://"):
            value = value.replace("postgres://", "postgresql://", 1)
        return value

    @field_validator("super_admin_role_ids")
    @classmethod
    def _check_role_ids(cls, value: frozenset[str]) -> frozenset[str]:
        bad = sorted(role_id for role_id in value if not role_id.isdigit())
        if bad:
            raise ValueError(f"Discord role ids must be numeric snowflakes, got {bad}")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level {value!r}")
        return value

    @property
    def discord_oauth_enabled(self) -> bool:
        return bool(self.discord_client_id and self.discord_client_secret and self.discord_redirect_uri)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build ``Settings`` from ``environ`` (defaults to ``os.environ`` after loading ``.env``)."""
    if environ is None:
        load_dotenv()
        environ = os.environ

    def get(name: str) -> Optional[str]:
        value = environ.get(name)
        return value if value not in (None, "") else None

    values = {
        "database_url": get("DATABASE_URL"),
        "session_secret": get("SESSION_SECRET"),
        "super_admin_role_ids": frozenset(_split_ids(get("SUPER_ADMIN_ROLE_IDS"))),
        "discord_client_id": get("DISCORD_CLIENT_ID"),
        "discord_client_secret": get("DISCORD_CLIENT_SECRET"),
        "discord_redirect_uri": get("DISCORD_REDIRECT_URI"),
        "discord_guild_id": get("DISCORD_GUILD_ID"),
        "discord_bot_token": get("DISCORD_BOT_TOKEN"),
        "hcaptcha_secret_key": get("HCAPTCHA_SECRET_KEY"),
        "bot_api_url": get("BOT_API_URL"),
        "admin_panel_password_hash": get("ADMIN_PANEL_PASSWORD_HASH"),
        "revalidate_min_interval": get("REVALIDATE_MIN_INTERVAL"),
        "revalidate_period": get("REVALIDATE_PERIOD"),
        "attempt_ttl": get("ATTEMPT_TTL"),
        "cheat_debounce_seconds": get("CHEAT_DEBOUNCE_SECONDS"),
        "http_timeout": get("HTTP_TIMEOUT"),
        "log_level": get("LOG_LEVEL"),
    }
    # Unset values fall back to the model defaults.
    return Settings(**{key: value for key, value in values.items() if value is not None})


@lru_cache
def get_settings() -> Settings:
    return load_settings()

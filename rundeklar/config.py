from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from rundeklar.logging import get_logger

logger = get_logger(__name__)

# Tokens expiring within this window are refreshed by the proactive check
EXPIRY_THRESHOLD_SECONDS = 60 * 60


@dataclass(frozen=True)
class SchedulerTimings:
    """Intervals (seconds) for the three refresh triggers."""

    periodic: float
    activity_threshold: float
    debounce: float
    proactive: float
    expiry_threshold: float = EXPIRY_THRESHOLD_SECONDS


PRODUCTION_TIMINGS = SchedulerTimings(
    periodic=30 * 60,
    activity_threshold=5 * 60,
    debounce=30,
    proactive=15 * 60,
)

DEVELOPMENT_TIMINGS = SchedulerTimings(
    periodic=60,
    activity_threshold=30,
    debounce=5,
    proactive=30,
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Client-side settings for the session manager."""

    authority_base_url: str = env_field(
        "http://127.0.0.1:3000/api",
        "RUNDEKLAR_AUTHORITY_URL",
        description="Base URL under which the /auth/* endpoints live",
    )
    development_mode: bool = env_field(
        False,
        "RUNDEKLAR_DEV_MODE",
        description="Shorten scheduler intervals and enable diagnostic logging",
    )
    storage_dir: str = env_field(
        str(Path.home() / ".rundeklar"), "RUNDEKLAR_STORAGE_DIR"
    )
    use_memory_storage: bool = env_field(False, "RUNDEKLAR_MEMORY_STORAGE")
    storage_encryption_key: str | None = env_field(
        None,
        "RUNDEKLAR_STORAGE_KEY",
        description="Key material for encrypting the durable store at rest",
    )
    request_timeout_seconds: float = env_field(30.0, "RUNDEKLAR_REQUEST_TIMEOUT")
    retain_refresh_on_rotation: bool = env_field(
        True,
        "RUNDEKLAR_RETAIN_REFRESH",
        description=(
            "Keep the stored refresh token when a refresh response omits a new one. "
            "Disable when the authority treats refresh tokens as single-use."
        ),
    )
    flow_token_ttl_seconds: int = env_field(15 * 60, "RUNDEKLAR_FLOW_TOKEN_TTL")
    default_url: str = env_field("http://localhost/", "RUNDEKLAR_APP_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("authority_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("authority_base_url must be http(s)")
        return value.rstrip("/")

    @field_validator("request_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        return value

    def scheduler_timings(self) -> SchedulerTimings:
        return DEVELOPMENT_TIMINGS if self.development_mode else PRODUCTION_TIMINGS


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            authority_base_url=_settings_cache.authority_base_url,
            development_mode=_settings_cache.development_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

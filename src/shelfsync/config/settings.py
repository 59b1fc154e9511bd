"""Application settings (environment / .env driven).

Hey future me - every value can be overridden via env vars with the SHELFSYNC_
prefix, nested groups use a double underscore:

    SHELFSYNC_BACKEND__BASE_URL=http://127.0.0.1:7420
    SHELFSYNC_ASSETS__MAX_CONCURRENT=6
    SHELFSYNC_LOG__JSON_FORMAT=true
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendSettings(BaseModel):
    """Backend command service + event stream."""

    base_url: str = Field(
        default="http://127.0.0.1:7420",
        description="Base URL of the backend command service",
    )
    timeout: float | None = Field(
        default=None,
        gt=0,
        description="Per-request timeout in seconds. None = wait for the backend "
        "(long commands rely on eventual completion, not client timeouts)",
    )
    events_path: str = Field(default="/events", description="SSE endpoint path")
    enable_event_stream: bool = Field(
        default=True, description="Bridge backend SSE events onto the local bus"
    )
    reconnect_delay: float = Field(
        default=2.0, ge=0, description="Seconds between event stream reconnects"
    )

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class AssetSettings(BaseModel):
    """Cover fetch cache."""

    max_concurrent: int = Field(default=4, ge=1, le=32)
    command: str = Field(default="resolve-asset-blob")
    handle_backend: Literal["memory", "file"] = Field(
        default="memory",
        description="memory = data: URIs, file = temp files in cache_dir",
    )
    cache_dir: Path = Field(default=Path(".shelfsync-cache/covers"))


class LogSettings(BaseModel):
    """Logging output."""

    level: str = Field(default="INFO")
    json_format: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {value}")
        return level


class Settings(BaseSettings):
    """Root settings object."""

    model_config = SettingsConfigDict(
        env_prefix="SHELFSYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    app_name: str = "shelfsync"
    # False outside the hosting desktop runtime - coordinators become no-ops
    runtime_enabled: bool = True
    backend: BackendSettings = Field(default_factory=BackendSettings)
    assets: AssetSettings = Field(default_factory=AssetSettings)
    log: LogSettings = Field(default_factory=LogSettings)


@lru_cache
def get_settings() -> Settings:
    """Cached settings accessor. Call get_settings.cache_clear() in tests."""
    return Settings()

"""Tests for settings loading."""

import pytest
from pydantic import ValidationError

from shelfsync.config import Settings, get_settings
from shelfsync.config.settings import AssetSettings, BackendSettings, LogSettings


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.runtime_enabled is True
    assert settings.backend.base_url == "http://127.0.0.1:7420"
    assert settings.backend.timeout is None
    assert settings.assets.max_concurrent == 4
    assert settings.assets.command == "resolve-asset-blob"
    assert settings.log.level == "INFO"


def test_nested_env_overrides(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SHELFSYNC_ASSETS__MAX_CONCURRENT", "6")
    monkeypatch.setenv("SHELFSYNC_BACKEND__BASE_URL", "http://nas.local:7420/")
    monkeypatch.setenv("SHELFSYNC_RUNTIME_ENABLED", "false")

    settings = Settings(_env_file=None)

    assert settings.assets.max_concurrent == 6
    assert settings.backend.base_url == "http://nas.local:7420"
    assert settings.runtime_enabled is False


def test_log_level_is_normalized():
    assert LogSettings(level="debug").level == "DEBUG"


@pytest.mark.parametrize(
    "build",
    [
        lambda: LogSettings(level="chatty"),
        lambda: AssetSettings(max_concurrent=0),
        lambda: AssetSettings(handle_backend="s3"),
        lambda: BackendSettings(timeout=0),
    ],
)
def test_invalid_values_rejected(build):
    with pytest.raises(ValidationError):
        build()


def test_get_settings_is_cached():
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()

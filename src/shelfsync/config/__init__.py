"""Configuration module for ShelfSync."""

from .settings import AssetSettings, BackendSettings, LogSettings, Settings, get_settings

__all__ = ["AssetSettings", "BackendSettings", "LogSettings", "Settings", "get_settings"]

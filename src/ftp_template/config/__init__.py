"""Configuration module for FTP Template."""

from ftp_template.config.settings import (
    LoggingSettings,
    MetricsSettings,
    PoolSettings,
    SessionConfig,
    Settings,
    TransferMode,
    TransferSettings,
    load_settings,
)

__all__ = [
    "LoggingSettings",
    "MetricsSettings",
    "PoolSettings",
    "SessionConfig",
    "Settings",
    "TransferMode",
    "TransferSettings",
    "load_settings",
]

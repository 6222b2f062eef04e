"""Application settings loader."""

import os
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


CONFIG_ENV_VAR = "FTP_TEMPLATE_CONFIG"


class TransferMode(str, Enum):
    """FTP representation type used for file content."""

    ASCII = "ascii"
    BINARY = "binary"

    @property
    def type_command(self) -> str:
        """Get the TYPE command selecting this mode."""
        return "TYPE A" if self is TransferMode.ASCII else "TYPE I"


class SessionConfig(BaseModel):
    """Connection parameters shared by every session of a pool."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = Field(default=21, ge=1, le=65535)
    username: str = Field(default="anonymous")
    password: str = Field(default="", repr=False)
    encoding: str = Field(default="utf-8")
    connect_timeout: Optional[float] = Field(default=None, gt=0)
    data_timeout: Optional[float] = Field(default=None, gt=0)
    buffer_size: int = Field(default=1024, ge=1)
    passive_mode: bool = Field(default=False)
    keep_alive_interval: int = Field(default=0, ge=0)
    transfer_mode: TransferMode = Field(default=TransferMode.ASCII)

    @field_validator("host")
    @classmethod
    def _host_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Host is required for FTP connection")
        return value

    @property
    def address(self) -> str:
        """Get the host:port pair for log output."""
        return f"{self.host}:{self.port}"


class PoolSettings(BaseModel):
    """FTP session pool configuration."""

    max_size: int = Field(default=8, ge=1)
    max_idle: Optional[int] = Field(default=None, ge=0)
    borrow_timeout_seconds: float = Field(default=30.0, gt=0)
    test_on_borrow: bool = Field(default=True)

    @property
    def effective_max_idle(self) -> int:
        """Get the idle capacity, bounded by the pool size."""
        if self.max_idle is None:
            return self.max_size
        return min(self.max_idle, self.max_size)


class TransferSettings(BaseModel):
    """Retry policy for transfer operations."""

    retry_count: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=0.0, ge=0)


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO")
    format: str = Field(default="json")


class MetricsSettings(BaseModel):
    """Prometheus metrics configuration."""

    enabled: bool = Field(default=False)
    port: int = Field(default=9090, ge=1, le=65535)


class Settings(BaseSettings):
    """Application settings."""

    session: Optional[SessionConfig] = Field(default=None)
    pool: PoolSettings = Field(default_factory=PoolSettings)
    transfer: TransferSettings = Field(default_factory=TransferSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)

    config_path: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="FTP_TEMPLATE_",
        env_nested_delimiter="__",
    )

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> "Settings":
        """Load settings from YAML file.

        Args:
            config_path: Path to the YAML configuration file.

        Returns:
            Settings instance loaded from the file.

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data, config_path=str(config_path))

    def require_session(self) -> SessionConfig:
        """Get the session configuration.

        Raises:
            ValueError: If no session section is configured.
        """
        if self.session is None:
            raise ValueError("No FTP session configured (missing 'session' section)")
        return self.session


def load_settings(config_path: Optional[str | Path] = None) -> Settings:
    """Load application settings.

    Reads the given YAML file, or the one named by ``FTP_TEMPLATE_CONFIG``,
    falling back to environment variables only.

    Args:
        config_path: Optional path to a YAML configuration file.

    Returns:
        Settings instance.
    """
    if config_path is None:
        config_path = os.getenv(CONFIG_ENV_VAR)

    if config_path:
        return Settings.from_yaml(config_path)

    return Settings()

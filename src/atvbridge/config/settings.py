"""Configuration management for atvbridge.

Loads settings from a YAML configuration file with environment variable
overrides. Supports .env files.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/atvbridge.yaml")


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)


class RemoteConfig(BaseModel):
    client_name: str = Field(default="Hubitat", description="Name shown on the TV")
    pairing_port: int = Field(default=6467, ge=1, le=65535)
    remote_port: int = Field(default=6466, ge=1, le=65535)


class TimeoutConfig(BaseModel):
    session_start: float = Field(default=10.0, gt=0)
    code_display: float = Field(default=1.0, gt=0)
    pairing_complete: float = Field(default=10.0, gt=0)
    connect: float = Field(default=10.0, gt=0)


class RegistryConfig(BaseModel):
    pairing_ttl: float | None = Field(
        default=300.0, gt=0, description="Seconds before an unfinished pairing is dropped"
    )
    prune_interval: float = Field(default=30.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)


class Settings(BaseSettings):
    """Root configuration for the bridge.

    Loads from YAML file and supports environment variable overrides.
    Reads .env files automatically.
    """

    model_config = {
        "env_prefix": "ATVBRIDGE_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    server: ServerConfig = Field(default_factory=ServerConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # YAML values arrive as init kwargs; environment must win over them
        return env_settings, dotenv_settings, init_settings, file_secret_settings


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings from YAML + .env + environment variables.

    Priority: env vars > .env file > YAML file > defaults
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    yaml_data = {}
    if path.exists():
        with open(path) as f:
            yaml_data = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", path)
    else:
        logger.warning("Config file %s not found, using defaults + env vars", path)

    _apply_env_overrides(yaml_data)

    return Settings(**yaml_data)


def _apply_env_overrides(yaml_data: dict) -> None:
    """Apply environment variable overrides for non-prefixed vars."""
    # PORT is the conventional variable set by container platforms
    port = os.environ.get("PORT", "")
    if port:
        yaml_data.setdefault("server", {})["port"] = port

"""Configuration for jam sessions."""

import os
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# PartyKit project hosting the jam relay
DEFAULT_JAM_SERVER = "https://pomodoro-jam.treepo1.partykit.dev"


class JamConfig(BaseSettings):
    """Settings for the relay connection and state sync."""

    model_config = SettingsConfigDict(
        env_prefix="JAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Relay address
    server: str | None = Field(
        default=None,
        description="Relay server address (uses the built-in relay if not set)",
    )

    # State sync interval (host broadcasts state)
    state_sync_interval_ms: int = Field(
        default=1000,
        ge=100,
        le=60000,
        description="State broadcast interval in milliseconds",
    )

    # Reserved, not enforced by the client
    connection_timeout_ms: int = Field(
        default=10000,
        ge=100,
        le=300000,
        description="Connection timeout in milliseconds",
    )

    # Reconnection settings
    max_reconnect_attempts: int = Field(
        default=5,
        ge=0,
        le=50,
        description="Reconnection attempts before giving up",
    )
    reconnect_delay_base_ms: int = Field(
        default=1000,
        ge=1,
        le=60000,
        description="Base delay for exponential reconnection backoff in milliseconds",
    )

    participant_name: str | None = Field(
        default=None,
        description="Display name shown to other participants",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )

    def resolved_server(self) -> str:
        """Get the relay address, falling back to the built-in relay."""
        return self.server or DEFAULT_JAM_SERVER


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "pomodoro-jam" / "config.toml"


def load_config(config_file: str | Path | None = None) -> JamConfig:
    """Load configuration from config file, with environment variable overrides.

    Priority (highest to lowest):
    1. Environment variables (JAM_*), including a .env file
    2. Provided config file
    3. Default config file (~/.config/pomodoro-jam/config.toml)
    4. Default values

    Args:
        config_file: Optional path to a config file

    Returns:
        Loaded configuration
    """
    import tomllib

    config_path = Path(config_file) if config_file else DEFAULT_CONFIG_PATH

    file_config: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
            file_config = data.get("jam", {})

    # Init kwargs outrank env vars and .env in pydantic-settings, so drop
    # file values that either of them already provides.
    provided = {key.upper() for key in os.environ}
    env_file = JamConfig.model_config.get("env_file")
    if isinstance(env_file, str) and Path(env_file).is_file():
        provided.update(key.upper() for key in dotenv_values(env_file))
    file_config = {k: v for k, v in file_config.items() if f"JAM_{k}".upper() not in provided}

    return JamConfig(**file_config)

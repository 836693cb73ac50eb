"""Configuration management for btcore.

Settings are loaded hierarchically: model defaults, then a TOML file, then
``BTCORE_*`` environment variables. The result is validated by
:class:`btcore.models.Config`.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import toml
from pydantic import ValidationError as PydanticValidationError

from btcore.exceptions import ConfigurationError
from btcore.logging_config import setup_logging
from btcore.models import Config, LogLevel, NetworkConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "btcore.toml"

ENV_MAPPINGS: dict[str, str] = {
    # Network
    "BTCORE_LISTEN_PORT": "network.listen_port",
    "BTCORE_CONNECTION_TIMEOUT": "network.connection_timeout",
    "BTCORE_MESSAGE_TIMEOUT": "network.message_timeout",
    "BTCORE_PIPELINE_DEPTH": "network.pipeline_depth",
    "BTCORE_TRACKER_TIMEOUT": "network.tracker_timeout",
    "BTCORE_TRACKER_MAX_RETRIES": "network.tracker_max_retries",
    "BTCORE_TRACKER_BACKOFF_BASE": "network.tracker_backoff_base",
    "BTCORE_TRACKER_BACKOFF_MAX": "network.tracker_backoff_max",
    "BTCORE_PIECE_MAX_RETRIES": "network.piece_max_retries",
    "BTCORE_PEER_ID_PREFIX": "network.peer_id_prefix",
    # Observability
    "BTCORE_LOG_LEVEL": "observability.log_level",
    "BTCORE_LOG_FILE": "observability.log_file",
    "BTCORE_STRUCTURED_LOGGING": "observability.structured_logging",
}

_config_manager: ConfigManager | None = None


def _parse_env_value(raw: str) -> bool | int | float | str:
    low = raw.lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
        return False
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


class ConfigManager:
    """Loads and validates configuration."""

    def __init__(self, config_file: str | Path | None = None):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for btcore.toml
        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()

    def _find_config_file(self, config_file: str | Path | None) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            return Path(config_file)

        search_paths = [
            Path.cwd() / CONFIG_FILENAME,
            Path.home() / ".config" / "btcore" / CONFIG_FILENAME,
            Path.home() / f".{CONFIG_FILENAME}",
        ]
        for path in search_paths:
            if path.exists():
                return path
        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file is not None:
            if not self.config_file.exists():
                msg = f"Config file not found: {self.config_file}"
                raise ConfigurationError(msg)
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e

        config_data = self._merge_config(config_data, self._get_env_config())

        try:
            return Config(**config_data)
        except PydanticValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            value: Any = raw
            # Keep string-typed settings as strings
            if not cfg_path.endswith(("peer_id_prefix", "log_file", "log_level")):
                value = _parse_env_value(raw)
            _set_nested(env_config, cfg_path, value)
        return env_config

    def _merge_config(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def export(self) -> str:
        """Export the current configuration as TOML."""
        return toml.dumps(self.config.model_dump(mode="json", exclude_none=True))

    def setup_logging(self, log_level: LogLevel | None = None) -> None:
        """Apply the observability section to the logging system.

        Args:
            log_level: Level to use instead of the configured one
        """
        observability = self.config.observability
        if log_level is not None:
            observability = observability.model_copy(update={"log_level": log_level})
        setup_logging(observability)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.config


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    return _config_manager


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager.__new__(ConfigManager)
        _config_manager.config_file = None
    _config_manager.config = new_config


def reset_config() -> None:
    """Drop the global configuration so the next access reloads it."""
    global _config_manager
    _config_manager = None


def get_network_config() -> NetworkConfig:
    """Get network configuration."""
    return get_config().network

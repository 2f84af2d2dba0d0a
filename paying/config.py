"""Configuration management - loads paying.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from paying.models import (
    EngineConfig,
    PayingConfig,
    ProductDefinition,
    RepositoryConfig,
    ServiceDefinition,
)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Ledger configuration loader.

    Loads paying.yaml and provides validated access to:
    - Engine windows (payment deadline, renewal lookahead)
    - Document store settings
    - Service adapter registrations
    - Product definitions
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to paying.yaml. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/paying.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._paying_config: Optional[PayingConfig] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/paying.yaml")

    def _load_config(self) -> None:
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/paying.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")
        if not isinstance(raw_config, dict):
            raise ConfigurationError(
                f"Configuration root must be a mapping: {self._config_path}"
            )

        try:
            self._paying_config = PayingConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    @property
    def paying(self) -> PayingConfig:
        """Get validated configuration."""
        if self._paying_config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._paying_config

    @property
    def config_path(self) -> Path:
        return self._config_path

    @property
    def engine(self) -> EngineConfig:
        return self.paying.engine

    @property
    def repository(self) -> RepositoryConfig:
        return self.paying.repository

    @property
    def services(self) -> dict[str, ServiceDefinition]:
        return self.paying.services

    @property
    def products(self) -> list[ProductDefinition]:
        return self.paying.products

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Reload global configuration from disk."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()

"""
================================================================================
Configuration Loader
================================================================================

Settings for the visual validation pipeline, read from config/config.yaml and
overridable per key from the environment.

Lookup order for ``get("training.min_samples", 5)``:
    1. TRAINING_MIN_SAMPLES, coerced to the type of the default (or of the
       YAML value when no default is given)
    2. training.min_samples in the YAML file
    3. the default

VISUAL_CONFIG_PATH points the loader at another YAML file.

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger

from .errors import ConfigurationError


DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "config.yaml"
CONFIG_PATH_ENV = "VISUAL_CONFIG_PATH"

_TRUE_STRINGS = ("true", "1", "yes", "on")


def env_key(key: str) -> str:
    """Environment variable overriding a dot-path key (training.min_samples -> TRAINING_MIN_SAMPLES)."""
    return key.upper().replace(".", "_")


def coerce_env_value(value: str, reference: Any) -> Any:
    """
    Convert an environment string to the type of ``reference``.

    Lists and tuples are split on commas. Values that do not parse as the
    reference's number type are returned unchanged, so the component reading
    them reports the bad value.
    """
    if reference is None or isinstance(reference, str):
        return value
    if isinstance(reference, bool):
        return value.strip().lower() in _TRUE_STRINGS
    if isinstance(reference, (int, float)):
        try:
            return type(reference)(value)
        except ValueError:
            return value
    if isinstance(reference, (list, tuple)):
        return type(reference)(item.strip() for item in value.split(",") if item.strip())
    return value


class ConfigLoader:
    """
    Process-wide configuration singleton.

    Usage:
        >>> config = ConfigLoader()
        >>> config.get("training.min_samples", 5)
        5
        >>> config.get_section("timeouts")
        {'training': 300, 'detection': 30}

    Tests call ``ConfigLoader.reset()`` to drop the instance after changing
    the environment or the file.
    """

    _instance: Optional["ConfigLoader"] = None

    def __new__(cls, config_path: Optional[Path] = None) -> "ConfigLoader":
        if cls._instance is None:
            instance = super().__new__(cls)
            instance._config = {}
            instance._config_path = None
            cls._instance = instance
        return cls._instance

    def __init__(self, config_path: Optional[Path] = None) -> None:
        if self._config_path is not None:
            return
        self._config_path = Path(config_path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
        self._load_config()

    @property
    def config_path(self) -> Path:
        return self._config_path

    def _load_config(self) -> None:
        if not self._config_path.exists():
            logger.warning(f"No configuration file at {self._config_path}; using defaults and environment")
            self._config = {}
            return

        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {self._config_path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"{self._config_path} must contain a mapping of sections, got {type(data).__name__}"
            )
        self._config = data
        logger.debug(f"Loaded configuration from {self._config_path} (sections: {sorted(data)})")

    def _lookup(self, key: str) -> Any:
        node: Any = self._config
        for part in key.split("."):
            if not isinstance(node, dict):
                return None
            node = node.get(part)
        return node

    def get(self, key: str, default: Any = None) -> Any:
        """
        Value of a dot-path key, e.g. ``get("analysis.safety_margin", 3.0)``.

        A YAML ``null`` counts as unset and yields ``default``.
        """
        file_value = self._lookup(key)
        env_value = os.environ.get(env_key(key))
        if env_value is not None:
            return coerce_env_value(env_value, default if default is not None else file_value)
        return default if file_value is None else file_value

    def get_section(self, section: str) -> Dict[str, Any]:
        """
        Top-level section as a dict, with environment overrides applied to
        its keys.
        """
        values = dict(self._config.get(section) or {})
        for name, file_value in values.items():
            env_value = os.environ.get(env_key(f"{section}.{name}"))
            if env_value is not None:
                values[name] = coerce_env_value(env_value, file_value)
        return values

    def reload(self) -> None:
        """Re-read the YAML file."""
        self._load_config()
        logger.info(f"Configuration reloaded from {self._config_path}")

    @classmethod
    def reset(cls) -> None:
        cls._instance = None


__all__ = [
    "ConfigLoader",
    "ConfigurationError",
    "DEFAULT_CONFIG_PATH",
    "coerce_env_value",
    "env_key",
]

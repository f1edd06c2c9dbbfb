"""
Configuration properties loaded from YAML files with environment fallbacks.

Resolution order (later wins):
- packaged defaults.yml
- application.yml in the working directory
- application-{profile}.yml when a profile is active

Keys missing from every file fall back to ORDERLY_<KEY> environment
variables, e.g. ``resilience.max_attempts`` -> ``ORDERLY_RESILIENCE_MAX_ATTEMPTS``.
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from orderly.core.logging import get_logger

logger = get_logger("config")

ENV_PREFIX = "ORDERLY_"
DEFAULTS_PATH = Path(__file__).parent / "defaults.yml"
DEFAULT_SOURCE = "default configuration"

_MISSING = object()


class ConfigurationProperties:
    """Dotted-key view over the merged configuration."""

    def __init__(self, profile: Optional[str] = None, base_dir: Optional[str] = None):
        self._data: Dict[str, Any] = {}
        self._sources: Dict[str, str] = {}
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self.profile = profile or os.environ.get(f"{ENV_PREFIX}PROFILE")

        self._merge(_read_yaml(DEFAULTS_PATH), DEFAULT_SOURCE)

        app_config = self.base_dir / "application.yml"
        if app_config.exists():
            self._merge(_read_yaml(app_config), app_config.name)

        if self.profile:
            profile_config = self.base_dir / f"application-{self.profile}.yml"
            if profile_config.exists():
                self._merge(_read_yaml(profile_config), profile_config.name)
            else:
                logger.warning(f"Profile '{self.profile}' has no {profile_config.name}")

    def load_from_file(self, path: str) -> None:
        """Merge an explicit YAML file on top of the current configuration."""
        self._merge(_read_yaml(Path(path)), Path(path).name)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._lookup(key)
        if value is not _MISSING:
            return value

        env_name = ENV_PREFIX + key.upper().replace(".", "_").replace("-", "_")
        if env_name in os.environ:
            self._sources[key] = f"environment variable ({env_name})"
            return yaml.safe_load(os.environ[env_name])

        return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key, default)
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key, default)
        return default if value is None else int(value)

    def get_float(self, key: str, default: float = 0.0) -> float:
        value = self.get(key, default)
        return default if value is None else float(value)

    def set(self, key: str, value: Any, source: str = "programmatic override") -> None:
        node = self._data
        parts = key.split(".")
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
        self._sources[key] = source

    def get_config_sources(self) -> Dict[str, str]:
        return dict(self._sources)

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    def _lookup(self, key: str) -> Any:
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return _MISSING
            node = node[part]
        return node

    def _merge(self, incoming: Dict[str, Any], source: str, prefix: str = "") -> None:
        target = self._data
        if prefix:
            for part in prefix.split("."):
                target = target.setdefault(part, {})

        for key, value in incoming.items():
            dotted = f"{prefix}.{key}" if prefix else key
            if isinstance(value, dict):
                if not isinstance(target.get(key), dict):
                    target[key] = {}
                self._merge(value, source, dotted)
            else:
                target[key] = value
                self._sources[dotted] = source


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


_config: Optional[ConfigurationProperties] = None


def get_config() -> ConfigurationProperties:
    """Process-wide configuration, loaded lazily."""
    global _config
    if _config is None:
        _config = ConfigurationProperties()
    return _config


def reload_config(profile: Optional[str] = None) -> ConfigurationProperties:
    """Discard the cached configuration and load it again."""
    global _config
    _config = ConfigurationProperties(profile=profile)
    return _config


def log_config_sources(config: Optional[ConfigurationProperties] = None) -> None:
    """Log where every non-default key came from."""
    config = config or get_config()
    overrides = {
        key: source
        for key, source in sorted(config.get_config_sources().items())
        if source != DEFAULT_SOURCE
    }
    if not overrides:
        logger.info("Using default configuration")
        return

    logger.info("Configuration overrides:")
    for key, source in overrides.items():
        logger.info(f"  {key} <- {source}")

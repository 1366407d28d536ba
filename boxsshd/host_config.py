"""Host-side configuration for boxsshd.

Settings come from ~/.config/boxsshd/config.yml (or $BOXSSHD_CONFIG),
validated by HostConfigModel, then overridden by command-line flags. The
result is read once at startup and handed to the server as an immutable
model.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from boxsshd.models.host_config import HostConfigModel
from boxsshd.paths import HostPaths

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Configuration could not be loaded or is invalid."""

    def __init__(self, message: str, path: Optional[Path] = None):
        self.path = path
        if path is not None:
            message = f"{path}: {message}"
        super().__init__(message)


class HostConfig:
    """Manages boxsshd configuration from a YAML file plus overrides."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else HostPaths.config_file()
        self._model = self._load()

    def _load(self) -> HostConfigModel:
        """Load and validate the configuration file."""
        if not self.config_path.exists():
            logger.debug(f"No config file at {self.config_path}, using defaults")
            return HostConfigModel()

        try:
            with open(self.config_path) as f:
                raw_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"failed to read config: {e}", self.config_path) from e

        if not isinstance(raw_config, dict):
            raise ConfigError("top level must be a mapping", self.config_path)

        try:
            return HostConfigModel.model_validate(raw_config)
        except ValidationError as e:
            raise ConfigError(f"invalid config: {e}", self.config_path) from e

    @property
    def model(self) -> HostConfigModel:
        return self._model

    def apply_overrides(self, overrides: Dict[str, Any]) -> HostConfigModel:
        """Apply dotted-key overrides (``{"listen.port": 2222}``).

        Keys whose value is None are skipped so unset CLI options keep the
        file value. The merged data is validated again.
        """
        data = self._model.model_dump()
        for dotted_key, value in overrides.items():
            if value is None:
                continue
            target = data
            *parents, leaf = dotted_key.split(".")
            for part in parents:
                target = target.setdefault(part, {})
            target[leaf] = value

        try:
            self._model = HostConfigModel.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"invalid override: {e}") from e
        return self._model

    def get(self, *keys: str, default: Any = None) -> Any:
        """Get a nested config value by key path."""
        value: Any = self._model.model_dump()
        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
            else:
                return default
            if value is None:
                return default
        return value


# Global config instance
_config: Optional[HostConfig] = None


def get_config(config_path: Optional[Path] = None) -> HostConfig:
    """Get the process-wide host configuration, loading it on first use.

    Passing a different ``config_path`` replaces the cached configuration.
    """
    global _config
    if _config is None or (config_path is not None and Path(config_path) != _config.config_path):
        _config = HostConfig(config_path)
    return _config


def reset_config() -> None:
    """Forget the cached configuration."""
    global _config
    _config = None

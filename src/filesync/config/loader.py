"""Loader for YAML/JSON mapping files."""

import os
import re
import json
from pathlib import Path
from typing import Dict, Any, Union, List

import yaml
from pydantic import ValidationError

from .schema import SyncConfig, EXAMPLE_CONFIG
from ..utils.logging import get_logger


_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


class ConfigurationError(Exception):
    """Raised when configuration loading fails."""
    pass


class ConfigLoader:
    """Loads and validates mapping files."""

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def load_from_file(self, file_path: Union[str, Path]) -> SyncConfig:
        """Load configuration from a JSON or YAML file.

        Args:
            file_path: Path to configuration file

        Returns:
            Validated SyncConfig object

        Raises:
            ConfigurationError: If the file cannot be read, parsed or validated
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise ConfigurationError(f"Configuration file not found: {file_path}")

        self.logger.info("Loading configuration from file", file_path=str(file_path))

        suffix = file_path.suffix.lower()
        if suffix not in ('.yaml', '.yml', '.json'):
            raise ConfigurationError(f"Unsupported file format: {file_path.suffix}")

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                if suffix == '.json':
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to read {file_path}: {e}") from e

        config = self.load_from_dict(data or {})

        self.logger.info(
            "Configuration loaded successfully",
            file_path=str(file_path),
            mappings=len(config.mappings),
            blacklist_rules=len(config.blacklist)
        )
        return config

    def load_from_dict(self, data: Dict[str, Any]) -> SyncConfig:
        """Validate a configuration dictionary after environment expansion."""
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        data = self._apply_env_overrides(self._expand_env(data))

        try:
            return SyncConfig(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def save_to_file(self, config: SyncConfig, file_path: Union[str, Path], format: str = 'yaml'):
        """Write a configuration file."""
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode='json', exclude_none=True)

        with open(file_path, 'w', encoding='utf-8') as f:
            if format.lower() == 'json':
                json.dump(data, f, indent=2)
            else:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

        self.logger.info("Configuration saved", file_path=str(file_path), format=format)

    def create_default_config(self) -> SyncConfig:
        return SyncConfig(**EXAMPLE_CONFIG)

    def _expand_env(self, value: Any) -> Any:
        """Replace ``${VAR}`` and ``${VAR:-default}`` in string values."""
        if isinstance(value, dict):
            return {k: self._expand_env(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._expand_env(v) for v in value]
        if isinstance(value, str):
            def substitute(match):
                name, default = match.group(1), match.group(2)
                resolved = os.getenv(name, default)
                if resolved is None:
                    raise ConfigurationError(f"Environment variable not set: {name}")
                return resolved
            return _ENV_PATTERN.sub(substitute, value)
        return value

    def _apply_env_overrides(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply FILESYNC_* environment variable overrides.

        Recognised: FILESYNC_DATABASE_URL, FILESYNC_LOG_LEVEL, FILESYNC_ENVIRONMENT.
        """
        env_overrides = {}

        if os.getenv('FILESYNC_DATABASE_URL'):
            env_overrides['database_url'] = os.getenv('FILESYNC_DATABASE_URL')

        if os.getenv('FILESYNC_LOG_LEVEL'):
            env_overrides['log_level'] = os.getenv('FILESYNC_LOG_LEVEL')

        if os.getenv('FILESYNC_ENVIRONMENT'):
            env_overrides['environment'] = os.getenv('FILESYNC_ENVIRONMENT')

        if env_overrides:
            self.logger.info("Applied environment variable overrides", overrides=list(env_overrides.keys()))
            data = {**data, **env_overrides}

        return data

    def validate_config(self, config: SyncConfig) -> List[str]:
        """Return non-fatal warnings about a configuration."""
        warnings = []

        if not config.mappings:
            warnings.append("No mappings configured")

        for mapping in config.mappings:
            if mapping.src_url.rstrip('/') == mapping.dst_url.rstrip('/'):
                warnings.append(f"Mapping '{mapping.name or mapping.src_url}' has identical source and destination")
            if not mapping.name:
                warnings.append(f"Mapping {mapping.src_url} -> {mapping.dst_url} has no name")

        return warnings

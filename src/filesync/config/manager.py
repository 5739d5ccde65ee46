"""Configuration manager: pushes a mappings file into the database."""

from datetime import datetime
from typing import Dict, Optional

from .schema import SyncConfig
from .loader import ConfigLoader, ConfigurationError
from ..cache import Blacklist, MappingStore
from ..database.models import SyncMappingCreate
from ..endpoints.base import normalize_url
from ..utils.logging import get_logger, log_execution_time


class ConfigManager:
    """Loads a mappings file and reconciles it with the registered mappings."""

    def __init__(self, mappings: MappingStore, blacklist: Blacklist, config_file: Optional[str] = None):
        """Initialize configuration manager.

        Args:
            mappings: Mapping store to write to
            blacklist: Blacklist store to write to
            config_file: Path of the YAML/JSON mappings file
        """
        self.mappings = mappings
        self.blacklist = blacklist
        self.config_file = config_file
        self.loader = ConfigLoader()
        self.logger = get_logger(self.__class__.__name__)

        self._config: Optional[SyncConfig] = None
        self._config_loaded_at: Optional[datetime] = None

    @log_execution_time
    def load_config(self, force_reload: bool = False) -> SyncConfig:
        """Load the mappings file, or an empty configuration without one."""
        if self._config and not force_reload:
            return self._config

        if self.config_file:
            self._config = self.loader.load_from_file(self.config_file)
        else:
            self._config = self.loader.load_from_dict({})
        self._config_loaded_at = datetime.now()

        warnings = self.loader.validate_config(self._config)
        if warnings:
            self.logger.warning("Configuration validation warnings", warnings=warnings)

        return self._config

    @log_execution_time
    def sync_to_database(self, prune: bool = False) -> Dict[str, int]:
        """Register the file's mappings and blacklist rules.

        Args:
            prune: Also remove registered mappings the file no longer lists

        Returns:
            Dictionary with sync statistics
        """
        config = self.load_config()
        stats = {
            "mappings_added": 0,
            "mappings_updated": 0,
            "mappings_unchanged": 0,
            "mappings_removed": 0,
            "blacklist_rules": 0
        }

        existing = {(m.src_url, m.dst_url): m for m in self.mappings.list_all()}
        configured = set()

        for mapping_config in config.mappings:
            key = (normalize_url(mapping_config.src_url), normalize_url(mapping_config.dst_url))
            configured.add(key)
            current = existing.get(key)

            if current is not None and current.name == mapping_config.name and (
                current.bidirectional == mapping_config.bidirectional
            ):
                stats["mappings_unchanged"] += 1
                continue

            self.mappings.add(SyncMappingCreate(
                src_url=mapping_config.src_url,
                dst_url=mapping_config.dst_url,
                name=mapping_config.name,
                bidirectional=mapping_config.bidirectional
            ))
            stats["mappings_added" if current is None else "mappings_updated"] += 1

        if prune:
            for key, mapping in existing.items():
                if key not in configured:
                    self.mappings.remove(mapping.id)
                    stats["mappings_removed"] += 1

        for rule in config.blacklist:
            self.blacklist.add(rule.url, rule.match_type)
            stats["blacklist_rules"] += 1

        self.logger.info("Configuration synced to database", **stats)
        return stats

    def get_config_info(self) -> Dict[str, object]:
        if not self._config:
            return {"loaded": False, "config_file": self.config_file}
        return {
            "loaded": True,
            "config_file": self.config_file,
            "loaded_at": self._config_loaded_at.isoformat() if self._config_loaded_at else None,
            "environment": self._config.environment,
            "mappings": len(self._config.mappings),
            "blacklist_rules": len(self._config.blacklist)
        }


__all__ = ["ConfigManager", "ConfigurationError"]

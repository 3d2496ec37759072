"""
Configuration Manager for the compensation engine
"""

import copy
import os
import yaml
import logging
from typing import Any, Dict, Optional

from ..utils.logging_utils import setup_logging

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    'engine': {
        'currency_places': 2,
        'projection_levels': [100, 120, 150],
    },
    'clawback': {
        'period_days': 180,
    },
    'settlement': {
        'grace_days': 90,
    },
    'logging': {
        'level': 'INFO',
        'file': None,
    },
}


class ConfigManager:
    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize ConfigManager, optionally overlaying a YAML file on the defaults.

        Args:
            config_path: Path to YAML configuration file
        """
        self.config_path = config_path
        self.config = copy.deepcopy(DEFAULT_CONFIG)
        self.logger = logging.getLogger(__name__)

        if config_path:
            self._load_config()

    def _load_config(self) -> None:
        """
        Load configuration from YAML file and merge it section by section.
        """
        try:
            self.logger.info(f"Loading configuration from: {self.config_path}")

            if not os.path.exists(self.config_path):
                self.logger.error(f"Configuration file not found: {self.config_path}")
                raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

            with open(self.config_path, 'r') as config_file:
                loaded = yaml.safe_load(config_file) or {}

            if not loaded:
                self.logger.warning("Configuration file is empty")
                return

            for section, values in loaded.items():
                if isinstance(values, dict):
                    self.config.setdefault(section, {}).update(values)
                else:
                    self.config[section] = values
            self.logger.info(f"Configuration loaded successfully with sections: {list(loaded.keys())}")

        except Exception as e:
            self.logger.exception(f"Error loading configuration: {str(e)}")
            raise

    def get(self, section: str, key: str = None, default: Any = None) -> Any:
        """
        Get configuration value by section and key.

        Args:
            section: Configuration section
            key: Configuration key (optional)
            default: Default value if key is not found

        Returns:
            Configuration value or default
        """
        try:
            if key is None:
                return self.config.get(section, default)
            return self.config.get(section, {}).get(key, default)

        except (AttributeError, KeyError):
            self.logger.warning(f"Configuration value not found for [{section}]{'.'+key if key else ''}")
            return default

    def get_section(self, section: str) -> Dict[str, Any]:
        return self.config.get(section, {})

    def set(self, section: str, key: str, value: Any) -> None:
        if section not in self.config:
            self.config[section] = {}

        self.config[section][key] = value

    @property
    def currency_places(self) -> int:
        return int(self.get('engine', 'currency_places', 2))

    @property
    def projection_levels(self):
        return list(self.get('engine', 'projection_levels', [100, 120, 150]))

    @property
    def clawback_period_days(self) -> int:
        return int(self.get('clawback', 'period_days', 180))

    @property
    def settlement_grace_days(self) -> int:
        return int(self.get('settlement', 'grace_days', 90))

    def configure_logging(self) -> logging.Logger:
        """Apply the [logging] section (level, file) to the root logger."""
        section = self.get_section('logging')
        return setup_logging(section.get('level') or 'INFO', section.get('file'))

    def save(self, output_path: Optional[str] = None) -> None:
        """
        Save configuration to YAML file.

        Args:
            output_path: Path to save configuration (uses current config path by default)
        """
        save_path = output_path or self.config_path
        if not save_path:
            raise ValueError("No output path given and no configuration file loaded")

        try:
            self.logger.info(f"Saving configuration to: {save_path}")

            directory = os.path.dirname(save_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            with open(save_path, 'w') as config_file:
                yaml.dump(self.config, config_file, default_flow_style=False)

            self.logger.info("Configuration saved successfully")

        except Exception as e:
            self.logger.exception(f"Error saving configuration: {str(e)}")
            raise

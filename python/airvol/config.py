"""
Configuration management for the volume follower.
"""

import copy
import json
import os
import logging
from .constants import (
    DEFAULT_CONFIG,
    DEFAULT_CONFIG_FILE,
    CONFIG_SCHEMA,
    ENV_FORCED_IP,
    ENV_FORCED_PORT,
    ENV_FORCED_NAME,
)
from .models import ForcedConfig

logger = logging.getLogger(__name__)


class ConfigManager:
    """Configuration management with validation and persistence"""

    def __init__(self, config_file=DEFAULT_CONFIG_FILE):
        self.config_file = config_file
        self.config = self.load_config()
        self.validate_config()
        logger.info(f"Configuration loaded from {config_file}")

    def load_config(self):
        """Load configuration from file"""
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, 'r') as f:
                    loaded_config = json.load(f)
                # Merge with defaults to ensure all keys exist
                config = self._merge_configs(DEFAULT_CONFIG, loaded_config)
            else:
                config = copy.deepcopy(DEFAULT_CONFIG)
                self.save_config(config)
                logger.info(f"Created default configuration file: {self.config_file}")

            return config

        except (OSError, ValueError) as e:
            logger.error(f"Error loading configuration: {e}")
            logger.info("Using default configuration")
            return copy.deepcopy(DEFAULT_CONFIG)

    def _merge_configs(self, default, loaded):
        """Recursively merge configurations"""
        result = copy.deepcopy(default)
        if not isinstance(loaded, dict):
            logger.warning("Configuration root is not an object, ignoring file contents")
            return result
        for key, value in loaded.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value
        return result

    def validate_config(self):
        """Validate configuration values using schema

        Invalid fields are reset to their defaults so the rest of the
        application only ever sees usable values.

        Returns:
            list: Validation error messages (empty when valid)
        """
        validation_errors = []

        for section_name, section_schema in CONFIG_SCHEMA.items():
            section_data = self.config.get(section_name)
            if not isinstance(section_data, dict):
                validation_errors.append(f"Invalid section {section_name}: expected object")
                self.config[section_name] = copy.deepcopy(DEFAULT_CONFIG[section_name])
                continue

            for field_name, field_schema in section_schema.items():
                field_path = f"{section_name}.{field_name}"
                value = section_data.get(field_name)

                # Check required fields
                if field_schema.get("required", False) and value is None:
                    validation_errors.append(f"Required field missing: {field_path}")
                    self._reset_to_default(section_name, field_name)
                    continue

                if value is None:
                    continue

                # Check type
                expected_type = field_schema.get("type")
                numeric = expected_type in (int, float) or isinstance(expected_type, tuple)
                if expected_type and (not isinstance(value, expected_type)
                                      or (numeric and isinstance(value, bool))):
                    validation_errors.append(
                        f"Invalid type for {field_path}: got {type(value).__name__}")
                    self._reset_to_default(section_name, field_name)
                    continue

                # Check numeric ranges
                if numeric:
                    min_val = field_schema.get("min")
                    max_val = field_schema.get("max")
                    if min_val is not None and value < min_val:
                        validation_errors.append(f"Value too small for {field_path}: {value} < {min_val}")
                        self._reset_to_default(section_name, field_name)
                    elif max_val is not None and value > max_val:
                        validation_errors.append(f"Value too large for {field_path}: {value} > {max_val}")
                        self._reset_to_default(section_name, field_name)

                # Check choices
                choices = field_schema.get("choices")
                if choices and value not in choices:
                    validation_errors.append(f"Invalid choice for {field_path}: {value} not in {choices}")
                    self._reset_to_default(section_name, field_name)

        # Retry bounds must be ordered
        connection = self.config["connection"]
        if connection["retry_min"] > connection["retry_max"]:
            validation_errors.append("connection.retry_min is larger than connection.retry_max")
            self._reset_to_default("connection", "retry_min")
            self._reset_to_default("connection", "retry_max")

        if validation_errors:
            for error in validation_errors:
                logger.warning(f"Configuration validation: {error}")
        else:
            logger.debug("Configuration validation completed successfully")

        return validation_errors

    def _reset_to_default(self, section_name, field_name):
        """Reset a configuration field to its default value"""
        try:
            default_value = DEFAULT_CONFIG[section_name][field_name]
            self.config[section_name][field_name] = copy.deepcopy(default_value)
            logger.info(f"Reset {section_name}.{field_name} to default: {default_value}")
        except KeyError:
            logger.error(f"No default value found for {section_name}.{field_name}")

    def save_config(self, config=None):
        """Save configuration to file"""
        try:
            config_to_save = config or self.config
            with open(self.config_file, 'w') as f:
                json.dump(config_to_save, f, indent=2)
            logger.debug(f"Configuration saved to {self.config_file}")
            return True
        except OSError as e:
            logger.error(f"Error saving configuration: {e}")
            return False

    def get(self, key_path, default=None):
        """Get configuration value using dot notation (e.g., 'connection.retry_max')"""
        try:
            keys = key_path.split('.')
            value = self.config
            for key in keys:
                value = value[key]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key_path, value, persist=True):
        """Set configuration value using dot notation"""
        keys = key_path.split('.')
        config = self.config
        for key in keys[:-1]:
            if key not in config:
                config[key] = {}
            config = config[key]
        config[keys[-1]] = value
        if persist:
            self.save_config()
        logger.debug(f"Configuration updated: {key_path} = {value}")

    def get_discovery_config(self):
        """Get discovery configuration as a dictionary"""
        return self.config.get("discovery", {})

    def get_connection_config(self):
        """Get connection supervisor configuration"""
        return self.config.get("connection", {})

    def get_volume_config(self):
        """Get volume gating configuration"""
        return self.config.get("volume", {})

    def get_settings(self):
        """Get application settings"""
        return self.config.get("settings", {})


def _parse_forced_port(value, source):
    if value is None or value == "" or value == 0:
        return None
    try:
        port = int(str(value).strip())
    except ValueError:
        logger.warning(f"Ignoring forced port from {source}: {value!r} is not an integer")
        return None
    if not 1 <= port <= 65535:
        logger.warning(f"Ignoring forced port from {source}: {port} out of range")
        return None
    return port


def _first_text(*values):
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def resolve_forced_config(config_manager, environ=None, overrides=None):
    """
    Resolve forced target overrides once at start-up.

    Precedence is command line overrides, then the environment, then the
    ``forced`` section of the configuration file. Empty values mean unset.

    Args:
        config_manager: Configuration manager instance
        environ (dict): Environment mapping (defaults to os.environ)
        overrides (dict): Values from the command line ("ip", "ws_port", "name")

    Returns:
        ForcedConfig: Immutable forced configuration
    """
    environ = os.environ if environ is None else environ
    overrides = overrides or {}
    section = config_manager.get("forced", {}) or {}

    ip = _first_text(overrides.get("ip"), environ.get(ENV_FORCED_IP), section.get("ip"))
    name = _first_text(overrides.get("name"), environ.get(ENV_FORCED_NAME), section.get("name"))

    port = None
    for source, value in (("command line", overrides.get("ws_port")),
                          (ENV_FORCED_PORT, environ.get(ENV_FORCED_PORT)),
                          ("configuration", section.get("ws_port"))):
        port = _parse_forced_port(value, source)
        if port is not None:
            break

    forced = ForcedConfig(ip=ip, port=port, name=name)
    if forced.is_active():
        logger.info(f"Forced configuration: ip={ip} port={port} name={name}")
    return forced

"""
Configuration management for the dbshift migration engine.
"""

from copy import deepcopy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError
import yaml

from .exceptions import ConfigError, ConfigNotFoundError, ConfigValidationError
from .settings import IDENTIFIER_PATTERN, VALID_LOG_LEVELS, MigrationSettings


def _parse_bool(value: str) -> bool:
    """Parse a boolean from an environment variable value."""
    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value}")


class ConfigSchema:
    """
    Configuration schema definition.

    Defines the expected structure and types for configuration data.
    """

    def __init__(self) -> None:
        """Initialize the configuration schema."""
        self.database = {
            "url": str
        }

        self.migrations = {
            "directory": str,
            "history_table": str,
            "history_collection": str,
            "transactional": bool,
            "lock": {
                "enabled": bool,
                "timeout": float,
                "poll_interval": float,
                "stale_after": float
            }
        }

        self.logging = {
            "level": str,
            "format": str,
            "use_colors": bool,
            "include_context": bool
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert schema to dictionary representation."""
        return {
            "database": self.database,
            "migrations": self.migrations,
            "logging": self.logging
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigSchema":
        """Create schema from dictionary."""
        schema = cls()

        if "database" in data:
            schema.database = data["database"]
        if "migrations" in data:
            schema.migrations = data["migrations"]
        if "logging" in data:
            schema.logging = data["logging"]

        return schema


class ConfigValidator:
    """
    Validator for configuration data.

    Checks structure, types and values of the database, migrations
    and logging sections.
    """

    def __init__(self, schema: Optional[ConfigSchema] = None):
        """
        Initialize the validator.

        Args:
            schema: Optional custom schema (uses default if not provided)
        """
        self.schema = schema or ConfigSchema()
        self.required_keys = ["database", "migrations"]
        self.valid_log_levels = list(VALID_LOG_LEVELS)

    def validate(self, config: Dict[str, Any]) -> None:
        """
        Validate configuration data.

        Args:
            config: Configuration dictionary to validate

        Raises:
            ConfigValidationError: If validation fails
        """
        self._validate_required_keys(config)

        self._validate_database(config.get("database", {}))
        self._validate_migrations(config.get("migrations", {}))
        self._validate_logging(config.get("logging", {}))

    def _validate_required_keys(self, config: Dict[str, Any]) -> None:
        """Validate that all required top-level keys are present."""
        missing_keys = [key for key in self.required_keys if key not in config]

        if missing_keys:
            raise ConfigValidationError(
                f"Missing required configuration sections: {missing_keys}",
                context={"missing_keys": missing_keys, "available_keys": list(config.keys())}
            )

    def _validate_database(self, config: Dict[str, Any]) -> None:
        """Validate database configuration."""
        if not isinstance(config, dict):
            raise ConfigValidationError("database configuration must be a dictionary")

        if "url" not in config:
            raise ConfigValidationError("database url is required")

        if not isinstance(config["url"], str) or "://" not in config["url"]:
            raise ConfigValidationError(
                "database url must be a URL string",
                context={"provided_url": config.get("url")}
            )

    def _validate_migrations(self, config: Dict[str, Any]) -> None:
        """Validate migrations configuration."""
        if not isinstance(config, dict):
            raise ConfigValidationError("migrations configuration must be a dictionary")

        if "directory" in config and not isinstance(config["directory"], str):
            raise ConfigValidationError("migrations directory must be a string")

        for key in ("history_table", "history_collection"):
            if key in config:
                value = config[key]
                if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
                    raise ConfigValidationError(
                        f"migrations {key} must be a plain identifier",
                        context={"provided_value": value}
                    )

        if "transactional" in config and not isinstance(config["transactional"], bool):
            raise ConfigValidationError("migrations transactional must be a boolean")

        if "lock" in config:
            self._validate_lock(config["lock"])

    def _validate_lock(self, config: Dict[str, Any]) -> None:
        """Validate lock configuration."""
        if not isinstance(config, dict):
            raise ConfigValidationError("migrations lock must be a dictionary")

        if "enabled" in config and not isinstance(config["enabled"], bool):
            raise ConfigValidationError("lock enabled must be a boolean")

        for key in ("timeout", "poll_interval", "stale_after"):
            if key in config:
                value = config[key]
                if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                    raise ConfigValidationError(f"lock {key} must be a positive number")

    def _validate_logging(self, config: Dict[str, Any]) -> None:
        """Validate logging configuration."""
        if "level" in config:
            if not isinstance(config["level"], str) or config["level"] not in self.valid_log_levels:
                raise ConfigValidationError(
                    f"logging level must be one of: {self.valid_log_levels}",
                    context={"provided_level": config.get("level"), "valid_levels": self.valid_log_levels}
                )

        if "format" in config and not isinstance(config["format"], str):
            raise ConfigValidationError("logging format must be a string")

        for key in ("use_colors", "include_context"):
            if key in config and not isinstance(config[key], bool):
                raise ConfigValidationError(f"logging {key} must be a boolean")


class ConfigLoader:
    """
    Configuration loader supporting multiple formats.

    Provides loading from files, dictionaries, and environment variables
    with support for JSON and YAML formats.
    """

    def __init__(self) -> None:
        """Initialize the configuration loader."""
        self.supported_formats = ['.json', '.yaml', '.yml']

    def load_from_file(self, file_path: Union[str, Path]) -> Dict[str, Any]:
        """
        Load configuration from a file.

        Args:
            file_path: Path to the configuration file

        Returns:
            Configuration dictionary

        Raises:
            ConfigNotFoundError: If file is not found
            ConfigError: If file format is unsupported or parsing fails
        """
        path = Path(file_path)

        if not path.exists():
            raise ConfigNotFoundError(
                f"Configuration file not found: {file_path}",
                context={"file_path": str(file_path)}
            )

        if path.suffix not in self.supported_formats:
            raise ConfigError(
                f"Unsupported file format: {path.suffix}. Supported formats: {self.supported_formats}",
                context={"file_path": str(file_path), "suffix": path.suffix}
            )

        try:
            with open(path, encoding='utf-8') as f:
                if path.suffix == '.json':
                    return json.load(f)  # type: ignore[no-any-return]
                return yaml.safe_load(f) or {}  # type: ignore[no-any-return]
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to parse configuration file: {e}", cause=e)
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}", cause=e)

    def load_from_dict(self, config_dict: Dict[str, Any]) -> Dict[str, Any]:
        """
        Load configuration from a dictionary.

        Args:
            config_dict: Configuration dictionary

        Returns:
            Configuration dictionary (deep copy)
        """
        return deepcopy(config_dict)

    def load_from_environment(self, prefix: str = "DBSHIFT_") -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        Args:
            prefix: Prefix for environment variable names

        Returns:
            Configuration dictionary built from environment variables
        """
        config: Dict[str, Any] = {}

        env_mapping = {
            f"{prefix}DATABASE_URL": (("database", "url"), str),
            f"{prefix}MIGRATIONS_DIR": (("migrations", "directory"), str),
            f"{prefix}HISTORY_TABLE": (("migrations", "history_table"), str),
            f"{prefix}HISTORY_COLLECTION": (("migrations", "history_collection"), str),
            f"{prefix}TRANSACTIONAL": (("migrations", "transactional"), _parse_bool),
            f"{prefix}LOCK_ENABLED": (("migrations", "lock", "enabled"), _parse_bool),
            f"{prefix}LOCK_TIMEOUT": (("migrations", "lock", "timeout"), float),
            f"{prefix}LOCK_POLL_INTERVAL": (("migrations", "lock", "poll_interval"), float),
            f"{prefix}LOCK_STALE_AFTER": (("migrations", "lock", "stale_after"), float),
            f"{prefix}LOG_LEVEL": (("logging", "level"), str),
        }

        for env_var, (path, value_type) in env_mapping.items():
            value = os.getenv(env_var)
            if value is None:
                continue

            try:
                converted = value_type(value)
            except (ValueError, TypeError) as e:
                raise ConfigError(f"Invalid value for {env_var}: {value}", cause=e)

            current = config
            for key in path[:-1]:
                current = current.setdefault(key, {})
            current[path[-1]] = converted

        return config

    def merge_configs(self, base_config: Dict[str, Any], override_config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge two configuration dictionaries.

        Args:
            base_config: Base configuration
            override_config: Configuration to merge (takes precedence)

        Returns:
            Merged configuration dictionary
        """
        merged = deepcopy(base_config)
        self._deep_merge(merged, override_config)
        return merged

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> None:
        """Recursively merge two dictionaries."""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = deepcopy(value)


class ConfigManager:
    """
    Centralized configuration management.

    Loads, validates and exposes configuration, and turns it into
    typed MigrationSettings for the migration manager.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        """
        Initialize the configuration manager.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or logging.getLogger(__name__)
        self.loader = ConfigLoader()
        self.validator = ConfigValidator()
        self.config: Optional[Dict[str, Any]] = None
        self.config_file_path: Optional[Path] = None

    def load_config(self, source: Union[str, Path, Dict[str, Any]]) -> None:
        """
        Load configuration from a file path or dictionary.

        Args:
            source: Configuration source (file path or dictionary)

        Raises:
            ConfigError: If loading or validation fails
        """
        try:
            if isinstance(source, (str, Path)):
                self.config_file_path = Path(source)
                self.config = self.loader.load_from_file(source)
                self.logger.info(f"Loaded configuration from file: {source}")
            elif isinstance(source, dict):
                self.config = self.loader.load_from_dict(source)
                self.logger.info("Loaded configuration from dictionary")
            else:
                raise ConfigError(f"Unsupported configuration source type: {type(source)}")

            self.validator.validate(self.config)
            self.logger.info("Configuration validation passed")

        except Exception as e:
            self.logger.error(f"Failed to load configuration: {e}")
            raise

    def reload_config(self) -> None:
        """
        Reload configuration from the original file.

        Raises:
            ConfigError: If no file path is set or reload fails
        """
        if self.config_file_path is None:
            raise ConfigError("No configuration file path set for reload")

        self.load_config(self.config_file_path)
        self.logger.info("Configuration reloaded successfully")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value using dot notation.

        Args:
            key: Configuration key (e.g., "migrations.lock.timeout")
            default: Default value if key is not found

        Returns:
            Configuration value or default
        """
        if self.config is None:
            return default

        value: Any = self.config

        try:
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """
        Set a configuration value using dot notation.

        Args:
            key: Configuration key (e.g., "migrations.directory")
            value: Value to set
        """
        if self.config is None:
            self.config = {}

        keys = key.split('.')
        current = self.config

        for k in keys[:-1]:
            if k not in current:
                current[k] = {}
            current = current[k]

        current[keys[-1]] = value

        self.logger.debug(f"Set configuration {key} = {value}")

    def apply_environment_overrides(self, prefix: str = "DBSHIFT_") -> None:
        """
        Apply environment variable overrides to current configuration.

        Args:
            prefix: Prefix for environment variable names
        """
        env_config = self.loader.load_from_environment(prefix)

        if self.config is None:
            self.config = env_config
        else:
            self.config = self.loader.merge_configs(self.config, env_config)

        self.logger.info("Applied environment variable overrides")

    def get_settings(self) -> MigrationSettings:
        """
        Build typed migration settings from the current configuration.

        Returns:
            MigrationSettings instance; unset keys fall back to the
            environment and then to defaults

        Raises:
            ConfigValidationError: If the values do not form valid settings
        """
        mapping = {
            "database_url": "database.url",
            "migrations_dir": "migrations.directory",
            "history_table": "migrations.history_table",
            "history_collection": "migrations.history_collection",
            "transactional": "migrations.transactional",
            "lock_enabled": "migrations.lock.enabled",
            "lock_timeout": "migrations.lock.timeout",
            "lock_poll_interval": "migrations.lock.poll_interval",
            "lock_stale_after": "migrations.lock.stale_after",
            "log_level": "logging.level",
        }

        values = {}
        for field_name, key in mapping.items():
            value = self.get(key)
            if value is not None:
                values[field_name] = value

        try:
            return MigrationSettings(**values)
        except ValidationError as e:
            raise ConfigValidationError(
                "Configuration does not form valid migration settings",
                context={"errors": e.error_count()},
                cause=e
            )

    def get_config_summary(self) -> Dict[str, Any]:
        """
        Get a summary of the current configuration.

        Returns:
            Configuration summary dictionary
        """
        if self.config is None:
            return {"status": "No configuration loaded"}

        return {
            "status": "Configuration loaded",
            "migrations_dir": self.get("migrations.directory"),
            "history_table": self.get("migrations.history_table"),
            "lock_enabled": self.get("migrations.lock.enabled"),
            "log_level": self.get("logging.level"),
            "config_file": str(self.config_file_path) if self.config_file_path else None
        }

"""
Configuration management module for the dbshift migration engine.
"""

from .exceptions import ConfigError, ConfigNotFoundError, ConfigValidationError
from .manager import ConfigLoader, ConfigManager, ConfigSchema, ConfigValidator
from .settings import MigrationSettings

__all__ = [
    # Exceptions
    "ConfigError",
    "ConfigLoader",
    # Main classes
    "ConfigManager",
    "ConfigNotFoundError",
    "ConfigSchema",
    "ConfigValidationError",
    "ConfigValidator",
    "MigrationSettings",
]

"""
Configuration-specific exceptions.
"""

from typing import Any, Dict, Optional

from ..core.exceptions import DbShiftError


class ConfigError(DbShiftError):
    """Base exception for configuration-related errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None, cause: Optional[Exception] = None):
        super().__init__(message, context, cause)


class ConfigValidationError(ConfigError):
    """Exception raised when configuration validation fails."""
    pass


class ConfigNotFoundError(ConfigError):
    """Exception raised when configuration is not found."""
    pass

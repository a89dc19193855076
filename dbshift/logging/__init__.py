"""
Logging framework for the dbshift migration engine.
"""

from .manager import LogFormatter, LoggingManager

__all__ = [
    "LogFormatter",
    "LoggingManager",
]

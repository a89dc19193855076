"""
Logging management for the dbshift migration engine.
"""

from contextlib import contextmanager, suppress
import logging
import threading
import time
from typing import Any, ClassVar, Dict, Iterator, Optional, Union


class LogFormatter(logging.Formatter):
    """
    Log formatter with support for colors and migration context.

    Records carrying a ``migration`` or ``batch`` attribute (passed via
    ``extra``) are prefixed with that context when enabled.
    """

    # Color codes for different log levels
    COLORS: ClassVar[Dict[str, str]] = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
        'RESET': '\033[0m'        # Reset
    }

    def __init__(
        self,
        format_string: Optional[str] = None,
        date_format: Optional[str] = None,
        use_colors: bool = False,
        include_context: bool = False,
        include_timestamp: bool = True
    ):
        """
        Initialize the log formatter.

        Args:
            format_string: Custom format string
            date_format: Date format string
            use_colors: Whether to use colored output
            include_context: Whether to include migration context
            include_timestamp: Whether to include timestamp
        """
        if format_string is None:
            if include_timestamp:
                format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            else:
                format_string = "%(name)s - %(levelname)s - %(message)s"

            if include_context:
                format_string += " [%(filename)s:%(lineno)d]"

        if date_format is None:
            date_format = "%Y-%m-%d %H:%M:%S"

        super().__init__(format_string, date_format)

        self.use_colors = use_colors
        self.include_context = include_context
        self.format_string = format_string

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a log record.

        Args:
            record: Log record to format

        Returns:
            Formatted log message
        """
        if self.include_context:
            if hasattr(record, 'batch'):
                record.msg = f"[Batch: {record.batch}] {record.msg}"

            if hasattr(record, 'migration'):
                record.msg = f"[Migration: {record.migration}] {record.msg}"

        formatted = super().format(record)

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            reset = self.COLORS['RESET']
            formatted = f"{color}{formatted}{reset}"

        return formatted

    def formatException(self, ei: Any) -> str:
        """
        Format exception information, appending context and cause of dbshift errors.

        Args:
            ei: Exception information tuple

        Returns:
            Formatted exception string
        """
        result = super().formatException(ei)

        if ei and ei[1]:
            exception = ei[1]
            if getattr(exception, 'context', None):
                result += f"\nContext: {exception.context}"

            if getattr(exception, 'cause', None):
                result += f"\nCaused by: {exception.cause}"

        return result


class LoggingManager:
    """
    Centralized logging configuration.

    Configures the root logger from the ``logging`` configuration section
    and hands out named loggers for the migration components.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the logging manager.

        Args:
            config: Configuration dictionary containing a "logging" section
        """
        self.config = config.get("logging", {})
        self.loggers: Dict[str, logging.Logger] = {}
        self.handlers: Dict[str, logging.Handler] = {}
        self._lock = threading.Lock()

        self._configure_root_logger()

    def _configure_root_logger(self) -> None:
        """Configure the root logger with basic settings."""
        root_logger = logging.getLogger()

        level = self.config.get("level", "INFO")
        root_logger.setLevel(getattr(logging, level.upper()))

        # Remove existing handlers to avoid duplicates
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(LogFormatter(
            format_string=self.config.get("format"),
            use_colors=self.config.get("use_colors", False),
            include_context=self.config.get("include_context", True),
        ))
        root_logger.addHandler(console_handler)
        self.handlers["console"] = console_handler

    def get_logger(self, name: str, level: Union[str, int, None] = None) -> logging.Logger:
        """
        Get or create a logger.

        Args:
            name: Logger name
            level: Optional log level override

        Returns:
            Configured logger instance
        """
        with self._lock:
            if name not in self.loggers:
                logger = logging.getLogger(name)

                if level:
                    if isinstance(level, str):
                        level = getattr(logging, level.upper())
                    logger.setLevel(level)

                self.loggers[name] = logger

            return self.loggers[name]

    def set_log_level(self, logger_name: str, level: Union[str, int]) -> None:
        """
        Set the log level for a specific logger.

        Args:
            logger_name: Logger name
            level: Log level (string or integer)
        """
        if logger_name in self.loggers:
            if isinstance(level, str):
                level = getattr(logging, level.upper())

            self.loggers[logger_name].setLevel(level)

    @contextmanager
    def log_performance(self, logger_name: str, operation: str) -> Iterator[None]:
        """
        Context manager for logging operation performance.

        Args:
            logger_name: Logger name
            operation: Operation name
        """
        logger = self.get_logger(logger_name)
        start_time = time.time()

        logger.info(f"Starting operation: {operation}")

        try:
            yield
            duration = time.time() - start_time
            logger.info(f"Completed operation: {operation} in {duration:.3f}s")
        except Exception as e:
            duration = time.time() - start_time
            logger.error(f"Failed operation: {operation} after {duration:.3f}s - {e}")
            raise

    def shutdown(self) -> None:
        """Close all handlers managed here."""
        with self._lock:
            root_logger = logging.getLogger()
            for handler in self.handlers.values():
                root_logger.removeHandler(handler)
                with suppress(Exception):
                    handler.close()

            self.handlers.clear()
            self.loggers.clear()

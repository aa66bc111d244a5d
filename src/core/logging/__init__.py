"""
Structured logging module.

Provides JSON and console logging. Correlation data is passed explicitly
through ``extra=`` rather than held in ambient context.
"""

from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.setup import (
    get_log_file_path,
    setup_logging,
)
from core.logging.utilities import log_exception

__all__ = [
    # Setup
    "setup_logging",
    "get_log_file_path",
    # Formatters
    "JSONFormatter",
    "ConsoleFormatter",
    # Utilities
    "log_exception",
]

"""
Core package for configuration, logging, and shared exceptions.
"""

from portal.core.config import Settings, settings
from portal.core.logging import configure_structlog, get_structlog_logger

__all__ = [
    "Settings",
    "settings",
    "configure_structlog",
    "get_structlog_logger",
]

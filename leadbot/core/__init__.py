# leadbot/core/__init__.py
"""
Core package for configuration, logging, and shared exceptions.
"""

from leadbot.core.config import Settings, settings
from leadbot.core.logging import configure_structlog, get_structlog_logger

__all__ = [
    "Settings",
    "settings",
    "configure_structlog",
    "get_structlog_logger",
]
